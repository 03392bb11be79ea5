import enum

from models.db import db
from utils.clock import utcnow


class BookingStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


ACTIVE_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)


class Booking(db.Model):
    __tablename__ = "bookings"

    id = db.Column(db.Integer, primary_key=True)

    student_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    mentor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # sum of items that are not CANCELLED
    total_price = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(
        db.Enum(BookingStatus, name="booking_status", native_enum=False, length=20),
        nullable=False,
        default=BookingStatus.CONFIRMED,
        index=True,
    )

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancel_reason = db.Column(db.String(120), nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)

    items = db.relationship(
        "BookingItem",
        back_populates="booking",
        cascade="all, delete-orphan",
        order_by=lambda: (BookingItem.date, BookingItem.start_time),
    )
    student = db.relationship("User", foreign_keys=[student_id])
    mentor = db.relationship("User", foreign_keys=[mentor_id])

    @property
    def active_items(self):
        return [i for i in self.items if i.status in ACTIVE_STATUSES]


class BookingItem(db.Model):
    __tablename__ = "booking_items"

    id = db.Column(db.Integer, primary_key=True)

    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.id"), nullable=False, index=True)
    slot_id = db.Column(db.Integer, db.ForeignKey("slots.id"), nullable=False, index=True)

    date = db.Column(db.Date, nullable=False)
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)
    price = db.Column(db.Integer, nullable=False)

    # mirrors the parent unless individually cancelled
    status = db.Column(
        db.Enum(BookingStatus, name="booking_item_status", native_enum=False, length=20),
        nullable=False,
        default=BookingStatus.CONFIRMED,
    )
    cancelled_at = db.Column(db.DateTime, nullable=True)
    cancelled_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)

    booking = db.relationship("Booking", back_populates="items")
