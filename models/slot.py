import enum
from datetime import datetime

from models.db import db
from utils.clock import utcnow


class SlotStatus(str, enum.Enum):
    CLOSED = "CLOSED"        # history only, invisible to listings
    AVAILABLE = "AVAILABLE"
    HELD = "HELD"            # reserved by a cart item until hold_expires_at
    BOOKED = "BOOKED"


class Slot(db.Model):
    __tablename__ = "slots"

    id = db.Column(db.Integer, primary_key=True)

    mentor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    date = db.Column(db.Date, nullable=False, index=True)
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)

    price = db.Column(db.Integer, nullable=False, default=0)  # store smallest unit
    status = db.Column(
        db.Enum(SlotStatus, name="slot_status", native_enum=False, length=20),
        nullable=False,
        default=SlotStatus.AVAILABLE,
        index=True,
    )

    # set only while HELD
    held_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    hold_expires_at = db.Column(db.DateTime, nullable=True, index=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        # One row per mentor time unit; CLOSED rows are reused on re-open
        db.UniqueConstraint("mentor_id", "date", "start_time", name="uq_mentor_slot_time"),
    )

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.date, self.start_time)
