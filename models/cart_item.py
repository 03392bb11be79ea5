from models.db import db
from utils.clock import utcnow


class CartItem(db.Model):
    __tablename__ = "cart_items"

    id = db.Column(db.Integer, primary_key=True)

    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    slot_id = db.Column(db.Integer, db.ForeignKey("slots.id"), nullable=False)
    mentor_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    # denormalized from the slot for display
    date = db.Column(db.Date, nullable=False)
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)
    price = db.Column(db.Integer, nullable=False)

    held_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=True, index=True)

    slot = db.relationship("Slot")
    mentor = db.relationship("User", foreign_keys=[mentor_id])

    __table_args__ = (
        # At most one cart holds a slot at any time
        db.UniqueConstraint("slot_id", name="uq_cart_item_slot_once"),
    )
