"""Cart: per-user staging area of held slots."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db
from models.cart_item import CartItem
from models.slot import Slot, SlotStatus
from services import slot_store
from services.errors import Forbidden, LeadTimeViolation, NotFoundError, SlotUnavailable
from utils import clock

logger = logging.getLogger(__name__)


@dataclass
class CartView:
    items: List[CartItem]
    total_items: int
    total_price: int


@dataclass
class ClearResult:
    deleted_count: int = 0
    release_failures: List[int] = field(default_factory=list)
    failed_item_ids: List[int] = field(default_factory=list)


def _release_best_effort(slot_id: int, user_id: int) -> bool:
    """
    Release a hold in its own transaction. A failure is logged and reported
    but never blocks deleting the cart item; the expiry sweep reclaims the
    slot once the hold lapses.
    """
    try:
        released = slot_store.release_hold(slot_id, user_id=user_id)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Failed to release hold on slot %s for user %s", slot_id, user_id)
        return False
    if not released:
        logger.debug("Slot %s was no longer held by user %s", slot_id, user_id)
    return True


def add_item(user_id: int, slot_id: int, now: Optional[datetime] = None) -> CartItem:
    now = now or clock.utcnow()

    slot = db.session.get(Slot, slot_id)
    if slot is None or slot.status == SlotStatus.CLOSED:
        raise NotFoundError("Slot not found", details={"slotId": slot_id})
    if slot.mentor_id == user_id:
        raise Forbidden("You cannot book your own slot", details={"slotId": slot_id})

    # lazily free an expired hold so the slot can be taken again
    slot_store.expiry_sweep(now=now, slot_ids=[slot_id])

    if not slot_store.meets_lead_time(slot.starts_at, now):
        raise LeadTimeViolation(
            "Slots must be booked at least {} hours in advance".format(
                int(slot_store.lead_time().total_seconds() // 3600)
            ),
            details={"slotId": slot_id},
        )

    expires_at = slot_store.reserve_for_cart(slot_id, user_id, now=now)

    item = CartItem(
        user_id=user_id,
        slot_id=slot.id,
        mentor_id=slot.mentor_id,
        date=slot.date,
        start_time=slot.start_time,
        end_time=slot.end_time,
        price=slot.price,
        held_at=now,
        expires_at=expires_at,
    )
    db.session.add(item)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise SlotUnavailable("Slot is already in a cart", details={"slotId": slot_id})
    return item


def _drop_item(item: CartItem, user_id: int) -> bool:
    """
    Delete a cart item and release its hold in one transaction. If that
    write fails, the item is deleted on its own and the release retried
    best-effort. Returns whether the release went through; raises only when
    the item itself could not be deleted.
    """
    item_id, slot_id = item.id, item.slot_id
    try:
        slot_store.release_hold(slot_id, user_id=user_id)
        db.session.delete(item)
        db.session.commit()
        return True
    except SQLAlchemyError:
        db.session.rollback()
        logger.warning("Combined release/delete failed for cart item %s, falling back", item_id, exc_info=True)

    CartItem.query.filter(CartItem.id == item_id).delete(synchronize_session=False)
    db.session.commit()
    return _release_best_effort(slot_id, user_id)


def remove_item(user_id: int, item_id: int) -> bool:
    """Delete a cart item and release its hold. Returns whether the release went through."""
    item = db.session.get(CartItem, item_id)
    if item is None:
        raise NotFoundError("Cart item not found", details={"cartItemId": item_id})
    if item.user_id != user_id:
        raise Forbidden("You can only remove items from your own cart", details={"cartItemId": item_id})
    return _drop_item(item, user_id)


def clear(user_id: int) -> ClearResult:
    """
    Remove every cart item of the user, one item at a time. Items already
    cleared stay cleared if a later one fails; failures are reported.
    """
    result = ClearResult()
    items = CartItem.query.filter_by(user_id=user_id).order_by(CartItem.id.asc()).all()
    pending = [(item, item.id, item.slot_id) for item in items]

    for item, item_id, slot_id in pending:
        try:
            released = _drop_item(item, user_id)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Failed to delete cart item %s for user %s", item_id, user_id)
            result.failed_item_ids.append(item_id)
            continue
        if not released:
            result.release_failures.append(slot_id)
        result.deleted_count += 1

    if result.release_failures or result.failed_item_ids:
        logger.warning(
            "Cart clear for user %s was partial: release failures=%s, undeleted items=%s",
            user_id,
            result.release_failures,
            result.failed_item_ids,
        )
    return result


def list_items(user_id: int, now: Optional[datetime] = None) -> CartView:
    now = now or clock.utcnow()
    slot_store.expiry_sweep(now=now, user_id=user_id)

    items = (
        CartItem.query
        .filter(CartItem.user_id == user_id)
        .filter(or_(CartItem.expires_at.is_(None), CartItem.expires_at > now))
        .order_by(CartItem.held_at.desc(), CartItem.id.desc())
        .all()
    )
    return CartView(items=items, total_items=len(items), total_price=sum(i.price for i in items))
