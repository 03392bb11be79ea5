"""
Slot Store: canonical state of every bookable time unit.

Status moves only through single-row conditional updates
(``UPDATE slots SET status=? WHERE id=? AND status=?``). The rowcount of that
statement decides the winner of any race, so no read-then-write window
exists between two workers touching the same slot.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Iterable, List, Optional

from flask import current_app
from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError

from models import db
from models.cart_item import CartItem
from models.slot import Slot, SlotStatus
from models.user import User
from services.errors import (
    InvalidState,
    LeadTimeViolation,
    NotFoundError,
    SlotConflict,
    SlotUnavailable,
    Unauthorized,
    ValidationError,
)
from utils import clock

logger = logging.getLogger(__name__)

# Columns reset whenever a slot leaves HELD
_CLEAR_HOLD = {Slot.held_by_user_id: None, Slot.hold_expires_at: None}


@dataclass
class SweepResult:
    released_slot_ids: List[int] = field(default_factory=list)
    pruned_items: int = 0


def slot_duration() -> timedelta:
    return timedelta(minutes=current_app.config.get("SLOT_DURATION_MINUTES", 30))


def lead_time() -> timedelta:
    return timedelta(hours=current_app.config.get("SLOT_LEAD_TIME_HOURS", 48))


def hold_window() -> timedelta:
    return timedelta(minutes=current_app.config.get("CART_HOLD_MINUTES", 15))


def meets_lead_time(starts_at: datetime, now: datetime) -> bool:
    # exactly on the boundary counts as enough notice
    return starts_at >= now + lead_time()


def _lead_hours() -> int:
    return current_app.config.get("SLOT_LEAD_TIME_HOURS", 48)


def _check_grid(start_time: time) -> None:
    step = current_app.config.get("SLOT_DURATION_MINUTES", 30)
    minute_of_day = start_time.hour * 60 + start_time.minute
    if start_time.second or start_time.microsecond or minute_of_day % step:
        raise ValidationError(
            f"startTime must be on the {step}-minute grid (e.g. 09:00, 09:30)",
            details={"startTime": start_time.strftime("%H:%M")},
        )

    window_start = current_app.config.get("OPERATING_HOURS_START", 0) * 60
    window_end = current_app.config.get("OPERATING_HOURS_END", 24) * 60
    if minute_of_day < window_start or minute_of_day + step > window_end:
        raise ValidationError(
            "startTime is outside the operating window",
            details={
                "startTime": start_time.strftime("%H:%M"),
                "windowStartHour": window_start // 60,
                "windowEndHour": window_end // 60,
            },
        )


def resolve_price(mentor: User) -> int:
    """Mentor override first, then the mentor's category price."""
    if mentor.price_per_slot is not None:
        return mentor.price_per_slot
    if mentor.category is not None and mentor.category.price_per_slot is not None:
        return mentor.category.price_per_slot
    raise ValidationError(
        "No price configured for this mentor. Set a price in the profile or category.",
        details={"mentorId": mentor.id},
    )


def open_slot(mentor: User, slot_date: date, start_time: time, now: Optional[datetime] = None) -> Slot:
    now = now or clock.utcnow()
    _check_grid(start_time)

    starts_at = datetime.combine(slot_date, start_time)
    if not meets_lead_time(starts_at, now):
        raise LeadTimeViolation(
            f"Slot must be at least {_lead_hours()} hours from now",
            details={"date": slot_date.isoformat(), "startTime": start_time.strftime("%H:%M")},
        )

    price = resolve_price(mentor)
    end_time = (starts_at + slot_duration()).time()

    existing = Slot.query.filter_by(mentor_id=mentor.id, date=slot_date, start_time=start_time).first()
    if existing is not None:
        if existing.status != SlotStatus.CLOSED:
            raise SlotConflict(
                "A slot already exists for this time. Choose a different time or close the existing slot first.",
                details={"slotId": existing.id, "status": existing.status.value},
            )
        reopened = (
            Slot.query
            .filter(Slot.id == existing.id, Slot.status == SlotStatus.CLOSED)
            .update(
                {Slot.status: SlotStatus.AVAILABLE, Slot.price: price, Slot.end_time: end_time, **_CLEAR_HOLD},
                synchronize_session=False,
            )
        )
        if not reopened:
            db.session.rollback()
            raise SlotConflict("A slot already exists for this time", details={"slotId": existing.id})
        db.session.commit()
        logger.info("Mentor %s re-opened slot %s", mentor.id, existing.id)
        return existing

    slot = Slot(
        mentor_id=mentor.id,
        date=slot_date,
        start_time=start_time,
        end_time=end_time,
        price=price,
        status=SlotStatus.AVAILABLE,
    )
    db.session.add(slot)
    try:
        db.session.commit()
    except IntegrityError:
        # another request opened the same tuple first
        db.session.rollback()
        raise SlotConflict("A slot already exists for this time")
    return slot


def close_slot(slot_id: int, mentor_id: int, now: Optional[datetime] = None) -> Slot:
    now = now or clock.utcnow()

    slot = db.session.get(Slot, slot_id)
    if slot is None or slot.status == SlotStatus.CLOSED:
        raise NotFoundError("Slot not found", details={"slotId": slot_id})
    if slot.mentor_id != mentor_id:
        raise Unauthorized("You can only close your own slots", details={"slotId": slot_id})

    # an expired hold must not block the mentor
    expiry_sweep(now=now, slot_ids=[slot_id])

    if slot.status in (SlotStatus.HELD, SlotStatus.BOOKED):
        raise InvalidState(
            f"Cannot close a slot that is {slot.status.value}",
            details={"slotId": slot_id, "status": slot.status.value},
        )
    if not meets_lead_time(slot.starts_at, now):
        raise LeadTimeViolation(
            f"Cannot close a slot that is less than {_lead_hours()} hours away",
            details={"slotId": slot_id},
        )

    closed = (
        Slot.query
        .filter(Slot.id == slot_id, Slot.status == SlotStatus.AVAILABLE)
        .update({Slot.status: SlotStatus.CLOSED, **_CLEAR_HOLD}, synchronize_session=False)
    )
    if not closed:
        db.session.rollback()
        raise InvalidState("Slot was reserved while closing", details={"slotId": slot_id})
    db.session.commit()
    return slot


def reserve_for_cart(slot_id: int, user_id: int, now: Optional[datetime] = None) -> datetime:
    """
    AVAILABLE -> HELD as one conditional update. Returns the hold expiry.
    The caller commits together with the CartItem it creates.
    """
    now = now or clock.utcnow()
    expires_at = now + hold_window()

    won = (
        Slot.query
        .filter(Slot.id == slot_id, Slot.status == SlotStatus.AVAILABLE)
        .update(
            {
                Slot.status: SlotStatus.HELD,
                Slot.held_by_user_id: user_id,
                Slot.hold_expires_at: expires_at,
            },
            synchronize_session=False,
        )
    )
    if not won:
        raise SlotUnavailable("Slot is not available", details={"slotId": slot_id})
    return expires_at


def release_hold(slot_id: int, user_id: Optional[int] = None) -> bool:
    """HELD -> AVAILABLE. Caller commits. False when the slot was not held (by that user)."""
    q = Slot.query.filter(Slot.id == slot_id, Slot.status == SlotStatus.HELD)
    if user_id is not None:
        q = q.filter(Slot.held_by_user_id == user_id)
    released = q.update({Slot.status: SlotStatus.AVAILABLE, **_CLEAR_HOLD}, synchronize_session=False)
    return bool(released)


def expiry_sweep(
    now: Optional[datetime] = None,
    user_id: Optional[int] = None,
    mentor_id: Optional[int] = None,
    slot_ids: Optional[Iterable[int]] = None,
) -> SweepResult:
    """
    Release expired holds and prune expired cart items, optionally scoped to
    one holder, mentor or set of slots. Safe to run repeatedly and alongside
    checkout: the release is conditional on the hold still being expired, so
    a hold already converted to BOOKED never matches.
    """
    now = now or clock.utcnow()
    slot_ids = list(slot_ids) if slot_ids is not None else None
    result = SweepResult()

    expired = Slot.query.filter(Slot.status == SlotStatus.HELD, Slot.hold_expires_at <= now)
    if user_id is not None:
        expired = expired.filter(Slot.held_by_user_id == user_id)
    if mentor_id is not None:
        expired = expired.filter(Slot.mentor_id == mentor_id)
    if slot_ids is not None:
        expired = expired.filter(Slot.id.in_(slot_ids))

    for (candidate_id,) in expired.with_entities(Slot.id).all():
        freed = (
            Slot.query
            .filter(
                Slot.id == candidate_id,
                Slot.status == SlotStatus.HELD,
                Slot.hold_expires_at <= now,
            )
            .update({Slot.status: SlotStatus.AVAILABLE, **_CLEAR_HOLD}, synchronize_session=False)
        )
        if freed:
            result.released_slot_ids.append(candidate_id)

    scope = [CartItem.expires_at <= now]
    if user_id is not None:
        scope.append(CartItem.user_id == user_id)
    if mentor_id is not None:
        scope.append(CartItem.mentor_id == mentor_id)
    if slot_ids is not None:
        scope.append(CartItem.slot_id.in_(slot_ids))
    condition = and_(*scope)
    if result.released_slot_ids:
        condition = or_(condition, CartItem.slot_id.in_(result.released_slot_ids))

    result.pruned_items = CartItem.query.filter(condition).delete(synchronize_session=False)
    db.session.commit()

    if result.released_slot_ids or result.pruned_items:
        logger.info(
            "Expiry sweep released %d held slot(s), pruned %d cart item(s)",
            len(result.released_slot_ids),
            result.pruned_items,
        )
    return result
