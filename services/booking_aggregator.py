"""
Booking Aggregator: turns held cart items into Bookings.

Checkout works per mentor group. Each group walks
VALIDATING -> RESERVED_SLOTS_LOCKED -> COMMITTED, or ends ABORTED. A group is
all-or-nothing: every slot in it flips HELD -> BOOKED through a conditional
update, and one miss rolls the whole group back. Groups are independent, so
a committed group survives a later group failing.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from models import db
from models.booking import ACTIVE_STATUSES, Booking, BookingItem, BookingStatus
from models.cart_item import CartItem
from models.slot import Slot, SlotStatus
from models.user import User
from services import notifications, slot_store
from services.errors import (
    EngineError,
    Forbidden,
    InvalidState,
    NotFoundError,
    StaleCart,
    Unavailable,
    ValidationError,
)
from utils import clock

logger = logging.getLogger(__name__)


class CheckoutState(str, enum.Enum):
    VALIDATING = "VALIDATING"
    RESERVED_SLOTS_LOCKED = "RESERVED_SLOTS_LOCKED"
    COMMITTED = "COMMITTED"
    ABORTED = "ABORTED"


BOOKING_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.CANCELLED: set(),
    BookingStatus.COMPLETED: set(),
}


def assert_booking_transition(current: BookingStatus, target: BookingStatus) -> None:
    if target not in BOOKING_TRANSITIONS.get(current, set()):
        raise InvalidState(
            f"Invalid booking transition: {current.value} -> {target.value}",
            details={"from": current.value, "to": target.value},
        )


@dataclass
class GroupOutcome:
    mentor_id: int
    cart_item_ids: List[int]
    state: CheckoutState = CheckoutState.VALIDATING
    booking: Optional[Booking] = None
    # captured before commit so reporting never reloads the booking
    booking_id: Optional[int] = None
    item_count: int = 0
    error: Optional[EngineError] = None

    def abort(self, error: EngineError) -> None:
        self.state = CheckoutState.ABORTED
        self.error = error

    def to_dict(self) -> dict:
        return {
            "mentorId": self.mentor_id,
            "cartItemIds": self.cart_item_ids,
            "state": self.state.value,
            "bookingId": self.booking_id,
            "error": self.error.to_dict() if self.error is not None else None,
        }


@dataclass
class CheckoutResult:
    groups: List[GroupOutcome] = field(default_factory=list)

    @property
    def bookings(self) -> List[Booking]:
        return [g.booking for g in self.groups if g.state == CheckoutState.COMMITTED]

    @property
    def failed(self) -> List[GroupOutcome]:
        return [g for g in self.groups if g.state == CheckoutState.ABORTED]

    @property
    def partial(self) -> bool:
        return bool(self.bookings) and bool(self.failed)


@dataclass(frozen=True)
class _ItemSnapshot:
    cart_item_id: int
    slot_id: int
    date: object
    start_time: object
    end_time: object
    price: int


def _stale_reason(item: CartItem, user_id: int, now: datetime) -> Optional[str]:
    if item.expires_at is not None and item.expires_at <= now:
        return "Cart hold has expired"

    slot = db.session.get(Slot, item.slot_id, populate_existing=True)
    if slot is None or slot.status == SlotStatus.CLOSED:
        return "Slot no longer exists"
    if slot.status == SlotStatus.BOOKED:
        return "This slot has already been booked"
    if slot.status != SlotStatus.HELD or slot.held_by_user_id != user_id:
        return "Slot is no longer held for you"
    if slot.hold_expires_at is None or slot.hold_expires_at <= now:
        return "Cart hold has expired"
    return None


def _commit_group(outcome: GroupOutcome, user_id: int, snapshots: List[_ItemSnapshot], now: datetime) -> None:
    try:
        for snap in snapshots:
            booked = (
                Slot.query
                .filter(
                    Slot.id == snap.slot_id,
                    Slot.status == SlotStatus.HELD,
                    Slot.held_by_user_id == user_id,
                    Slot.hold_expires_at > now,
                )
                .update(
                    {Slot.status: SlotStatus.BOOKED, Slot.held_by_user_id: None, Slot.hold_expires_at: None},
                    synchronize_session=False,
                )
            )
            if not booked:
                db.session.rollback()
                outcome.abort(StaleCart(
                    "Slot was taken or its hold expired during checkout",
                    details={"items": [{
                        "cartItemId": snap.cart_item_id,
                        "slotId": snap.slot_id,
                        "reason": "Slot is no longer held for you",
                    }]},
                ))
                return
        outcome.state = CheckoutState.RESERVED_SLOTS_LOCKED

        booking = Booking(
            student_id=user_id,
            mentor_id=outcome.mentor_id,
            total_price=sum(s.price for s in snapshots),
            status=BookingStatus.CONFIRMED,
        )
        for snap in snapshots:
            booking.items.append(BookingItem(
                slot_id=snap.slot_id,
                date=snap.date,
                start_time=snap.start_time,
                end_time=snap.end_time,
                price=snap.price,
                status=BookingStatus.CONFIRMED,
            ))
        db.session.add(booking)
        db.session.flush()
        booking_id = booking.id

        CartItem.query.filter(
            CartItem.id.in_([s.cart_item_id for s in snapshots]),
            CartItem.user_id == user_id,
        ).delete(synchronize_session=False)

        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Checkout storage failure for user %s, mentor %s", user_id, outcome.mentor_id)
        outcome.abort(Unavailable("Storage failure while booking this mentor's slots"))
        return

    outcome.state = CheckoutState.COMMITTED
    outcome.booking = booking
    outcome.booking_id = booking_id
    outcome.item_count = len(snapshots)


def checkout(user_id: int, cart_item_ids: List[int], now: Optional[datetime] = None) -> CheckoutResult:
    now = now or clock.utcnow()
    ids = list(dict.fromkeys(cart_item_ids))
    if not ids:
        raise ValidationError("cartItemIds must not be empty")

    # 1. load, all or nothing
    rows = CartItem.query.filter(CartItem.id.in_(ids)).all()
    owned = {item.id: item for item in rows if item.user_id == user_id}
    missing = [i for i in ids if i not in owned]
    if missing:
        raise NotFoundError("Cart item(s) not found", details={"cartItemIds": missing})
    items = [owned[i] for i in ids]

    # 2. re-verify every hold
    stale: Dict[int, str] = {}
    for item in items:
        reason = _stale_reason(item, user_id, now)
        if reason:
            stale[item.id] = reason

    # 3. one booking per mentor; snapshot before any commit expires the rows
    groups: Dict[int, List[_ItemSnapshot]] = {}
    for item in items:
        groups.setdefault(item.mentor_id, []).append(_ItemSnapshot(
            cart_item_id=item.id,
            slot_id=item.slot_id,
            date=item.date,
            start_time=item.start_time,
            end_time=item.end_time,
            price=item.price,
        ))

    result = CheckoutResult()
    for mentor_id, snapshots in groups.items():
        outcome = GroupOutcome(mentor_id=mentor_id, cart_item_ids=[s.cart_item_id for s in snapshots])
        offending = [
            {"cartItemId": s.cart_item_id, "slotId": s.slot_id, "reason": stale[s.cart_item_id]}
            for s in snapshots if s.cart_item_id in stale
        ]
        if offending:
            outcome.abort(StaleCart("Some cart items can no longer be booked", details={"items": offending}))
        else:
            # 4. per-group transaction; earlier commits are never undone
            _commit_group(outcome, user_id, snapshots, now)
        result.groups.append(outcome)

    if stale:
        slot_store.expiry_sweep(now=now, user_id=user_id)

    for outcome in result.failed:
        logger.info(
            "Checkout group for user %s, mentor %s aborted: %s",
            user_id, outcome.mentor_id, outcome.error.code,
        )

    if not result.bookings:
        groups_detail = [g.to_dict() for g in result.groups]
        if all(isinstance(g.error, Unavailable) for g in result.failed):
            raise Unavailable("Checkout could not reach storage", details={"groups": groups_detail})
        raise StaleCart("No booking could be created from the selected cart items", details={"groups": groups_detail})

    # 6. fire-and-forget
    for outcome in result.groups:
        if outcome.state == CheckoutState.COMMITTED:
            notifications.booking_created(outcome.booking_id, user_id, outcome.mentor_id, outcome.item_count)
    return result


# ---------- cancellation / completion ----------

def _load_booking(booking_id: int) -> Booking:
    # row lock serializes concurrent changes to one booking (no-op on sqlite)
    booking = (
        Booking.query
        .options(selectinload(Booking.items))
        .filter(Booking.id == booking_id)
        .with_for_update()
        .first()
    )
    if booking is None:
        raise NotFoundError("Booking not found", details={"bookingId": booking_id})
    return booking


def _authorize_party(booking: Booking, actor: User) -> None:
    if actor.id in (booking.student_id, booking.mentor_id) or actor.has_role("ADMIN"):
        return
    raise Forbidden("You are not authorized to change this booking", details={"bookingId": booking.id})


def _active_items_of(booking_id: int):
    return (
        select(BookingItem.id)
        .where(BookingItem.booking_id == booking_id, BookingItem.status.in_(ACTIVE_STATUSES))
    )


def _cancel_items(booking: Booking, items: List[BookingItem], actor: User, now: datetime, reason: Optional[str]) -> bool:
    """
    Cancel ``items`` and settle the parent booking. Returns True when no
    active item remained and the booking itself became CANCELLED.

    The total and the CANCELLED flip are computed by the database from the
    committed item rows, not from ``booking.items`` as loaded, so a
    concurrent cancel of a sibling item is always accounted for.
    """
    booking_id = booking.id
    current = booking.status
    if current not in ACTIVE_STATUSES:
        raise InvalidState(
            f"Booking is {current.value} and can no longer be cancelled",
            details={"bookingId": booking_id, "status": current.value},
        )

    for item in items:
        if item.status not in ACTIVE_STATUSES:
            raise InvalidState(
                f"Booking item is already {item.status.value}",
                details={"itemId": item.id, "status": item.status.value},
            )
        if datetime.combine(item.date, item.start_time) <= now:
            raise InvalidState("Cannot cancel a session that has already started", details={"itemId": item.id})

    for item in items:
        changed = (
            BookingItem.query
            .filter(BookingItem.id == item.id, BookingItem.status.in_(ACTIVE_STATUSES))
            .update(
                {
                    BookingItem.status: BookingStatus.CANCELLED,
                    BookingItem.cancelled_at: now,
                    BookingItem.cancelled_by: actor.id,
                },
                synchronize_session=False,
            )
        )
        if not changed:
            db.session.rollback()
            raise InvalidState("Booking item changed state during cancellation", details={"itemId": item.id})

        # back on sale only while enough lead time remains
        starts_at = datetime.combine(item.date, item.start_time)
        release_to = SlotStatus.AVAILABLE if slot_store.meets_lead_time(starts_at, now) else SlotStatus.CLOSED
        freed = (
            Slot.query
            .filter(Slot.id == item.slot_id, Slot.status == SlotStatus.BOOKED)
            .update({Slot.status: release_to}, synchronize_session=False)
        )
        if not freed:
            logger.warning("Slot %s was not BOOKED when booking item %s was cancelled", item.slot_id, item.id)

    remaining_total = (
        select(func.coalesce(func.sum(BookingItem.price), 0))
        .where(BookingItem.booking_id == booking_id, BookingItem.status.in_(ACTIVE_STATUSES))
        .scalar_subquery()
    )
    updated = (
        Booking.query
        .filter(Booking.id == booking_id, Booking.status == current)
        .update({Booking.total_price: remaining_total}, synchronize_session=False)
    )
    if not updated:
        db.session.rollback()
        raise InvalidState("Booking changed state during cancellation", details={"bookingId": booking_id})

    assert_booking_transition(current, BookingStatus.CANCELLED)
    emptied = (
        Booking.query
        .filter(
            Booking.id == booking_id,
            Booking.status == current,
            ~_active_items_of(booking_id).exists(),
        )
        .update(
            {
                Booking.status: BookingStatus.CANCELLED,
                Booking.cancelled_at: now,
                Booking.cancel_reason: (reason or "")[:120] or None,
            },
            synchronize_session=False,
        )
    )
    db.session.commit()
    return bool(emptied)


def cancel_booking_item(
    booking_id: int,
    item_id: int,
    actor: User,
    now: Optional[datetime] = None,
    reason: Optional[str] = None,
) -> Booking:
    now = now or clock.utcnow()
    booking = _load_booking(booking_id)
    _authorize_party(booking, actor)

    item = next((i for i in booking.items if i.id == item_id), None)
    if item is None:
        raise NotFoundError("Booking item not found", details={"bookingId": booking_id, "itemId": item_id})

    student_id, mentor_id = booking.student_id, booking.mentor_id
    emptied = _cancel_items(booking, [item], actor, now, reason)
    notifications.booking_cancelled(booking_id, student_id, mentor_id, actor.id, 1, emptied)
    return booking


def cancel_booking(
    booking_id: int,
    actor: User,
    now: Optional[datetime] = None,
    reason: Optional[str] = None,
) -> Booking:
    now = now or clock.utcnow()
    booking = _load_booking(booking_id)
    _authorize_party(booking, actor)

    active = booking.active_items
    if booking.status in ACTIVE_STATUSES and not active:
        raise InvalidState("Booking has no active items", details={"bookingId": booking_id})

    student_id, mentor_id = booking.student_id, booking.mentor_id
    emptied = _cancel_items(booking, active, actor, now, reason)
    notifications.booking_cancelled(booking_id, student_id, mentor_id, actor.id, len(active), emptied)
    return booking


def complete_booking(booking_id: int, actor: User, now: Optional[datetime] = None) -> Booking:
    now = now or clock.utcnow()
    booking = _load_booking(booking_id)
    if actor.id != booking.mentor_id and not actor.has_role("ADMIN"):
        raise Forbidden("Only the booking's mentor can complete it", details={"bookingId": booking_id})

    current = booking.status
    assert_booking_transition(current, BookingStatus.COMPLETED)

    duration = slot_store.slot_duration()
    unfinished = [
        i.id for i in booking.active_items
        if datetime.combine(i.date, i.start_time) + duration > now
    ]
    if unfinished:
        raise InvalidState("Booking has sessions that have not ended yet", details={"itemIds": unfinished})

    student_id = booking.student_id
    updated = (
        Booking.query
        .filter(Booking.id == booking_id, Booking.status == current)
        .update({Booking.status: BookingStatus.COMPLETED, Booking.completed_at: now}, synchronize_session=False)
    )
    if not updated:
        db.session.rollback()
        raise InvalidState("Booking changed state while completing", details={"bookingId": booking_id})
    BookingItem.query.filter(
        BookingItem.booking_id == booking_id,
        BookingItem.status.in_(ACTIVE_STATUSES),
    ).update({BookingItem.status: BookingStatus.COMPLETED}, synchronize_session=False)
    db.session.commit()

    notifications.booking_completed(booking_id, student_id)
    return booking
