"""Read-only projections consumed by the UI."""

from datetime import date, datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import selectinload

from models import db
from models.booking import Booking, BookingStatus
from models.notification import Notification
from models.slot import Slot, SlotStatus
from services import slot_store
from utils import clock


def _date_filters(q, on_date: Optional[date], start_date: Optional[date], end_date: Optional[date]):
    if on_date is not None:
        q = q.filter(Slot.date == on_date)
    if start_date is not None:
        q = q.filter(Slot.date >= start_date)
    if end_date is not None:
        q = q.filter(Slot.date <= end_date)
    return q


def available_slots(
    mentor_id: int,
    on_date: Optional[date] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    now: Optional[datetime] = None,
) -> List[Slot]:
    """AVAILABLE slots a student could still add to a cart."""
    now = now or clock.utcnow()
    # expired holds of this mentor become visible again
    slot_store.expiry_sweep(now=now, mentor_id=mentor_id)

    q = Slot.query.filter(Slot.mentor_id == mentor_id, Slot.status == SlotStatus.AVAILABLE)
    q = _date_filters(q, on_date, start_date, end_date)
    rows = q.order_by(Slot.date.asc(), Slot.start_time.asc()).all()
    return [s for s in rows if slot_store.meets_lead_time(s.starts_at, now)]


def mentor_slots(
    mentor_id: int,
    status: Optional[SlotStatus] = None,
    on_date: Optional[date] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    now: Optional[datetime] = None,
) -> Tuple[List[Slot], Dict[str, int]]:
    """The mentor's own calendar plus a count per status."""
    now = now or clock.utcnow()
    slot_store.expiry_sweep(now=now, mentor_id=mentor_id)

    q = Slot.query.filter(Slot.mentor_id == mentor_id)
    if status is not None:
        q = q.filter(Slot.status == status)
    else:
        q = q.filter(Slot.status != SlotStatus.CLOSED)
    q = _date_filters(q, on_date, start_date, end_date)
    rows = q.order_by(Slot.date.asc(), Slot.start_time.asc()).all()

    counts = (
        db.session.query(Slot.status, func.count(Slot.id))
        .filter(Slot.mentor_id == mentor_id)
        .group_by(Slot.status)
        .all()
    )
    return rows, {s.value: n for s, n in counts}


def _bookings_query(status: Optional[BookingStatus]):
    q = Booking.query.options(selectinload(Booking.items))
    if status is not None:
        q = q.filter(Booking.status == status)
    return q.order_by(Booking.created_at.desc(), Booking.id.desc())


def student_bookings(student_id: int, status: Optional[BookingStatus] = None) -> List[Booking]:
    return _bookings_query(status).filter(Booking.student_id == student_id).all()


def mentor_bookings(mentor_id: int, status: Optional[BookingStatus] = None) -> List[Booking]:
    return _bookings_query(status).filter(Booking.mentor_id == mentor_id).all()


def all_bookings(
    status: Optional[BookingStatus] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[Booking], int]:
    """One page of every booking, newest first, plus the unpaged total."""
    counted = Booking.query
    if status is not None:
        counted = counted.filter(Booking.status == status)
    total = counted.count()
    rows = _bookings_query(status).limit(limit).offset(offset).all()
    return rows, total


def notifications_for(user_id: int, unread_only: bool = False, limit: int = 100) -> List[Notification]:
    q = Notification.query.filter(Notification.user_id == user_id)
    if unread_only:
        q = q.filter(Notification.is_read.is_(False))
    return q.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()
