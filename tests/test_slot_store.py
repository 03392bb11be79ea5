from datetime import date, datetime, timedelta

import pytest

from models import db
from models.cart_item import CartItem
from models.slot import Slot, SlotStatus
from services import booking_aggregator, cart, slot_store
from services.errors import (
    InvalidState,
    LeadTimeViolation,
    NotFoundError,
    SlotConflict,
    SlotUnavailable,
    Unauthorized,
    ValidationError,
)
from tests.helpers import NOW, SLOT_DAY, at, make_user


def _status(slot_id):
    return db.session.get(Slot, slot_id, populate_existing=True).status


def test_lead_time_boundary_is_inclusive(mentor):
    exactly = slot_store.open_slot(mentor, date(2030, 1, 3), at(10), now=NOW)
    assert exactly.status == SlotStatus.AVAILABLE

    with pytest.raises(LeadTimeViolation):
        slot_store.open_slot(mentor, date(2030, 1, 3), at(9, 30), now=NOW)


def test_start_time_must_sit_on_grid(mentor):
    with pytest.raises(ValidationError) as exc:
        slot_store.open_slot(mentor, SLOT_DAY, at(9, 15), now=NOW)
    assert not isinstance(exc.value, LeadTimeViolation)


def test_operating_window_is_enforced(app, mentor):
    app.config["OPERATING_HOURS_START"] = 8
    app.config["OPERATING_HOURS_END"] = 18

    with pytest.raises(ValidationError):
        slot_store.open_slot(mentor, SLOT_DAY, at(7, 30), now=NOW)
    with pytest.raises(ValidationError):
        slot_store.open_slot(mentor, SLOT_DAY, at(18), now=NOW)

    last = slot_store.open_slot(mentor, SLOT_DAY, at(17, 30), now=NOW)
    assert last.end_time == at(18)


def test_price_comes_from_override_then_category(mentor, pricey_mentor):
    assert slot_store.open_slot(mentor, SLOT_DAY, at(10), now=NOW).price == 500
    assert slot_store.open_slot(pricey_mentor, SLOT_DAY, at(10), now=NOW).price == 800


def test_mentor_without_any_price_is_rejected(app):
    bare = make_user("bare@example.com", "MENTOR")
    with pytest.raises(ValidationError):
        slot_store.open_slot(bare, SLOT_DAY, at(10), now=NOW)
    assert Slot.query.count() == 0


def test_end_time_follows_slot_duration(mentor):
    slot = slot_store.open_slot(mentor, SLOT_DAY, at(23, 30), now=NOW)
    assert slot.end_time == at(0)


def test_duplicate_slot_conflicts(mentor):
    slot_store.open_slot(mentor, SLOT_DAY, at(10), now=NOW)
    with pytest.raises(SlotConflict):
        slot_store.open_slot(mentor, SLOT_DAY, at(10), now=NOW)
    assert Slot.query.count() == 1


def test_closed_slot_is_reopened_in_place(mentor):
    slot = slot_store.open_slot(mentor, SLOT_DAY, at(10), now=NOW)
    slot_store.close_slot(slot.id, mentor.id, now=NOW)
    assert _status(slot.id) == SlotStatus.CLOSED

    again = slot_store.open_slot(mentor, SLOT_DAY, at(10), now=NOW)
    assert again.id == slot.id
    assert _status(slot.id) == SlotStatus.AVAILABLE
    assert Slot.query.count() == 1


def test_close_requires_ownership(mentor, pricey_mentor):
    slot = slot_store.open_slot(mentor, SLOT_DAY, at(10), now=NOW)
    with pytest.raises(Unauthorized):
        slot_store.close_slot(slot.id, pricey_mentor.id, now=NOW)


def test_close_unknown_slot(mentor):
    with pytest.raises(NotFoundError):
        slot_store.close_slot(999, mentor.id, now=NOW)


def test_close_rejects_held_slot(mentor, student):
    slot = slot_store.open_slot(mentor, SLOT_DAY, at(10), now=NOW)
    cart.add_item(student.id, slot.id, now=NOW)

    with pytest.raises(InvalidState):
        slot_store.close_slot(slot.id, mentor.id, now=NOW)
    assert _status(slot.id) == SlotStatus.HELD


def test_close_after_hold_expired_succeeds(mentor, student):
    slot = slot_store.open_slot(mentor, SLOT_DAY, at(10), now=NOW)
    cart.add_item(student.id, slot.id, now=NOW)

    later = NOW + timedelta(minutes=16)
    slot_store.close_slot(slot.id, mentor.id, now=later)
    assert _status(slot.id) == SlotStatus.CLOSED
    assert CartItem.query.count() == 0


def test_close_inside_lead_time_is_rejected(mentor):
    slot = slot_store.open_slot(mentor, SLOT_DAY, at(10), now=NOW)
    with pytest.raises(LeadTimeViolation):
        slot_store.close_slot(slot.id, mentor.id, now=datetime(2030, 1, 4, 12, 0))


def test_reserve_only_one_winner(mentor, student, other_student):
    slot = slot_store.open_slot(mentor, SLOT_DAY, at(10), now=NOW)

    expires = slot_store.reserve_for_cart(slot.id, student.id, now=NOW)
    db.session.commit()
    assert expires == NOW + timedelta(minutes=15)

    with pytest.raises(SlotUnavailable):
        slot_store.reserve_for_cart(slot.id, other_student.id, now=NOW)

    row = db.session.get(Slot, slot.id, populate_existing=True)
    assert row.status == SlotStatus.HELD
    assert row.held_by_user_id == student.id


def test_release_hold_respects_holder(mentor, student, other_student):
    slot = slot_store.open_slot(mentor, SLOT_DAY, at(10), now=NOW)
    slot_store.reserve_for_cart(slot.id, student.id, now=NOW)
    db.session.commit()

    assert slot_store.release_hold(slot.id, user_id=other_student.id) is False
    assert slot_store.release_hold(slot.id, user_id=student.id) is True
    db.session.commit()
    assert _status(slot.id) == SlotStatus.AVAILABLE


def test_sweep_releases_only_expired_holds_and_is_idempotent(mentor, student):
    fresh = slot_store.open_slot(mentor, SLOT_DAY, at(10), now=NOW)
    stale = slot_store.open_slot(mentor, SLOT_DAY, at(11), now=NOW)
    cart.add_item(student.id, stale.id, now=NOW)
    cart.add_item(student.id, fresh.id, now=NOW + timedelta(minutes=10))

    sweep_at = NOW + timedelta(minutes=20)
    first = slot_store.expiry_sweep(now=sweep_at)
    assert first.released_slot_ids == [stale.id]
    assert first.pruned_items == 1

    second = slot_store.expiry_sweep(now=sweep_at)
    assert second.released_slot_ids == []
    assert second.pruned_items == 0

    assert _status(stale.id) == SlotStatus.AVAILABLE
    assert _status(fresh.id) == SlotStatus.HELD
    assert CartItem.query.filter_by(slot_id=fresh.id).count() == 1


def test_sweep_never_touches_booked_slots(mentor, student):
    slot = slot_store.open_slot(mentor, SLOT_DAY, at(10), now=NOW)
    item = cart.add_item(student.id, slot.id, now=NOW)
    booking_aggregator.checkout(student.id, [item.id], now=NOW)

    result = slot_store.expiry_sweep(now=NOW + timedelta(hours=1))
    assert result.released_slot_ids == []
    assert _status(slot.id) == SlotStatus.BOOKED
