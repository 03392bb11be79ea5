from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session as OrmSession

from models import db
from models.booking import Booking, BookingItem, BookingStatus
from models.cart_item import CartItem
from models.notification import Notification
from models.slot import Slot, SlotStatus
from models.user import User
from services import booking_aggregator, cart, notifications, slot_store
from services.booking_aggregator import CheckoutState, assert_booking_transition
from services.errors import Forbidden, InvalidState, NotFoundError, StaleCart, Unavailable
from tests.helpers import NOW, SLOT_DAY, at


def _slot_status(slot_id):
    return db.session.get(Slot, slot_id, populate_existing=True).status


def _cart(user, *slots, now=NOW):
    return [cart.add_item(user.id, s.id, now=now).id for s in slots]


@pytest.fixture
def two_slots(mentor):
    return [slot_store.open_slot(mentor, SLOT_DAY, at(h), now=NOW) for h in (10, 11)]


def test_checkout_single_mentor(mentor, student, two_slots):
    ids = _cart(student, *two_slots)

    result = booking_aggregator.checkout(student.id, ids, now=NOW)

    assert len(result.bookings) == 1
    assert result.failed == []
    booking = result.bookings[0]
    assert booking.mentor_id == mentor.id
    assert booking.student_id == student.id
    assert booking.status == BookingStatus.CONFIRMED
    assert booking.total_price == 1000
    assert [i.start_time for i in booking.items] == [at(10), at(11)]

    assert all(_slot_status(s.id) == SlotStatus.BOOKED for s in two_slots)
    assert CartItem.query.filter_by(user_id=student.id).count() == 0


def test_checkout_groups_by_mentor(mentor, pricey_mentor, student):
    a = slot_store.open_slot(mentor, SLOT_DAY, at(10), now=NOW)
    b = slot_store.open_slot(pricey_mentor, SLOT_DAY, at(10), now=NOW)
    c = slot_store.open_slot(pricey_mentor, SLOT_DAY, at(11), now=NOW)

    result = booking_aggregator.checkout(student.id, _cart(student, a, b, c), now=NOW)

    by_mentor = {bk.mentor_id: bk for bk in result.bookings}
    assert set(by_mentor) == {mentor.id, pricey_mentor.id}
    assert by_mentor[mentor.id].total_price == 500
    assert by_mentor[pricey_mentor.id].total_price == 1600
    assert len(by_mentor[pricey_mentor.id].items) == 2


def test_stale_group_does_not_undo_other_group(mentor, pricey_mentor, student):
    stale = slot_store.open_slot(mentor, SLOT_DAY, at(10), now=NOW)
    fresh = slot_store.open_slot(pricey_mentor, SLOT_DAY, at(10), now=NOW)
    stale_ids = _cart(student, stale, now=NOW)
    fresh_ids = _cart(student, fresh, now=NOW + timedelta(minutes=10))

    result = booking_aggregator.checkout(student.id, stale_ids + fresh_ids, now=NOW + timedelta(minutes=20))

    assert result.partial
    assert [bk.mentor_id for bk in result.bookings] == [pricey_mentor.id]
    [failed] = result.failed
    assert failed.mentor_id == mentor.id
    assert failed.state == CheckoutState.ABORTED
    assert isinstance(failed.error, StaleCart)
    assert failed.to_dict()["error"]["code"] == "StaleCart"

    assert _slot_status(fresh.id) == SlotStatus.BOOKED
    assert _slot_status(stale.id) == SlotStatus.AVAILABLE
    assert Booking.query.count() == 1


def test_checkout_with_only_expired_items_raises_stale_cart(mentor, student, two_slots):
    ids = _cart(student, *two_slots)

    with pytest.raises(StaleCart):
        booking_aggregator.checkout(student.id, ids, now=NOW + timedelta(minutes=15))

    assert Booking.query.count() == 0
    assert all(_slot_status(s.id) == SlotStatus.AVAILABLE for s in two_slots)
    assert CartItem.query.count() == 0


def test_one_stale_item_aborts_its_whole_group(mentor, student, two_slots):
    first = _cart(student, two_slots[0], now=NOW)
    second = _cart(student, two_slots[1], now=NOW + timedelta(minutes=10))

    with pytest.raises(StaleCart):
        booking_aggregator.checkout(student.id, first + second, now=NOW + timedelta(minutes=20))

    assert Booking.query.count() == 0
    assert _slot_status(two_slots[1].id) == SlotStatus.HELD


def test_checkout_unknown_or_foreign_items(mentor, student, other_student, two_slots):
    theirs = _cart(other_student, two_slots[0])

    with pytest.raises(NotFoundError) as exc:
        booking_aggregator.checkout(student.id, theirs + [9999], now=NOW)
    assert exc.value.details["cartItemIds"] == theirs + [9999]
    assert _slot_status(two_slots[0].id) == SlotStatus.HELD


def test_checkout_notifies_both_parties(mentor, student, two_slots):
    booking_aggregator.checkout(student.id, _cart(student, *two_slots), now=NOW)

    assert Notification.query.filter_by(user_id=mentor.id, title="New Booking Received").count() == 1
    assert Notification.query.filter_by(user_id=student.id, title="Booking Confirmed").count() == 1


def _book(student, slots):
    result = booking_aggregator.checkout(student.id, _cart(student, *slots), now=NOW)
    return result.bookings[0]


def test_cancel_one_item_recomputes_total(mentor, student, two_slots):
    booking = _book(student, two_slots)
    first = booking.items[0]

    booking = booking_aggregator.cancel_booking_item(booking.id, first.id, student, now=NOW)

    assert booking.status == BookingStatus.CONFIRMED
    assert booking.total_price == 500
    assert db.session.get(BookingItem, first.id).status == BookingStatus.CANCELLED
    assert _slot_status(two_slots[0].id) == SlotStatus.AVAILABLE
    assert _slot_status(two_slots[1].id) == SlotStatus.BOOKED
    assert Notification.query.filter_by(user_id=mentor.id, title="Booking Updated").count() == 1


def test_cancelling_last_item_cancels_booking(mentor, student, two_slots):
    booking = _book(student, two_slots)
    first_id, second_id = [i.id for i in booking.items]

    booking_aggregator.cancel_booking_item(booking.id, first_id, student, now=NOW)
    booking = booking_aggregator.cancel_booking_item(booking.id, second_id, mentor, now=NOW, reason="sick")

    assert booking.status == BookingStatus.CANCELLED
    assert booking.total_price == 0
    assert booking.cancelled_at == NOW
    assert booking.cancel_reason == "sick"


def test_cancel_whole_booking(mentor, student, two_slots):
    booking = _book(student, two_slots)

    booking = booking_aggregator.cancel_booking(booking.id, student, now=NOW, reason="x" * 200)

    assert booking.status == BookingStatus.CANCELLED
    assert booking.total_price == 0
    assert len(booking.cancel_reason) == 120
    assert all(i.status == BookingStatus.CANCELLED for i in booking.items)
    assert all(_slot_status(s.id) == SlotStatus.AVAILABLE for s in two_slots)

    with pytest.raises(InvalidState):
        booking_aggregator.cancel_booking(booking.id, student, now=NOW)


def test_cancel_close_to_start_does_not_resell_slot(mentor, student, two_slots):
    booking = _book(student, two_slots)

    booking_aggregator.cancel_booking(booking.id, student, now=datetime(2030, 1, 4, 12, 0))

    assert all(_slot_status(s.id) == SlotStatus.CLOSED for s in two_slots)


def test_cancel_started_session_is_rejected(mentor, student, two_slots):
    booking = _book(student, two_slots)

    with pytest.raises(InvalidState):
        booking_aggregator.cancel_booking(booking.id, student, now=datetime(2030, 1, 5, 10, 15))
    assert db.session.get(Booking, booking.id, populate_existing=True).status == BookingStatus.CONFIRMED


def test_cancel_by_stranger_is_forbidden(mentor, student, other_student, admin, two_slots):
    booking = _book(student, two_slots)

    with pytest.raises(Forbidden):
        booking_aggregator.cancel_booking(booking.id, other_student, now=NOW)

    booking = booking_aggregator.cancel_booking(booking.id, admin, now=NOW)
    assert booking.status == BookingStatus.CANCELLED
    assert Notification.query.filter_by(title="Booking Cancelled").count() == 2


def test_cancel_unknown_booking_or_item(mentor, student, two_slots):
    booking = _book(student, two_slots)

    with pytest.raises(NotFoundError):
        booking_aggregator.cancel_booking(booking.id + 1, student, now=NOW)
    with pytest.raises(NotFoundError):
        booking_aggregator.cancel_booking_item(booking.id, 9999, student, now=NOW)


def test_complete_after_sessions_end(mentor, student, two_slots):
    booking = _book(student, two_slots)

    with pytest.raises(InvalidState):
        booking_aggregator.complete_booking(booking.id, mentor, now=datetime(2030, 1, 5, 11, 15))

    done = booking_aggregator.complete_booking(booking.id, mentor, now=datetime(2030, 1, 5, 11, 30))
    assert done.status == BookingStatus.COMPLETED
    assert done.completed_at == datetime(2030, 1, 5, 11, 30)
    assert all(i.status == BookingStatus.COMPLETED for i in done.items)

    with pytest.raises(InvalidState):
        booking_aggregator.complete_booking(booking.id, mentor, now=datetime(2030, 1, 6))
    with pytest.raises(InvalidState):
        booking_aggregator.cancel_booking(booking.id, mentor, now=datetime(2030, 1, 6))


def test_student_cannot_complete(mentor, student, two_slots):
    booking = _book(student, two_slots)
    with pytest.raises(Forbidden):
        booking_aggregator.complete_booking(booking.id, student, now=datetime(2030, 1, 6))


def test_cancelled_booking_cannot_complete(mentor, student, two_slots):
    booking = _book(student, two_slots)
    booking_aggregator.cancel_booking(booking.id, student, now=NOW)

    with pytest.raises(InvalidState):
        booking_aggregator.complete_booking(booking.id, mentor, now=datetime(2030, 1, 6))


@pytest.mark.parametrize("current, target", [
    (BookingStatus.CANCELLED, BookingStatus.CONFIRMED),
    (BookingStatus.COMPLETED, BookingStatus.CANCELLED),
    (BookingStatus.CONFIRMED, BookingStatus.PENDING),
])
def test_illegal_transitions(current, target):
    with pytest.raises(InvalidState):
        assert_booking_transition(current, target)


def test_storage_failure_at_checkout_is_unavailable(mentor, student, two_slots, monkeypatch):
    ids = _cart(student, *two_slots)

    def broken_commit(self):
        raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(OrmSession, "commit", broken_commit)
    with pytest.raises(Unavailable):
        booking_aggregator.checkout(student.id, ids, now=NOW)
    monkeypatch.undo()

    assert Booking.query.count() == 0
    assert CartItem.query.filter_by(user_id=student.id).count() == 2
    assert all(_slot_status(s.id) == SlotStatus.HELD for s in two_slots)


def test_notification_failure_does_not_fail_checkout(app, mentor, student, two_slots, monkeypatch):
    app.config.update(SMTP_HOST="smtp.invalid", SMTP_FROM_EMAIL="noreply@example.com")

    def lookup_down(user_id):
        raise OperationalError("SELECT users", {}, Exception("database is locked"))

    monkeypatch.setattr(notifications, "_recipient_email", lookup_down)

    result = booking_aggregator.checkout(student.id, _cart(student, *two_slots), now=NOW)

    assert len(result.bookings) == 1
    assert result.groups[0].to_dict()["bookingId"] == result.bookings[0].id
    assert Booking.query.count() == 1
    # in-app notices are stored before the mail lookup
    assert Notification.query.count() == 2


def test_concurrent_item_cancels_settle_booking(app, mentor, student, two_slots, monkeypatch):
    booking = _book(student, two_slots)
    booking_id = booking.id
    first_id, second_id = [i.id for i in booking.items]
    student_id = student.id

    load = booking_aggregator._load_booking

    def load_then_sibling_cancel(bid):
        loaded = load(bid)
        monkeypatch.setattr(booking_aggregator, "_load_booking", load)
        # another request cancels the sibling item and commits in between
        with app.app_context():
            actor = db.session.get(User, student_id)
            booking_aggregator.cancel_booking_item(bid, second_id, actor, now=NOW)
        return loaded

    monkeypatch.setattr(booking_aggregator, "_load_booking", load_then_sibling_cancel)
    booking_aggregator.cancel_booking_item(booking_id, first_id, student, now=NOW)

    row = db.session.get(Booking, booking_id, populate_existing=True)
    assert [i.status for i in row.items] == [BookingStatus.CANCELLED, BookingStatus.CANCELLED]
    assert row.total_price == 0
    assert row.status == BookingStatus.CANCELLED
    assert all(_slot_status(s.id) == SlotStatus.AVAILABLE for s in two_slots)
