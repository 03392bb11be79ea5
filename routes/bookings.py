from flask import Blueprint, jsonify, g

from schemas import AdminBookingQuery, BookingQuery, CancelRequest, CheckoutRequest
from security.rbac import require_roles
from services import booking_aggregator, listings
from services.errors import StaleCart
from utils.audit import log_event
from utils.validation import parse_body, parse_query
from routes.serializers import booking_json

bookings_bp = Blueprint("bookings", __name__, url_prefix="/api/bookings")


# ---------- USER: convert cart items into bookings ----------
@bookings_bp.post("/checkout")
@require_roles("USER")
def checkout():
    body = parse_body(CheckoutRequest)
    try:
        result = booking_aggregator.checkout(g.user.id, body.cart_item_ids)
    except StaleCart as exc:
        log_event("BOOKING_CHECKOUT_FAIL_STALE", user_id=g.user.id, entity="cart",
                  metadata={"cart_item_ids": body.cart_item_ids, "details": exc.details})
        raise

    bookings = [booking_json(b) for b in result.bookings]
    failed = [o.to_dict() for o in result.failed]

    log_event("BOOKING_CHECKOUT", user_id=g.user.id, entity="booking",
              metadata={"booking_ids": [b["id"] for b in bookings]})
    if result.partial:
        log_event("BOOKING_CHECKOUT_PARTIAL", user_id=g.user.id, entity="cart",
                  metadata={"failed_mentor_ids": [o["mentorId"] for o in failed]})
    return jsonify(bookings=bookings, failed=failed), 201


# ---------- listings ----------
@bookings_bp.get("/user")
@require_roles("USER")
def user_bookings():
    query = parse_query(BookingQuery)
    rows = listings.student_bookings(g.user.id, status=query.status)
    return jsonify([booking_json(b) for b in rows]), 200


@bookings_bp.get("/mentor")
@require_roles("MENTOR")
def mentor_bookings():
    query = parse_query(BookingQuery)
    rows = listings.mentor_bookings(g.user.id, status=query.status)
    return jsonify([booking_json(b) for b in rows]), 200


@bookings_bp.get("/all")
@require_roles("ADMIN")
def all_bookings():
    query = parse_query(AdminBookingQuery)
    rows, total = listings.all_bookings(status=query.status, limit=query.limit, offset=query.offset)
    return jsonify(
        bookings=[booking_json(b) for b in rows],
        totalCount=total,
        limit=query.limit,
        offset=query.offset,
    ), 200


# ---------- cancellation / completion ----------
@bookings_bp.patch("/<int:booking_id>/cancel")
@require_roles("USER", "MENTOR", "ADMIN")
def cancel_booking(booking_id: int):
    body = parse_body(CancelRequest, allow_empty=True)
    booking = booking_aggregator.cancel_booking(booking_id, g.user, reason=body.reason)
    payload = booking_json(booking)

    log_event("BOOKING_CANCEL", user_id=g.user.id, entity="booking", entity_id=booking_id,
              metadata={"reason": body.reason})
    return jsonify(payload), 200


@bookings_bp.patch("/<int:booking_id>/items/<int:item_id>/cancel")
@require_roles("USER", "MENTOR", "ADMIN")
def cancel_booking_item(booking_id: int, item_id: int):
    body = parse_body(CancelRequest, allow_empty=True)
    booking = booking_aggregator.cancel_booking_item(booking_id, item_id, g.user, reason=body.reason)
    payload = booking_json(booking)

    log_event("BOOKING_ITEM_CANCEL", user_id=g.user.id, entity="booking_item", entity_id=item_id,
              metadata={"booking_id": booking_id, "reason": body.reason})
    return jsonify(payload), 200


@bookings_bp.patch("/<int:booking_id>/complete")
@require_roles("MENTOR", "ADMIN")
def complete_booking(booking_id: int):
    booking = booking_aggregator.complete_booking(booking_id, g.user)
    payload = booking_json(booking)

    log_event("BOOKING_COMPLETE", user_id=g.user.id, entity="booking", entity_id=booking_id)
    return jsonify(payload), 200
