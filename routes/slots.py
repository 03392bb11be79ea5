from flask import Blueprint, jsonify, g

from models import db
from models.user import User
from schemas import MentorSlotQuery, OpenSlotRequest, SlotQuery
from services import listings, slot_store
from services.errors import NotFoundError
from utils.audit import log_event
from security.rbac import login_required, require_roles
from utils.validation import parse_body, parse_query
from routes.serializers import slot_json

slots_bp = Blueprint("slots", __name__, url_prefix="/api/slots")


# ---------- MENTOR: open a slot ----------
@slots_bp.post("/open")
@require_roles("MENTOR")
def open_slot():
    body = parse_body(OpenSlotRequest)
    slot = slot_store.open_slot(g.user, body.date, body.start_time)
    payload = slot_json(slot)

    log_event("SLOT_OPEN", user_id=g.user.id, entity="slot", entity_id=slot.id,
              metadata={"date": payload["date"], "startTime": payload["startTime"], "price": payload["price"]})
    return jsonify(payload), 201


# ---------- MENTOR: close own slot ----------
@slots_bp.delete("/close/<int:slot_id>")
@require_roles("MENTOR")
def close_slot(slot_id: int):
    slot_store.close_slot(slot_id, g.user.id)

    log_event("SLOT_CLOSE", user_id=g.user.id, entity="slot", entity_id=slot_id)
    return jsonify(message="Slot closed successfully", slotId=slot_id), 200


# ---------- MENTOR: own calendar ----------
@slots_bp.get("/my-slots")
@require_roles("MENTOR")
def my_slots():
    query = parse_query(MentorSlotQuery)
    slots, counts = listings.mentor_slots(
        g.user.id,
        status=query.status,
        on_date=query.date,
        start_date=query.start_date,
        end_date=query.end_date,
    )
    return jsonify(
        slots=[slot_json(s) for s in slots],
        totalCount=len(slots),
        statusCounts=counts,
    ), 200


# ---------- ANY: bookable slots of a mentor ----------
@slots_bp.get("/mentor/<int:mentor_id>")
@login_required
def mentor_available_slots(mentor_id: int):
    query = parse_query(SlotQuery)

    mentor = db.session.get(User, mentor_id)
    if mentor is None or not mentor.has_role("MENTOR"):
        raise NotFoundError("Mentor not found", details={"mentorId": mentor_id})

    slots = listings.available_slots(
        mentor_id,
        on_date=query.date,
        start_date=query.start_date,
        end_date=query.end_date,
    )
    return jsonify([slot_json(s) for s in slots]), 200
