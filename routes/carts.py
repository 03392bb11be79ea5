from flask import Blueprint, jsonify, g

from schemas import AddCartItemRequest
from security.rbac import require_roles
from services import cart
from services.errors import SlotUnavailable
from utils.audit import log_event
from utils.validation import parse_body
from routes.serializers import cart_item_json

carts_bp = Blueprint("carts", __name__, url_prefix="/api/carts")


@carts_bp.post("")
@require_roles("USER")
def add_to_cart():
    body = parse_body(AddCartItemRequest)
    try:
        item = cart.add_item(g.user.id, body.slot_id)
    except SlotUnavailable:
        log_event("CART_ADD_FAIL_UNAVAILABLE", user_id=g.user.id, entity="slot", entity_id=body.slot_id)
        raise
    payload = cart_item_json(item)

    log_event("CART_ADD", user_id=g.user.id, entity="cart_item", entity_id=item.id,
              metadata={"slot_id": body.slot_id})
    return jsonify(payload), 201


@carts_bp.get("")
@require_roles("USER")
def get_cart():
    view = cart.list_items(g.user.id)
    return jsonify(
        items=[cart_item_json(i) for i in view.items],
        totalItems=view.total_items,
        totalPrice=view.total_price,
    ), 200


@carts_bp.delete("/clearCart")
@require_roles("USER")
def clear_cart():
    result = cart.clear(g.user.id)

    log_event("CART_CLEAR", user_id=g.user.id, entity="cart",
              metadata={"deleted": result.deleted_count, "release_failures": result.release_failures})
    return jsonify(
        deletedCount=result.deleted_count,
        releaseFailures=result.release_failures,
        failedItemIds=result.failed_item_ids,
    ), 200


@carts_bp.delete("/<int:item_id>")
@require_roles("USER")
def remove_from_cart(item_id: int):
    released = cart.remove_item(g.user.id, item_id)

    log_event("CART_REMOVE", user_id=g.user.id, entity="cart_item", entity_id=item_id,
              metadata={"hold_released": released})
    return jsonify(message="Item removed from cart", cartItemId=item_id), 200
