from flask import Blueprint, jsonify, g, request

from services import listings, notifications
from security.rbac import login_required
from routes.serializers import notification_json

notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


@notifications_bp.get("")
@login_required
def my_notifications():
    unread_only = (request.args.get("unread") or "").lower() in ("1", "true", "yes")
    rows = listings.notifications_for(g.user.id, unread_only=unread_only)
    return jsonify([notification_json(n) for n in rows]), 200


@notifications_bp.patch("/<int:notification_id>/read")
@login_required
def mark_read(notification_id: int):
    note = notifications.mark_read(notification_id, g.user.id)
    return jsonify(notification_json(note)), 200


@notifications_bp.delete("/<int:notification_id>")
@login_required
def delete_notification(notification_id: int):
    notifications.delete(notification_id, g.user.id)
    return jsonify(message="Notification deleted", notificationId=notification_id), 200
