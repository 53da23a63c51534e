"""
In-app notifications blueprint.

Endpoints:
    GET  /api/v1/notifications                  — ?recipient=&project_id=&unread_only=&limit=&offset=
    POST /api/v1/notifications/<id>/read        — mark one as read
    POST /api/v1/notifications/read-all         — {"recipient", "project_id"}
"""

from flask import Blueprint, jsonify, request

from portal.services.notification import NotificationService
from portal.utils.errors import E, api_error
from portal.utils.helpers import parse_bool

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/v1/notifications")


@notification_bp.route("", methods=["GET"])
def list_notifications():
    limit = min(request.args.get("limit", 50, type=int), 200)
    offset = max(request.args.get("offset", 0, type=int), 0)
    items, total = NotificationService.list_for_recipient(
        recipient=request.args.get("recipient", "all"),
        project_id=request.args.get("project_id"),
        unread_only=parse_bool(request.args.get("unread_only")),
        limit=limit,
        offset=offset,
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@notification_bp.route("/<int:notification_id>/read", methods=["POST"])
def mark_notification_read(notification_id):
    notif = NotificationService.mark_read(notification_id)
    if not notif:
        return api_error(E.NOT_FOUND, "Notification not found")
    return jsonify(notif.to_dict())


@notification_bp.route("/read-all", methods=["POST"])
def mark_all_notifications_read():
    data = request.get_json(silent=True) or {}
    count = NotificationService.mark_all_read(
        recipient=data.get("recipient", "all"),
        project_id=data.get("project_id"),
    )
    return jsonify({"updated": count})
