from __future__ import annotations

from flask import Blueprint, g, request

from gule.auth import require_auth
from gule.blueprints import success
from gule.errors import NotFoundError
from gule.services.notification_service import NotificationService
from gule.validation import parse_bool, require_int

notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


@notifications_bp.route("", methods=["GET"])
@require_auth()
def list_notifications():
    service = NotificationService()
    recipient = g.identity.reference
    limit = require_int(request.args.get("limit", 20), "limit", minimum=1, maximum=50)
    return success(
        {
            "notifications": service.get_notifications(
                recipient, unread_only=parse_bool(request.args.get("unread", False)), limit=limit
            ),
            "unread_count": service.get_unread_count(recipient),
        }
    )


@notifications_bp.route("/<notification_id>/read", methods=["POST"])
@require_auth()
def mark_read(notification_id: str):
    if not NotificationService().mark_as_read(g.identity.reference, notification_id):
        raise NotFoundError("Notification not found")
    return success(None, message="Notification marked as read")


@notifications_bp.route("/read-all", methods=["POST"])
@require_auth()
def mark_all_read():
    marked = NotificationService().mark_all_as_read(g.identity.reference)
    return success({"marked": marked})
