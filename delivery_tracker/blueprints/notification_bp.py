"""
Delivery Tracker
Notification blueprint.

Endpoints:
    GET  /api/v1/notifications                  — list for a team and/or the caller
    POST /api/v1/notifications/<id>/read        — mark one as read
"""

from flask import Blueprint, jsonify, request

from delivery_tracker.blueprints import current_actor, page_args
from delivery_tracker.core.exceptions import ValidationError
from delivery_tracker.models.notification import TEAMS
from delivery_tracker.services.notification import NotificationService

notification_bp = Blueprint("notification", __name__, url_prefix="/api/v1")


@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    """
    Query params:
        team         — team name (conversion, infra, ...)
        mine         — "true" to include notifications addressed to the caller
        unread_only  — "true" to hide read notifications
        limit/offset
    """
    team = request.args.get("team")
    if team and team not in TEAMS:
        raise ValidationError(
            f"Invalid team '{team}'",
            details={"team": f"must be one of: {', '.join(sorted(TEAMS))}"},
        )
    recipient = None
    if request.args.get("mine", "false").lower() == "true":
        recipient = current_actor().user_id
    limit, offset = page_args(default_limit=50, max_limit=200)
    items, total = NotificationService.list_for(
        team=team,
        recipient=recipient,
        unread_only=request.args.get("unread_only", "false").lower() == "true",
        limit=limit,
        offset=offset,
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@notification_bp.route("/notifications/<int:notification_id>/read", methods=["POST"])
def mark_read(notification_id):
    notif = NotificationService.mark_read(notification_id)
    return jsonify(notif.to_dict())
