"""
Delivery Tracker
Audit trail blueprint (read-only).

Endpoints:
    GET  /api/v1/audit  — list / filter audit events, newest first
"""

from flask import Blueprint, jsonify, request

from delivery_tracker.blueprints import page_args
from delivery_tracker.models.audit import list_events

audit_bp = Blueprint("audit", __name__, url_prefix="/api/v1")


@audit_bp.route("/audit", methods=["GET"])
def list_audit_events():
    """
    Return audit events with optional filters.

    Query params:
        project_id   — filter by project
        entity_type  — project | stage | queue_item | conversion_issue
        entity_id    — filter by entity id
        action       — filter by action string (prefix match)
        limit        — items per page (default 100, max 500)
        offset       — starting position
    """
    limit, offset = page_args()
    items, total = list_events(
        request.args.get("project_id"),
        entity_type=request.args.get("entity_type"),
        entity_id=request.args.get("entity_id"),
        action=request.args.get("action"),
        limit=limit,
        offset=offset,
    )
    return jsonify({
        "items": [e.to_dict() for e in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    })
