"""Conversion queue blueprint.

REST API for the conversion queue workflow and homologation issues.

Endpoint groups:
  Queue views       GET    /api/v1/conversion/queue?view=all|mine|unassigned|homologation
                    GET    /api/v1/conversion/queue/kpis
                    GET    /api/v1/conversion/queue/<item_id>
  Queue entry       POST   /api/v1/conversion/queue
  Transitions       POST   /api/v1/conversion/queue/<item_id>/assign
                    POST   /api/v1/conversion/queue/<item_id>/transfer
                    POST   /api/v1/conversion/queue/<item_id>/send-to-homologation
                    POST   /api/v1/conversion/queue/<item_id>/start-homologation
                    POST   /api/v1/conversion/queue/<item_id>/approve
                    POST   /api/v1/conversion/queue/<item_id>/issues
  Metadata          PATCH  /api/v1/conversion/queue/<item_id>   (priority, notes, queue_status)
  Issues            GET    /api/v1/conversion/issues
                    GET    /api/v1/conversion/issues/stats
                    PATCH  /api/v1/conversion/issues/<issue_id>   (status, notes)
                    POST   /api/v1/conversion/issues/<issue_id>/resolve
                    DELETE /api/v1/conversion/issues/<issue_id>
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

import delivery_tracker.services.queue_workflow as qw
from delivery_tracker.blueprints import current_actor, expected_version
from delivery_tracker.core.exceptions import ValidationError
from delivery_tracker.models.conversion import ISSUE_STATUSES
from delivery_tracker.services import queue_store

logger = logging.getLogger(__name__)

conversion_bp = Blueprint("conversion", __name__, url_prefix="/api/v1/conversion")

_QUEUE_VIEWS = ("all", "mine", "unassigned", "homologation")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


# ═════════════════════════════════════════════════════════════════════════
# Queue views
# ═════════════════════════════════════════════════════════════════════════


@conversion_bp.route("/queue", methods=["GET"])
def list_queue():
    """Queue items in presentation order (priority asc, oldest first).

    Query params: view (all | mine | unassigned | homologation), default all.
    """
    view = request.args.get("view", "all")
    if view not in _QUEUE_VIEWS:
        raise ValidationError(
            f"Invalid view '{view}'",
            details={"view": f"must be one of: {', '.join(_QUEUE_VIEWS)}"},
        )
    if view == "mine":
        actor = current_actor()
        items = queue_store.by_assignee(actor.user_id)
    elif view == "unassigned":
        items = queue_store.unassigned()
    elif view == "homologation":
        items = queue_store.in_homologation()
    else:
        items = queue_store.general_queue()
    return jsonify({"items": [i.to_dict() for i in items], "total": len(items)}), 200


@conversion_bp.route("/queue/kpis", methods=["GET"])
def queue_kpis():
    actor = current_actor()
    return jsonify(queue_store.counts(actor.user_id)), 200


@conversion_bp.route("/queue/<item_id>", methods=["GET"])
def get_queue_item(item_id):
    return jsonify(queue_store.get_item_dict(item_id)), 200


# ═════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════


@conversion_bp.route("/queue", methods=["POST"])
def send_to_conversion():
    """Body: { project_id, priority? } → pending queue item (201)."""
    data = _json_body()
    project_id = data.get("project_id")
    if project_id is not None and not isinstance(project_id, str):
        raise ValidationError("project_id must be a string", details={"project_id": "must be a string"})
    project_id = (project_id or "").strip()
    if not project_id:
        raise ValidationError("project_id is required", details={"project_id": "required"})
    item = qw.send_to_conversion(project_id, current_actor(), priority=data.get("priority"))
    return jsonify(item.to_dict()), 201


@conversion_bp.route("/queue/<item_id>/assign", methods=["POST"])
def assign_to_me(item_id):
    data = _json_body()
    item = qw.assign_to_me(item_id, current_actor(), expected_version=expected_version(data))
    return jsonify(item.to_dict()), 200


@conversion_bp.route("/queue/<item_id>/transfer", methods=["POST"])
def transfer(item_id):
    """Body: { user_id, user_name?, sync_stage? (default true) }."""
    data = _json_body()
    item = qw.transfer_to(
        item_id,
        data.get("user_id"),
        data.get("user_name"),
        current_actor(),
        sync_stage=bool(data.get("sync_stage", True)),
        expected_version=expected_version(data),
    )
    return jsonify(item.to_dict()), 200


@conversion_bp.route("/queue/<item_id>/send-to-homologation", methods=["POST"])
def send_to_homologation(item_id):
    data = _json_body()
    item = qw.send_to_homologation(item_id, current_actor(), expected_version=expected_version(data))
    return jsonify(item.to_dict()), 200


@conversion_bp.route("/queue/<item_id>/start-homologation", methods=["POST"])
def start_homologation(item_id):
    data = _json_body()
    item = qw.start_homologation(item_id, current_actor(), expected_version=expected_version(data))
    return jsonify(item.to_dict()), 200


@conversion_bp.route("/queue/<item_id>/approve", methods=["POST"])
def approve_homologation(item_id):
    data = _json_body()
    item = qw.approve_homologation(item_id, current_actor(), expected_version=expected_version(data))
    return jsonify(item.to_dict()), 200


@conversion_bp.route("/queue/<item_id>/issues", methods=["POST"])
def report_issue(item_id):
    """Body: { title, description?, priority? (high|medium|low) } → issue (201)."""
    data = _json_body()
    issue = qw.report_issue(
        item_id,
        data.get("title"),
        data.get("description"),
        data.get("priority") or "medium",
        current_actor(),
    )
    return jsonify(issue.to_dict()), 201


@conversion_bp.route("/queue/<item_id>", methods=["PATCH"])
def update_queue_item(item_id):
    """Body: any of priority, notes, queue_status.

    All fields are applied in one commit; a bad field rejects the whole request.
    """
    data = _json_body()
    item = qw.update_queue_item(
        item_id, data, current_actor(), expected_version=expected_version(data),
    )
    return jsonify(item.to_dict()), 200


# ═════════════════════════════════════════════════════════════════════════
# Homologation issues
# ═════════════════════════════════════════════════════════════════════════


@conversion_bp.route("/issues", methods=["GET"])
def list_issues():
    """Query params: project_id?, status? (open | in_progress | resolved)."""
    status = request.args.get("status")
    if status and status not in ISSUE_STATUSES:
        raise ValidationError(
            f"Invalid status '{status}'",
            details={"status": f"must be one of: {', '.join(sorted(ISSUE_STATUSES))}"},
        )
    issues = qw.list_issues(project_id=request.args.get("project_id"), status=status)
    return jsonify({"items": [i.to_dict() for i in issues], "total": len(issues)}), 200


@conversion_bp.route("/issues/stats", methods=["GET"])
def issue_stats():
    return jsonify(qw.issue_stats(project_id=request.args.get("project_id"))), 200


@conversion_bp.route("/issues/<issue_id>", methods=["PATCH"])
def update_issue(issue_id):
    """Body: any of status, notes."""
    data = _json_body()
    issue = qw.update_issue(issue_id, data, current_actor())
    return jsonify(issue.to_dict()), 200


@conversion_bp.route("/issues/<issue_id>/resolve", methods=["POST"])
def resolve_issue(issue_id):
    """Body: { notes? }."""
    data = _json_body()
    issue = qw.resolve_issue(issue_id, current_actor(), notes=data.get("notes"))
    return jsonify(issue.to_dict()), 200


@conversion_bp.route("/issues/<issue_id>", methods=["DELETE"])
def delete_issue(issue_id):
    qw.delete_issue(issue_id, current_actor())
    return "", 204
