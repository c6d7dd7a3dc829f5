"""Project pipeline blueprint.

REST API for projects and their six fixed delivery stages.

Endpoint groups:
  Projects        GET/POST   /api/v1/projects
                  GET/PATCH  /api/v1/projects/<project_id>
  Stages          PATCH      /api/v1/projects/<project_id>/stages/<stage_key>
  Derived views   GET        /api/v1/projects/<project_id>/summary
  Queue history   GET        /api/v1/projects/<project_id>/conversion

Caller identity comes from X-User-Id / X-User-Name.
Service layer owns all business logic and commits; domain exceptions are
mapped to JSON by the application factory.
"""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

import delivery_tracker.services.pipeline_service as ps
from delivery_tracker.blueprints import current_actor, expected_version
from delivery_tracker.core.exceptions import ValidationError
from delivery_tracker.models.project import GLOBAL_STATUSES
from delivery_tracker.services import queue_store

logger = logging.getLogger(__name__)

pipeline_bp = Blueprint("pipeline", __name__, url_prefix="/api/v1")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


# ═════════════════════════════════════════════════════════════════════════
# Projects
# ═════════════════════════════════════════════════════════════════════════


@pipeline_bp.route("/projects", methods=["GET"])
def list_projects():
    """List projects, most recently updated first.

    Query params: global_status?, include_archived? (true/false)
    """
    status = request.args.get("global_status")
    if status and status not in GLOBAL_STATUSES:
        raise ValidationError(
            f"Invalid global_status '{status}'",
            details={"global_status": f"must be one of: {', '.join(sorted(GLOBAL_STATUSES))}"},
        )
    include_archived = request.args.get("include_archived", "false").lower() == "true"
    projects = ps.list_projects(global_status=status, include_archived=include_archived)
    return jsonify({
        "items": [ps.serialize_project(p) for p in projects],
        "total": len(projects),
    }), 200


@pipeline_bp.route("/projects", methods=["POST"])
def create_project():
    """Create a project with all six stages in 'todo'.

    Body: { client_name, ticket_number?, system_type?, project_leader? }
    Returns: project dict (201).
    """
    actor = current_actor()
    project = ps.create_project(_json_body(), actor.label)
    return jsonify(ps.serialize_project(project)), 201


@pipeline_bp.route("/projects/<project_id>", methods=["GET"])
def get_project(project_id):
    return jsonify(ps.serialize_project(ps.get_project(project_id))), 200


@pipeline_bp.route("/projects/<project_id>", methods=["PATCH"])
def update_project(project_id):
    """Update descriptive fields or set global_status (e.g. 'archived').

    Body: any of client_name, ticket_number, system_type, project_leader,
          global_status; optional version (or If-Match header).
    """
    data = _json_body()
    version = expected_version(data)
    data.pop("version", None)
    project = ps.update_project(project_id, data, current_actor().label, expected_version=version)
    return jsonify(ps.serialize_project(project)), 200


# ═════════════════════════════════════════════════════════════════════════
# Stages
# ═════════════════════════════════════════════════════════════════════════


@pipeline_bp.route("/projects/<project_id>/stages/<stage_key>", methods=["PATCH"])
def update_stage(project_id, stage_key):
    """Apply a partial update to one stage.

    Body: any of status, responsible, start_date, end_date, blocking_reason,
          observations, attributes; optional version (or If-Match header).
    Returns: the whole project (200).
    """
    data = _json_body()
    version = expected_version(data)
    data.pop("version", None)
    project = ps.update_stage(
        project_id, stage_key, data, current_actor().label, expected_version=version,
    )
    return jsonify(ps.serialize_project(project)), 200


# ═════════════════════════════════════════════════════════════════════════
# Derived views
# ═════════════════════════════════════════════════════════════════════════


@pipeline_bp.route("/projects/<project_id>/summary", methods=["GET"])
def project_summary(project_id):
    """Health, progress, global status, readiness and bottlenecks."""
    return jsonify(ps.get_project_summary(project_id)), 200


@pipeline_bp.route("/projects/<project_id>/conversion", methods=["GET"])
def project_conversion_history(project_id):
    """Active conversion item (if any) and the full item history."""
    ps.get_project(project_id)
    active = queue_store.active_for_project(project_id)
    history = queue_store.history_for_project(project_id)
    return jsonify({
        "active": active.to_dict() if active else None,
        "history": [item.to_dict() for item in history],
    }), 200
