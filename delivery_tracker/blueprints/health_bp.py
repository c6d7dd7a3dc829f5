"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — process is up (load balancer probe)
    GET /api/v1/health/live   — database round-trip, cache backend and
                                a small snapshot of tracked work
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from delivery_tracker.models import db
from delivery_tracker.models.conversion import TERMINAL_QUEUE_STATUSES, ConversionQueueItem
from delivery_tracker.models.project import Project
from delivery_tracker.services import cache_service

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


def _check_database() -> dict:
    started = time.perf_counter()
    try:
        projects = db.session.execute(select(func.count(Project.id))).scalar_one()
        open_items = db.session.execute(
            select(func.count(ConversionQueueItem.id))
            .where(ConversionQueueItem.queue_status.notin_(TERMINAL_QUEUE_STATUSES))
        ).scalar_one()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("Liveness: database check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
    return {
        "status": "ok",
        "latency_ms": round((time.perf_counter() - started) * 1000, 1),
        "projects": projects,
        "open_queue_items": open_items,
    }


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """503 when the database is unreachable; a cache fallback is not an outage."""
    database = _check_database()
    checks = {
        "database": database,
        "cache": cache_service.health_check(),
        "app": {
            "name": "Delivery Tracker",
            "env": "testing" if current_app.testing else ("debug" if current_app.debug else "production"),
        },
    }
    healthy = database["status"] == "ok"
    return jsonify({
        "status": "healthy" if healthy else "degraded",
        "checks": checks,
    }), 200 if healthy else 503
