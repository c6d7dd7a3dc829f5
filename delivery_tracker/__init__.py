"""
Delivery Tracker
Flask Application Factory.

Usage:
    from delivery_tracker import create_app
    app = create_app()           # defaults to APP_ENV or "development"
    app = create_app("testing")  # explicit config
"""

import logging
import os

from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import engine as _sa_engine
from sqlalchemy import event as _sa_event
from sqlalchemy.exc import SQLAlchemyError

from delivery_tracker.config import config
from delivery_tracker.core.exceptions import (
    ConcurrencyAnomaly,
    ConflictError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from delivery_tracker.middleware.logging_config import configure_logging
from delivery_tracker.middleware.rate_limiter import init_rate_limits
from delivery_tracker.middleware.timing import init_request_timing
from delivery_tracker.models import db

logger = logging.getLogger(__name__)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # limits are set per blueprint
    storage_uri=os.getenv("REDIS_URL") or "memory://",
)


def _register_error_handlers(app):
    """Map domain exceptions to JSON responses for every blueprint."""

    @app.errorhandler(ValidationError)
    def _validation(error):
        return jsonify({"error": str(error), "details": error.details}), 422

    @app.errorhandler(NotFoundError)
    def _not_found(error):
        return jsonify({"error": str(error)}), 404

    @app.errorhandler(ConflictError)
    def _conflict(error):
        return jsonify({"error": str(error), "field": error.field}), 409

    @app.errorhandler(ConcurrencyAnomaly)
    def _concurrency(error):
        return jsonify({
            "error": str(error),
            "expected_version": error.expected,
            "actual_version": error.actual,
        }), 409

    @app.errorhandler(PersistenceError)
    def _persistence(error):
        return jsonify({"error": "Database unavailable, try again"}), 503

    @app.errorhandler(SQLAlchemyError)
    def _database(error):
        db.session.rollback()
        logger.exception("Unhandled database error endpoint=%s", request.endpoint)
        return jsonify({"error": "Database unavailable, try again"}), 503

    @app.errorhandler(404)
    def _route_not_found(error):
        return jsonify({"error": "Not found", "path": request.path}), 404

    @app.errorhandler(405)
    def _method_not_allowed(error):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(429)
    def _rate_limited(error):
        return jsonify({"error": "Too many requests", "retry_after": error.description}), 429

    @app.errorhandler(500)
    def _server_error(error):
        logger.error("500 error: %s", error, exc_info=True)
        return jsonify({"error": "Internal server error"}), 500


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    cfg = config[config_name]
    # ProductionConfig validates required env vars on instantiation
    app.config.from_object(cfg() if config_name == "production" else cfg)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from delivery_tracker.models import stage as _stage_models            # noqa: F401
    from delivery_tracker.models import project as _project_models        # noqa: F401
    from delivery_tracker.models import conversion as _conversion_models  # noqa: F401
    from delivery_tracker.models import audit as _audit_models            # noqa: F401
    from delivery_tracker.models import notification as _notification_models  # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    db_uri = app.config["SQLALCHEMY_DATABASE_URI"]
    if db_uri.startswith("sqlite:///") and ":memory:" not in db_uri:
        os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        try:
            db.create_all()
            app.logger.info("db.create_all() completed successfully")
        except SQLAlchemyError as e:
            app.logger.warning("db.create_all() failed: %s", e)

    # ── Blueprints ───────────────────────────────────────────────────────
    from delivery_tracker.blueprints.audit_bp import audit_bp
    from delivery_tracker.blueprints.conversion_bp import conversion_bp
    from delivery_tracker.blueprints.health_bp import health_bp
    from delivery_tracker.blueprints.notification_bp import notification_bp
    from delivery_tracker.blueprints.pipeline_bp import pipeline_bp

    app.register_blueprint(pipeline_bp)
    app.register_blueprint(conversion_bp)
    app.register_blueprint(audit_bp)
    app.register_blueprint(notification_bp)
    app.register_blueprint(health_bp)

    _register_error_handlers(app)

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    return app
