"""
Shared pytest fixtures for the Delivery Tracker test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - actor / reviewer: caller identities for service calls
    - project: Pre-created Project with its six stages
    - pending_item: Project already sent to the conversion queue
"""

import os

# Cache and rate-limiter storage stay in-process for the whole suite
os.environ["REDIS_URL"] = "memory://"

import pytest  # noqa: E402

from delivery_tracker import create_app  # noqa: E402
from delivery_tracker.core.actor import Actor  # noqa: E402
from delivery_tracker.models import db as _db  # noqa: E402
from delivery_tracker.services import cache_service  # noqa: E402


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        cache_service.clear_all()
        yield
        cache_service.clear_all()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def actor():
    return Actor(user_id="u1", name="Ana Souza")


@pytest.fixture()
def reviewer():
    return Actor(user_id="u2", name="Bruno Lima")


@pytest.fixture()
def headers():
    """Identity headers for API calls made as the default actor."""
    return {"X-User-Id": "u1", "X-User-Name": "Ana Souza"}


@pytest.fixture()
def project():
    """Create and return a Project through the pipeline service."""
    from delivery_tracker.services import pipeline_service as ps

    return ps.create_project(
        {"client_name": "Padaria Central", "ticket_number": "T-100", "system_type": "erp"},
        "Ana Souza",
    )


@pytest.fixture()
def pending_item(project, actor):
    """Send the project fixture to the conversion queue."""
    from delivery_tracker.services import queue_workflow as qw

    return qw.send_to_conversion(project.id, actor)
