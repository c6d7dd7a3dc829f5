"""
Delivery Tracker
Blueprint helpers shared by the API modules.
"""

from flask import request

from delivery_tracker.core.actor import SYSTEM, Actor
from delivery_tracker.core.exceptions import ValidationError


def current_actor() -> Actor:
    """Caller identity from X-User-Id / X-User-Name (trusted as given)."""
    user_id = (request.headers.get("X-User-Id") or "").strip()
    name = (request.headers.get("X-User-Name") or "").strip()
    if not user_id and not name:
        return SYSTEM
    return Actor(user_id=user_id or name, name=name or user_id)


def expected_version(data: dict | None = None):
    """Optimistic-lock version from the If-Match header or a ``version`` body field."""
    raw = request.headers.get("If-Match")
    if raw is None and data:
        raw = data.get("version")
    if raw is None or raw == "":
        return None
    try:
        return int(str(raw).strip('"'))
    except ValueError as exc:
        raise ValidationError("version must be an integer", details={"version": "not an integer"}) from exc


def page_args(default_limit=100, max_limit=500):
    """limit/offset query params, clamped.

    Returns:
        (limit, offset)
    """
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    return max(limit, 1), offset
