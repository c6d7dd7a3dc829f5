"""Shared utility functions used by services and blueprints.

parse_datetime:     ISO / DD.MM.YYYY input → aware datetime (ValueError on bad input)
ensure_utc:         SQLite hands back naive datetimes; treat them as UTC
commit_or_raise:    commit the session, translating SQLAlchemy failures
"""
import logging
from datetime import date, datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from delivery_tracker.core.exceptions import ConcurrencyAnomaly, PersistenceError
from delivery_tracker.models import db

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Return *value* as an aware UTC datetime (None passes through)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value):
    """Parse a datetime/date string into an aware UTC datetime.

    Accepts datetime and date objects, ISO 8601 strings (``2024-05-01``,
    ``2024-05-01T09:30:00Z``) and DD.MM.YYYY. Empty input returns None;
    anything else unparseable raises ValueError.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        try:
            return datetime.strptime(text, "%d.%m.%Y").replace(tzinfo=timezone.utc)
        except ValueError as exc:
            raise ValueError(
                f"Invalid date '{value}'. Use ISO 8601 (YYYY-MM-DD[THH:MM]) or DD.MM.YYYY."
            ) from exc


# ── Database commit helper ───────────────────────────────────────────────────

def commit_or_raise(resource: str = "record", resource_id=None):
    """Commit the current session or roll back and raise.

    StaleDataError (version_id_col mismatch) → ConcurrencyAnomaly
    Any other SQLAlchemyError → PersistenceError (original chained)

    No retry happens here; retry policy belongs to the caller.
    """
    try:
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        logger.warning("Stale write rejected resource=%s id=%s", resource, resource_id)
        raise ConcurrencyAnomaly(resource, str(resource_id)) from exc
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Database error on commit resource=%s id=%s", resource, resource_id)
        raise PersistenceError(f"Could not persist {resource} id={resource_id}") from exc

