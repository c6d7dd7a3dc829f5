"""
Logging setup for the Delivery Tracker app.

- JSON lines outside debug/testing (LOG_FORMAT=json|readable overrides)
- Colored one-line format for local development
- Every record emitted during a request carries request_id and user_id,
  so service-layer log lines can be joined to the access log
- Level from LOG_LEVEL
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context, request

# Record attributes copied into JSON output when set
_CONTEXT_FIELDS = (
    "request_id",
    "user_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "project_id",
    "item_id",
)

_QUIET_LOGGERS = ("werkzeug", "sqlalchemy.engine", "alembic", "flask_limiter", "urllib3")


class RequestContextFilter(logging.Filter):
    """Stamp request_id / user_id onto records logged inside a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if has_request_context():
            if getattr(record, "request_id", None) is None:
                record.request_id = g.get("request_id")
            if getattr(record, "user_id", None) is None:
                record.user_id = request.headers.get("X-User-Id")
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "src": f"{record.module}:{record.lineno}",
        }
        entry.update({
            key: getattr(record, key)
            for key in _CONTEXT_FIELDS
            if getattr(record, key, None) is not None
        })
        if record.exc_info and record.exc_info[0] is not None:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line format for a terminal."""

    LEVEL_COLORS = {
        "DEBUG": "\033[2m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[1;31m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, "")
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        tags = [t for t in (getattr(record, "request_id", None), getattr(record, "user_id", None)) if t]
        tag_str = f" [{' '.join(tags)}]" if tags else ""
        line = f"{clock} {color}{record.levelname[:4]}{self.RESET} {record.name}{tag_str} {record.getMessage()}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _use_json(app) -> bool:
    forced = os.getenv("LOG_FORMAT", "").lower()
    if forced in ("json", "readable"):
        return forced == "json"
    return not (app.debug or app.config.get("DEBUG") or app.testing or app.config.get("TESTING"))


def configure_logging(app):
    """Install one stderr handler on the root logger.

    Safe to call once per app instance; previous handlers are replaced.
    """
    as_json = _use_json(app)
    default_level = "INFO" if as_json else "DEBUG"
    level = getattr(logging, os.getenv("LOG_LEVEL", default_level).upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if as_json else ReadableFormatter())
    handler.addFilter(RequestContextFilter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not app.config.get("TESTING"):
        app.logger.info("Logging ready level=%s format=%s",
                        logging.getLevelName(level), "json" if as_json else "readable")
