"""
Request id and timing hooks.

Each response gets X-Request-ID (echoed from the caller when supplied) and
X-Request-Duration-Ms. One access-log line is written per API request:
WARNING when slower than SLOW_REQUEST_MS, ERROR on 5xx, DEBUG otherwise.
Health probes are not logged.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)


def _log_level(status: int, duration_ms: float, slow_ms: float) -> int:
    if status >= 500:
        return logging.ERROR
    if duration_ms > slow_ms:
        return logging.WARNING
    return logging.DEBUG


def init_request_timing(app: Flask):
    """Register before/after request hooks on *app*."""
    slow_ms = app.config.get("SLOW_REQUEST_MS", 1000)

    @app.before_request
    def _stamp_request():
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        g.started_at = time.perf_counter()

    @app.after_request
    def _finish_request(response):
        started = g.get("started_at")
        if started is None:
            return response

        elapsed_ms = (time.perf_counter() - started) * 1000
        response.headers["X-Request-ID"] = g.get("request_id", "")
        response.headers["X-Request-Duration-Ms"] = f"{elapsed_ms:.1f}"

        if request.blueprint == "health":
            return response

        args = request.view_args or {}
        logger.log(
            _log_level(response.status_code, elapsed_ms, slow_ms),
            "%s %s -> %d in %.0fms",
            request.method, request.path, response.status_code, elapsed_ms,
            extra={
                "method": request.method,
                "path": request.path,
                "status": response.status_code,
                "duration_ms": round(elapsed_ms, 1),
                "project_id": args.get("project_id"),
                "item_id": args.get("item_id"),
            },
        )
        return response
