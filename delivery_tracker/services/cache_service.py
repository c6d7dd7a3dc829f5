"""
Read-through cache for derived views.

Cached values:
  - project_summary:<project_id>  health, progress, readiness, bottlenecks
  - queue_item:<item_id>          serialized queue item
  - queue_kpis:<user_id|->        queue counters, per caller

Services call the invalidate_* helpers right after each successful commit,
so a reader never sees a view older than the last write it could observe.

Backend is Redis when REDIS_URL points at a server, otherwise a
process-local dict (also used when Redis cannot be reached at startup).
"""

import fnmatch
import json
import logging
import os
import threading
import time

import redis

logger = logging.getLogger(__name__)


class _MemoryBackend:
    """Process-local stand-in exposing the subset of the Redis API used here."""

    def __init__(self):
        self._data: dict = {}  # key → (json, expires_at)
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if time.monotonic() >= expires_at:
                del self._data[key]
                return None
            return value

    def setex(self, key, ttl_seconds, value):
        with self._lock:
            self._data[key] = (value, time.monotonic() + ttl_seconds)

    def delete(self, *keys):
        with self._lock:
            for key in keys:
                self._data.pop(key, None)

    def keys(self, pattern):
        with self._lock:
            return [k for k in self._data if fnmatch.fnmatchcase(k, pattern)]

    def flushdb(self):
        with self._lock:
            self._data.clear()

    def ping(self):
        return True


_backend = None


def _connect(url):
    if not url or url.startswith("memory://"):
        return _MemoryBackend()
    try:
        client = redis.Redis.from_url(url, decode_responses=True, socket_timeout=2)
        client.ping()
    except redis.RedisError as exc:
        logger.warning("Redis at %s unreachable (%s); using in-process cache", url.split("@")[-1], exc)
        return _MemoryBackend()
    logger.info("Cache backend: Redis at %s", url.split("@")[-1])
    return client


def _get_backend():
    global _backend
    if _backend is None:
        _backend = _connect(os.getenv("REDIS_URL"))
    return _backend


# ── TTLs (seconds) ───────────────────────────────────────────────────────

SUMMARY_TTL = 60
QUEUE_ITEM_TTL = 300
KPI_TTL = 30
DEFAULT_TTL = 300


# ── Keys ─────────────────────────────────────────────────────────────────

def project_summary_key(project_id):
    return f"project_summary:{project_id}"


def queue_item_key(item_id):
    return f"queue_item:{item_id}"


def queue_kpi_key(user_id=None):
    return f"queue_kpis:{user_id or '-'}"


# ── Read / write ─────────────────────────────────────────────────────────


def get_cached(key, ttl=DEFAULT_TTL, loader=None):
    """Return the cached JSON value for *key*.

    On a miss, call *loader* (when given), store a non-None result for
    *ttl* seconds and return it. An unreadable entry counts as a miss.
    """
    backend = _get_backend()
    raw = backend.get(key)
    if raw is not None:
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Discarding unreadable cache entry key=%s", key)
    if loader is None:
        return None
    value = loader()
    if value is not None:
        backend.setex(key, ttl, json.dumps(value, default=str))
    return value


def delete_cached(*keys):
    if keys:
        _get_backend().delete(*keys)


def invalidate_project(project_id):
    delete_cached(project_summary_key(project_id))


def invalidate_queue_item(item_id, project_id=None):
    """Drop the item, every caller's KPI snapshot and the project summary."""
    backend = _get_backend()
    keys = [queue_item_key(item_id), *(backend.keys(queue_kpi_key("*")) or [])]
    if project_id:
        keys.append(project_summary_key(project_id))
    backend.delete(*keys)


def clear_all():
    """Empty the whole cache database. Used by the test suite."""
    _get_backend().flushdb()


def health_check():
    backend = _get_backend()
    kind = "memory" if isinstance(backend, _MemoryBackend) else "redis"
    try:
        backend.ping()
    except redis.RedisError as exc:
        return {"status": "error", "backend": kind, "detail": str(exc)}
    return {"status": "ok", "backend": kind}
