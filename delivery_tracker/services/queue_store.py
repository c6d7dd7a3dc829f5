"""
Conversion queue — read side.

Ordered views over ConversionQueueItem used by the workflow service and
the API. The general queue order (priority ascending, then oldest sent
first) is a presentation contract only; nothing prevents claiming a
lower-priority item first.
"""

from __future__ import annotations

from sqlalchemy import func, select

from delivery_tracker.core.exceptions import NotFoundError
from delivery_tracker.models import db
from delivery_tracker.models.conversion import (
    HOMOLOGATION_STATUSES,
    TERMINAL_QUEUE_STATUSES,
    ConversionQueueItem,
)
from delivery_tracker.services import cache_service

_QUEUE_ORDER = (ConversionQueueItem.priority.asc(), ConversionQueueItem.sent_at.asc())


def _scalars(stmt) -> list[ConversionQueueItem]:
    return list(db.session.execute(stmt).scalars().all())


def general_queue(include_terminal: bool = True) -> list[ConversionQueueItem]:
    """Every item, most urgent first, oldest first within a priority."""
    stmt = select(ConversionQueueItem)
    if not include_terminal:
        stmt = stmt.where(ConversionQueueItem.queue_status.notin_(TERMINAL_QUEUE_STATUSES))
    return _scalars(stmt.order_by(*_QUEUE_ORDER))


def by_assignee(user_id: str) -> list[ConversionQueueItem]:
    stmt = (
        select(ConversionQueueItem)
        .where(ConversionQueueItem.assigned_to == user_id)
        .order_by(*_QUEUE_ORDER)
    )
    return _scalars(stmt)


def unassigned() -> list[ConversionQueueItem]:
    """Pending items nobody has claimed yet."""
    stmt = (
        select(ConversionQueueItem)
        .where(
            ConversionQueueItem.queue_status == "pending",
            ConversionQueueItem.assigned_to.is_(None),
        )
        .order_by(*_QUEUE_ORDER)
    )
    return _scalars(stmt)


def in_homologation() -> list[ConversionQueueItem]:
    stmt = (
        select(ConversionQueueItem)
        .where(ConversionQueueItem.queue_status.in_(HOMOLOGATION_STATUSES))
        .order_by(*_QUEUE_ORDER)
    )
    return _scalars(stmt)


def counts(user_id: str | None = None) -> dict:
    """Queue KPIs: pending, in_progress, done, total and the caller's own active count."""
    def _load():
        rows = db.session.execute(
            select(ConversionQueueItem.queue_status, func.count(ConversionQueueItem.id))
            .group_by(ConversionQueueItem.queue_status)
        ).all()
        by_status = {status: n for status, n in rows}
        my_queue = 0
        if user_id:
            my_queue = db.session.execute(
                select(func.count(ConversionQueueItem.id)).where(
                    ConversionQueueItem.assigned_to == user_id,
                    ConversionQueueItem.queue_status.notin_(TERMINAL_QUEUE_STATUSES),
                )
            ).scalar_one()
        return {
            "pending": by_status.get("pending", 0),
            "in_progress": by_status.get("in_progress", 0),
            "done": by_status.get("done", 0),
            "total": sum(by_status.values()),
            "my_queue": my_queue,
            "by_status": by_status,
        }

    return cache_service.get_cached(
        cache_service.queue_kpi_key(user_id), ttl=cache_service.KPI_TTL, loader=_load,
    )


def get(item_id: str) -> ConversionQueueItem:
    item = db.session.get(ConversionQueueItem, item_id)
    if item is None:
        raise NotFoundError(resource="ConversionQueueItem", resource_id=item_id)
    return item


def get_item_dict(item_id: str) -> dict:
    """Serialized queue item (read-through cached)."""
    return cache_service.get_cached(
        cache_service.queue_item_key(item_id),
        ttl=cache_service.QUEUE_ITEM_TTL,
        loader=lambda: get(item_id).to_dict(),
    )


def active_for_project(project_id: str) -> ConversionQueueItem | None:
    """The project's single non-terminal item, if any."""
    stmt = (
        select(ConversionQueueItem)
        .where(
            ConversionQueueItem.project_id == project_id,
            ConversionQueueItem.queue_status.notin_(TERMINAL_QUEUE_STATUSES),
        )
        .order_by(ConversionQueueItem.sent_at.desc())
    )
    return db.session.execute(stmt).scalars().first()


def history_for_project(project_id: str) -> list[ConversionQueueItem]:
    """All items for a project, newest first, terminal ones included."""
    stmt = (
        select(ConversionQueueItem)
        .where(ConversionQueueItem.project_id == project_id)
        .order_by(ConversionQueueItem.sent_at.desc())
    )
    return _scalars(stmt)
