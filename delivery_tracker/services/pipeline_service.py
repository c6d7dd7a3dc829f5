"""
Project Stage Pipeline — Service Layer.

Business logic for:
    - Project creation with its six fixed stages
    - Partial stage updates with status / blocking-reason / date rules
    - Progress and global status recomputation after every stage change
    - Project descriptive updates and explicit global status (archive)
    - The conversion-claim effect applied by the queue workflow

Rules:
  - db.session.commit() happens only in service modules.
  - Each public mutation commits once: entity change + audit event together.
  - Validation errors are raised before anything is written.
"""

from __future__ import annotations

import logging

from flask import current_app, has_app_context
from sqlalchemy import select

from delivery_tracker.core.exceptions import (
    ConcurrencyAnomaly,
    InvalidDateRange,
    MissingBlockingReason,
    NotFoundError,
    ValidationError,
)
from delivery_tracker.models import db
from delivery_tracker.models.audit import record_event
from delivery_tracker.models.project import GLOBAL_STATUSES, Project
from delivery_tracker.models.stage import (
    STAGE_KEYS,
    STAGE_STATUSES,
    STAGE_UPDATABLE_FIELDS,
    ProjectStage,
    is_valid_transition,
    resolve_blocking_reason,
    validate_stage_key,
)
from delivery_tracker.services import cache_service, health
from delivery_tracker.utils.helpers import commit_or_raise, ensure_utc, parse_datetime, utcnow

logger = logging.getLogger(__name__)

PROJECT_UPDATABLE_FIELDS = {
    "client_name", "ticket_number", "system_type", "project_leader", "global_status",
}


# ── Lookups ──────────────────────────────────────────────────────────────────


def get_project(project_id: str) -> Project:
    """Load a project or raise NotFoundError."""
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    return project


def list_projects(global_status: str | None = None, include_archived: bool = False) -> list[Project]:
    """Projects most recently updated first."""
    stmt = select(Project)
    if global_status:
        stmt = stmt.where(Project.global_status == global_status)
    elif not include_archived:
        stmt = stmt.where(Project.global_status != "archived")
    stmt = stmt.order_by(Project.last_updated_at.desc())
    return list(db.session.execute(stmt).scalars().all())


def _check_version(project: Project, expected_version: int | None) -> None:
    if expected_version is not None and int(expected_version) != project.version:
        raise ConcurrencyAnomaly("Project", project.id, expected_version, project.version)


# ── Create ───────────────────────────────────────────────────────────────────


def create_project(data: dict, actor: str) -> Project:
    """Create a project with all six stages in 'todo'.

    Args:
        data:  client_name (required), ticket_number, system_type, project_leader.
        actor: Display name of the caller; stored as last_updated_by.

    Returns:
        The committed Project.

    Raises:
        ValidationError: client_name missing or unknown fields supplied.
    """
    client_name = str(data.get("client_name") or "").strip()
    if not client_name:
        raise ValidationError("client_name is required", details={"client_name": "required"})

    unknown = set(data) - (PROJECT_UPDATABLE_FIELDS - {"global_status"})
    if unknown:
        raise ValidationError(
            f"Unknown project field(s): {', '.join(sorted(unknown))}",
            details={f: "unknown field" for f in unknown},
        )

    now = utcnow()
    project = Project(
        client_name=client_name,
        ticket_number=(data.get("ticket_number") or None),
        system_type=(data.get("system_type") or None),
        project_leader=(data.get("project_leader") or None),
        global_status="todo",
        overall_progress=0,
        created_at=now,
        last_updated_at=now,
        last_updated_by=actor,
    )
    for position, key in enumerate(STAGE_KEYS):
        project.stages.append(
            ProjectStage(stage_key=key, position=position, status="todo", attributes={})
        )
    db.session.add(project)
    db.session.flush()

    record_event(
        project_id=project.id,
        actor=actor,
        message=f"Project created for {client_name}",
        action="project.create",
        metadata={"client_name": client_name, "ticket_number": project.ticket_number},
    )
    commit_or_raise("Project", project.id)
    logger.info("Project created project_id=%s client=%s", project.id, client_name)
    return project


# ── Stage update ─────────────────────────────────────────────────────────────


def _normalise_stage_update(stage_key: str, stage: ProjectStage, update: dict) -> dict:
    """Validate a partial update and return the new field values.

    Only keys present in *update* are returned, plus blocking_reason
    whenever the status rules decide it.
    """
    unknown = set(update) - STAGE_UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(
            f"Unknown stage field(s): {', '.join(sorted(unknown))}",
            details={f: "unknown field" for f in unknown},
        )

    changes: dict = {}

    new_status = update.get("status", stage.status)
    if new_status not in STAGE_STATUSES:
        raise ValidationError(
            f"Invalid status '{new_status}'",
            details={"status": f"must be one of: {', '.join(sorted(STAGE_STATUSES))}"},
        )
    if "status" in update:
        changes["status"] = new_status

    requested_reason = update.get("blocking_reason")
    if requested_reason is not None and not isinstance(requested_reason, str):
        raise ValidationError("blocking_reason must be a string")
    reason = resolve_blocking_reason(new_status, requested_reason, stage.blocking_reason)
    if not is_valid_transition(stage.status, new_status, reason):
        raise MissingBlockingReason(stage_key)
    if reason != stage.blocking_reason:
        changes["blocking_reason"] = reason

    if "responsible" in update:
        responsible = update["responsible"]
        if responsible is not None:
            responsible = str(responsible).strip()
            if not responsible:
                raise ValidationError(
                    "responsible cannot be blank; send null to unset it",
                    details={"responsible": "blank"},
                )
        changes["responsible"] = responsible

    for field in ("start_date", "end_date"):
        if field in update:
            try:
                changes[field] = parse_datetime(update[field])
            except ValueError as exc:
                raise ValidationError(str(exc), details={field: "invalid date"}) from exc

    start = changes["start_date"] if "start_date" in changes else ensure_utc(stage.start_date)
    end = changes["end_date"] if "end_date" in changes else ensure_utc(stage.end_date)
    if start is not None and end is not None and end < start:
        raise InvalidDateRange(stage_key, start, end)

    if "observations" in update:
        changes["observations"] = update["observations"]

    if "attributes" in update:
        patch = update["attributes"] or {}
        if not isinstance(patch, dict):
            raise ValidationError("attributes must be an object", details={"attributes": "not a map"})
        merged = dict(stage.attributes or {})
        for key, value in patch.items():
            if value is None:
                merged.pop(str(key), None)
            else:
                merged[str(key)] = value
        changes["attributes"] = merged

    return changes


def _diff(stage: ProjectStage, changes: dict) -> dict:
    diff = {}
    for field, new in changes.items():
        old = getattr(stage, field)
        if field in ("start_date", "end_date"):
            old = ensure_utc(old)
        if old != new:
            diff[field] = {"old": old, "new": new}
    return diff


def _apply_stage_changes(project: Project, stage: ProjectStage, changes: dict, actor: str) -> dict:
    """Write validated *changes* onto *stage* and refresh project aggregates.

    Returns the field diff. Does not commit.
    """
    diff = _diff(stage, changes)
    for field, value in changes.items():
        setattr(stage, field, value)

    project.last_updated_at = utcnow()
    project.last_updated_by = actor
    project.overall_progress = health.compute_progress(project)
    project.global_status = health.derive_global_status(project)
    return diff


def update_stage(
    project_id: str,
    stage_key: str,
    partial_update: dict,
    actor: str,
    *,
    expected_version: int | None = None,
) -> Project:
    """Apply a partial update to one stage of a project.

    Args:
        project_id:       Project id.
        stage_key:        One of STAGE_KEYS.
        partial_update:   Any of status, responsible, start_date, end_date,
                          blocking_reason, observations, attributes. An
                          attribute value of None removes that key.
        actor:            Display name of the caller.
        expected_version: Optional optimistic-lock check.

    Returns:
        The committed Project.

    Raises:
        InvalidStageKey, MissingBlockingReason, InvalidDateRange,
        ValidationError, NotFoundError, ConcurrencyAnomaly, PersistenceError.
    """
    validate_stage_key(stage_key)
    project = get_project(project_id)
    _check_version(project, expected_version)

    stage = project.stage(stage_key)
    if stage is None:
        # Never expected: stages are created with the project
        raise NotFoundError(resource="ProjectStage", resource_id=f"{project_id}/{stage_key}")

    changes = _normalise_stage_update(stage_key, stage, partial_update or {})
    old_status = stage.status
    diff = _apply_stage_changes(project, stage, changes, actor)

    if "status" in diff:
        message = f"Stage {stage_key} updated: status {old_status} → {stage.status}"
    elif diff:
        message = f"Stage {stage_key} updated: {', '.join(sorted(diff))}"
    else:
        message = f"Stage {stage_key} saved without changes"
    record_event(
        project_id=project.id,
        actor=actor,
        message=message,
        action="stage.update",
        entity_type="stage",
        entity_id=str(stage.id),
        metadata={"stage": stage_key, "diff": diff},
    )
    commit_or_raise("Project", project.id)
    cache_service.invalidate_project(project.id)
    logger.info(
        "Stage updated project_id=%s stage=%s fields=%s status=%s",
        project.id, stage_key, sorted(diff), stage.status,
    )
    return project


# ── Project update ───────────────────────────────────────────────────────────


def update_project(
    project_id: str,
    data: dict,
    actor: str,
    *,
    expected_version: int | None = None,
) -> Project:
    """Update descriptive fields or set global_status explicitly.

    Setting ``global_status`` overrides the derived value until the next
    stage update recomputes it; 'archived' is never recomputed away.
    """
    project = get_project(project_id)
    _check_version(project, expected_version)

    unknown = set(data) - PROJECT_UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(
            f"Unknown project field(s): {', '.join(sorted(unknown))}",
            details={f: "unknown field" for f in unknown},
        )

    diff = {}
    if "client_name" in data:
        name = str(data.get("client_name") or "").strip()
        if not name:
            raise ValidationError("client_name cannot be empty", details={"client_name": "required"})
        data = {**data, "client_name": name}
    if "global_status" in data and data["global_status"] not in GLOBAL_STATUSES:
        raise ValidationError(
            f"Invalid global_status '{data['global_status']}'",
            details={"global_status": f"must be one of: {', '.join(sorted(GLOBAL_STATUSES))}"},
        )

    for field in sorted(PROJECT_UPDATABLE_FIELDS & set(data)):
        old = getattr(project, field)
        new = data[field] if field in ("client_name", "global_status") else (data[field] or None)
        if old != new:
            diff[field] = {"old": old, "new": new}
            setattr(project, field, new)

    project.last_updated_at = utcnow()
    project.last_updated_by = actor
    record_event(
        project_id=project.id,
        actor=actor,
        message=f"Project updated: {', '.join(sorted(diff)) or 'no changes'}",
        action="project.update",
        metadata={"diff": diff},
    )
    commit_or_raise("Project", project.id)
    cache_service.invalidate_project(project.id)
    logger.info("Project updated project_id=%s fields=%s", project.id, sorted(diff))
    return project


# ── Workflow effect (used by the conversion queue) ──────────────────────────


def apply_conversion_claim(project: Project, responsible: str, actor: str, *, set_in_progress: bool = True) -> dict:
    """Put *responsible* on the conversion stage (and start it).

    Called by the queue workflow inside its own transaction; the caller
    records the audit event and commits. Returns the stage diff.
    """
    stage = project.stage("conversion")
    if stage is None:
        raise NotFoundError(resource="ProjectStage", resource_id=f"{project.id}/conversion")
    changes = {"responsible": responsible}
    if set_in_progress:
        changes["status"] = "in-progress"
        changes["blocking_reason"] = None
    return _apply_stage_changes(project, stage, changes, actor)


def apply_conversion_release(project: Project, actor: str) -> dict:
    """Clear the conversion stage's responsible; an in-progress stage goes back to todo.

    Counterpart of apply_conversion_claim for an item returned to the
    queue. Caller commits.
    """
    stage = project.stage("conversion")
    if stage is None:
        raise NotFoundError(resource="ProjectStage", resource_id=f"{project.id}/conversion")
    changes = {"responsible": None}
    if stage.status == "in-progress":
        changes["status"] = "todo"
    return _apply_stage_changes(project, stage, changes, actor)


def apply_conversion_sent(project: Project, sent_at, actor: str) -> dict:
    """Stamp ``sentAt`` on the conversion stage attributes. Caller commits."""
    stage = project.stage("conversion")
    if stage is None:
        raise NotFoundError(resource="ProjectStage", resource_id=f"{project.id}/conversion")
    attributes = dict(stage.attributes or {})
    attributes["sentAt"] = sent_at.isoformat()
    return _apply_stage_changes(project, stage, {"attributes": attributes}, actor)


# ── Derived views ────────────────────────────────────────────────────────────


def _health_thresholds() -> dict:
    if not has_app_context():
        return {}
    cfg = current_app.config
    return {
        "warning_days": cfg.get("HEALTH_WARNING_DAYS", health.WARNING_AFTER_DAYS),
        "critical_days": cfg.get("HEALTH_CRITICAL_DAYS", health.CRITICAL_AFTER_DAYS),
    }


def get_project_summary(project_id: str) -> dict:
    """Health, progress, readiness and bottlenecks for one project (read-through cached)."""
    def _load():
        return health.project_summary(get_project(project_id), **_health_thresholds())

    return cache_service.get_cached(
        cache_service.project_summary_key(project_id),
        ttl=cache_service.SUMMARY_TTL,
        loader=_load,
    )


def serialize_project(project: Project) -> dict:
    """API shape: stored fields plus derived health/progress."""
    data = project.to_dict()
    data["health"] = health.compute_health(project, **_health_thresholds())
    data["overall_progress"] = health.compute_progress(project)
    return data
