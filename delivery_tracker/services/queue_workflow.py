"""
Conversion Queue Workflow — Service Layer.

Business logic for:
    - Sending a project to conversion (one active queue item per project)
    - Claiming and transferring ownership, with the conversion stage
      of the project updated in the same transaction
    - Homologation gate: submit, start review, approve, report issues
    - Homologation issue lifecycle (status, resolve, notes, hard delete)

Rules:
  - Every operation commits once; each change it makes appends one
    audit event to that commit.
  - A project never has two non-terminal queue items.
  - An owner is mandatory in in_progress / awaiting_homologation /
    homologation / homologation_issues.
  - approve_homologation on a 'done' item is a no-op.
  - Notifications are sent after commit; a failure is logged and never
    undoes the queue mutation.
"""

from __future__ import annotations

import logging
import uuid

from flask import current_app, has_app_context
from sqlalchemy import func, select

from delivery_tracker.core.actor import Actor
from delivery_tracker.core.exceptions import (
    ConcurrencyAnomaly,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from delivery_tracker.models import db
from delivery_tracker.models.audit import record_event
from delivery_tracker.models.conversion import (
    ASSIGNED_QUEUE_STATUSES,
    DEFAULT_QUEUE_PRIORITY,
    HOMOLOGATION_STATUSES,
    ISSUE_PRIORITIES,
    ISSUE_STATUSES,
    QUEUE_STATUSES,
    TERMINAL_QUEUE_STATUSES,
    ConversionIssue,
    ConversionQueueItem,
    validate_issue_transition,
)
from delivery_tracker.services import cache_service, pipeline_service, queue_store
from delivery_tracker.services.notification import NotificationService
from delivery_tracker.utils.helpers import commit_or_raise, ensure_utc, utcnow

logger = logging.getLogger(__name__)

HOMOLOGATION_SUBMIT_FROM = {"in_progress", "homologation_issues"}
ISSUE_REPORT_FROM = HOMOLOGATION_STATUSES | {"homologation_issues"}


# ═════════════════════════════════════════════════════════════════════════════
# Internal helpers
# ═════════════════════════════════════════════════════════════════════════════


def _config(key, default):
    if not has_app_context():
        return default
    return current_app.config.get(key, default)


def _check_version(item: ConversionQueueItem, expected_version: int | None) -> None:
    if expected_version is not None and int(expected_version) != item.version:
        raise ConcurrencyAnomaly("ConversionQueueItem", item.id, expected_version, item.version)


def _require_status(item: ConversionQueueItem, allowed: set, operation: str) -> None:
    if item.queue_status not in allowed:
        raise ValidationError(
            f"Cannot {operation} a queue item in status '{item.queue_status}'",
            details={"queue_status": f"must be one of: {', '.join(sorted(allowed))}"},
        )


def _validate_priority(priority) -> int:
    try:
        value = int(priority)
    except (TypeError, ValueError) as exc:
        raise ValidationError("priority must be an integer", details={"priority": "not an integer"}) from exc
    if isinstance(priority, bool) or value < 1:
        raise ValidationError("priority must be >= 1 (1 = most urgent)", details={"priority": "must be >= 1"})
    return value


def _text(value, field: str) -> str:
    """Stripped string value; None reads as empty, any other type is refused."""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", details={field: "must be a string"})
    return value.strip()


def _audit_item(item: ConversionQueueItem, actor: Actor, action: str, message: str, metadata=None):
    record_event(
        project_id=item.project_id,
        actor=actor.label,
        message=message,
        action=action,
        entity_type="queue_item",
        entity_id=item.id,
        metadata=metadata,
    )


def _commit_item(item: ConversionQueueItem) -> None:
    commit_or_raise("ConversionQueueItem", item.id)
    cache_service.invalidate_queue_item(item.id, item.project_id)


def _notify(send, *args, **kwargs):
    """Best-effort notification; the queue mutation is already committed."""
    try:
        return send(*args, **kwargs)
    except Exception as exc:
        db.session.rollback()
        logger.warning("Notification failed (%s): %s", getattr(send, "__name__", send), exc)
        return None


# ═════════════════════════════════════════════════════════════════════════════
# Queue transitions
# ═════════════════════════════════════════════════════════════════════════════


def send_to_conversion(project_id: str, actor: Actor, priority=None) -> ConversionQueueItem:
    """Create a pending queue item for *project_id* and notify the conversion team.

    Raises:
        NotFoundError:   project does not exist.
        ValidationError: bad priority or archived project.
        ConflictError:   the project already has a non-terminal queue item.
    """
    project = pipeline_service.get_project(project_id)
    if project.global_status == "archived":
        raise ValidationError("Archived projects cannot be sent to conversion")

    if priority is None:
        priority = _config("DEFAULT_QUEUE_PRIORITY", DEFAULT_QUEUE_PRIORITY)
    priority = _validate_priority(priority)

    active = queue_store.active_for_project(project_id)
    if active is not None:
        raise ConflictError("ConversionQueueItem", "project_id", project_id)

    now = utcnow()
    item = ConversionQueueItem(
        id=str(uuid.uuid4()),
        project_id=project.id,
        queue_status="pending",
        priority=priority,
        sent_by=actor.user_id,
        sent_by_name=actor.label,
        sent_at=now,
    )
    db.session.add(item)
    pipeline_service.apply_conversion_sent(project, now, actor.label)

    _audit_item(
        item, actor, "queue.send_to_conversion",
        f"Sent to conversion with priority {priority}",
        {"priority": priority},
    )
    _commit_item(item)
    logger.info("Queue item created item_id=%s project_id=%s priority=%s", item.id, project.id, priority)

    _notify(
        NotificationService.notify_conversion_request,
        item, team=_config("CONVERSION_TEAM", "conversion"),
    )
    return item


def assign_to_me(item_id: str, actor: Actor, *, expected_version: int | None = None) -> ConversionQueueItem:
    """Claim a pending, unassigned item.

    The claimer becomes responsible for the project's conversion stage,
    which moves to in-progress, in the same commit.
    """
    item = queue_store.get(item_id)
    _check_version(item, expected_version)
    if item.queue_status != "pending" or item.assigned_to is not None:
        raise ConflictError("ConversionQueueItem", "assigned_to", item.assigned_to or item.queue_status)

    # Stage effect first: its lazy loads must not autoflush the item early
    stage_diff = pipeline_service.apply_conversion_claim(item.project, actor.label, actor.label)

    now = utcnow()
    item.set_assignee(actor.user_id, actor.label, now)
    item.queue_status = "in_progress"
    item.started_at = now
    _audit_item(
        item, actor, "queue.assign",
        f"Claimed by {actor.label}",
        {"assigned_to": actor.user_id, "stage_diff": stage_diff},
    )
    _commit_item(item)
    logger.info("Queue item claimed item_id=%s user=%s", item.id, actor.user_id)
    return item


def transfer_to(
    item_id: str,
    new_user_id: str,
    new_user_name: str,
    actor: Actor,
    *,
    sync_stage: bool = True,
    expected_version: int | None = None,
) -> ConversionQueueItem:
    """Hand an owned item to another user; status is unchanged.

    With *sync_stage* the new owner also becomes the conversion stage's
    responsible.
    """
    new_user_id = _text(new_user_id, "new_user_id")
    new_user_name = _text(new_user_name, "new_user_name") or new_user_id
    if not new_user_id:
        raise ValidationError("new_user_id is required", details={"new_user_id": "required"})

    item = queue_store.get(item_id)
    _check_version(item, expected_version)
    _require_status(item, ASSIGNED_QUEUE_STATUSES, "transfer")

    previous = item.assigned_to_name or item.assigned_to
    stage_diff = {}
    if sync_stage:
        stage_diff = pipeline_service.apply_conversion_claim(
            item.project, new_user_name, actor.label, set_in_progress=False,
        )
    item.set_assignee(new_user_id, new_user_name, utcnow())
    _audit_item(
        item, actor, "queue.transfer",
        f"Transferred from {previous} to {new_user_name}",
        {"from": previous, "to": new_user_id, "stage_diff": stage_diff},
    )
    _commit_item(item)
    logger.info("Queue item transferred item_id=%s to=%s", item.id, new_user_id)

    _notify(NotificationService.notify_assignment, item, previous_owner=previous)
    return item


def send_to_homologation(item_id: str, actor: Actor, *, expected_version: int | None = None) -> ConversionQueueItem:
    item = queue_store.get(item_id)
    _check_version(item, expected_version)
    _require_status(item, HOMOLOGATION_SUBMIT_FROM, "send to homologation")

    old = item.queue_status
    item.queue_status = "awaiting_homologation"
    _audit_item(
        item, actor, "queue.send_to_homologation",
        f"Sent to homologation ({old} → awaiting_homologation)",
        {"from": old},
    )
    _commit_item(item)
    logger.info("Queue item sent to homologation item_id=%s", item.id)
    return item


def start_homologation(item_id: str, actor: Actor, *, expected_version: int | None = None) -> ConversionQueueItem:
    item = queue_store.get(item_id)
    _check_version(item, expected_version)
    _require_status(item, {"awaiting_homologation"}, "start homologation for")

    item.queue_status = "homologation"
    _audit_item(item, actor, "queue.start_homologation", f"Homologation started by {actor.label}")
    _commit_item(item)
    logger.info("Homologation started item_id=%s", item.id)
    return item


def approve_homologation(item_id: str, actor: Actor, *, expected_version: int | None = None) -> ConversionQueueItem:
    """Pass the homologation gate: status 'done', completed_at set.

    Approving an item that is already done changes nothing and writes no
    audit event.
    """
    item = queue_store.get(item_id)
    if item.queue_status == "done":
        return item
    _check_version(item, expected_version)
    _require_status(item, HOMOLOGATION_STATUSES, "approve")

    old = item.queue_status
    item.queue_status = "done"
    item.completed_at = utcnow()
    _audit_item(item, actor, "queue.approve_homologation", "Homologation approved", {"from": old})
    _commit_item(item)
    logger.info("Homologation approved item_id=%s", item.id)
    return item


def report_issue(
    item_id: str,
    title: str,
    description: str | None,
    priority: str,
    actor: Actor,
) -> ConversionIssue:
    """Record an inconsistency found during review.

    The item moves to 'homologation_issues'; a high-priority issue is
    escalated to the conversion team.
    """
    title = _text(title, "title")
    if not title:
        raise ValidationError("title is required", details={"title": "required"})
    priority = priority or "medium"
    if not isinstance(priority, str) or priority not in ISSUE_PRIORITIES:
        raise ValidationError(
            f"Invalid priority '{priority}'",
            details={"priority": f"must be one of: {', '.join(sorted(ISSUE_PRIORITIES))}"},
        )

    item = queue_store.get(item_id)
    _require_status(item, ISSUE_REPORT_FROM, "report an issue on")

    issue = ConversionIssue(
        id=str(uuid.uuid4()),
        project_id=item.project_id,
        queue_item_id=item.id,
        title=title,
        description=description,
        priority=priority,
        status="open",
        reported_by=actor.label,
        reported_at=utcnow(),
    )
    db.session.add(issue)
    old = item.queue_status
    item.queue_status = "homologation_issues"

    record_event(
        project_id=item.project_id,
        actor=actor.label,
        message=f"Issue reported ({priority}): {title}",
        action="issue.report",
        entity_type="conversion_issue",
        entity_id=issue.id,
        metadata={"queue_item_id": item.id, "from": old, "priority": priority},
    )
    _commit_item(item)
    logger.info("Issue reported issue_id=%s item_id=%s priority=%s", issue.id, item.id, priority)

    if priority == "high":
        _notify(
            NotificationService.notify_issue_escalation,
            issue, team=_config("CONVERSION_TEAM", "conversion"),
        )
    return issue


def _check_editable(item: ConversionQueueItem, field: str) -> None:
    if item.is_terminal:
        raise ValidationError(f"Cannot change {field} of a '{item.queue_status}' item")


def _check_notes(notes):
    if notes is not None and not isinstance(notes, str):
        raise ValidationError("notes must be a string", details={"notes": "must be a string"})
    return notes


def _check_status_change(item: ConversionQueueItem, status: str) -> None:
    """Refuse unknown statuses, ownerless assigned statuses and a second active item."""
    if not isinstance(status, str) or status not in QUEUE_STATUSES:
        raise ValidationError(
            f"Invalid queue status '{status}'",
            details={"queue_status": f"must be one of: {', '.join(sorted(QUEUE_STATUSES))}"},
        )
    if status in ASSIGNED_QUEUE_STATUSES and not item.assigned_to:
        raise ValidationError(
            f"Queue status '{status}' requires an assignee",
            details={"assigned_to": "required"},
        )
    if item.queue_status in TERMINAL_QUEUE_STATUSES and status not in TERMINAL_QUEUE_STATUSES:
        active = queue_store.active_for_project(item.project_id)
        if active is not None and active.id != item.id:
            raise ConflictError("ConversionQueueItem", "project_id", item.project_id)


def _apply_priority(item: ConversionQueueItem, priority: int, actor: Actor) -> None:
    old = item.priority
    item.priority = priority
    _audit_item(
        item, actor, "queue.update_priority",
        f"Priority {old} → {priority}",
        {"old": old, "new": priority},
    )


def _apply_notes(item: ConversionQueueItem, notes: str | None, actor: Actor) -> None:
    item.notes = notes
    _audit_item(item, actor, "queue.update_notes", "Notes updated")


def _apply_status(item: ConversionQueueItem, status: str, actor: Actor) -> None:
    old = item.queue_status
    stage_diff = {}
    if status == "pending" and item.assigned_to:
        # Stage effect first: its lazy loads must not autoflush the item early
        stage_diff = pipeline_service.apply_conversion_release(item.project, actor.label)

    now = utcnow()
    item.queue_status = status
    if status == "done":
        item.completed_at = now
        started = ensure_utc(item.started_at)
        if started is not None and started > now:
            item.started_at = now
    elif status == "in_progress" and item.started_at is None:
        item.started_at = now
    elif status == "pending":
        item.assigned_to = None
        item.assigned_to_name = None
        item.assigned_at = None

    metadata = {"old": old, "new": status}
    if stage_diff:
        metadata["stage_diff"] = stage_diff
    _audit_item(item, actor, "queue.update_status", f"Status {old} → {status}", metadata)


def update_priority(item_id: str, priority, actor: Actor) -> ConversionQueueItem:
    item = queue_store.get(item_id)
    _check_editable(item, "priority")
    _apply_priority(item, _validate_priority(priority), actor)
    _commit_item(item)
    logger.info("Queue priority updated item_id=%s priority=%s", item.id, item.priority)
    return item


def update_notes(item_id: str, notes: str | None, actor: Actor) -> ConversionQueueItem:
    item = queue_store.get(item_id)
    _check_editable(item, "notes")
    _apply_notes(item, _check_notes(notes), actor)
    _commit_item(item)
    logger.info("Queue notes updated item_id=%s", item.id)
    return item


def update_queue_status(
    item_id: str,
    status: str,
    actor: Actor,
    *,
    expected_version: int | None = None,
) -> ConversionQueueItem:
    """Set any status directly.

    'done' stamps completed_at, 'in_progress' stamps started_at when it is
    still empty, and 'pending' clears the owner and releases the conversion
    stage (responsible cleared, in-progress back to todo). Statuses that
    need an owner are refused on an unassigned item. Reopening a done or
    cancelled item is refused while the project has another active item.
    """
    item = queue_store.get(item_id)
    _check_version(item, expected_version)
    _check_status_change(item, status)

    old = item.queue_status
    _apply_status(item, status, actor)
    _commit_item(item)
    logger.info("Queue status set item_id=%s %s→%s", item.id, old, status)
    return item


def update_queue_item(
    item_id: str,
    changes: dict,
    actor: Actor,
    *,
    expected_version: int | None = None,
) -> ConversionQueueItem:
    """Apply any of priority, notes and queue_status in one commit.

    Every field is validated against the item as loaded before anything is
    written, so a bad field leaves the item untouched. Each changed field
    gets its own audit event.
    """
    fields = [f for f in ("priority", "notes", "queue_status") if f in changes]
    if not fields:
        raise ValidationError("Nothing to update; send priority, notes or queue_status")

    item = queue_store.get(item_id)
    _check_version(item, expected_version)
    if "priority" in changes:
        _check_editable(item, "priority")
        priority = _validate_priority(changes["priority"])
    if "notes" in changes:
        _check_editable(item, "notes")
        notes = _check_notes(changes["notes"])
    if "queue_status" in changes:
        _check_status_change(item, changes["queue_status"])

    # Status first: a stage release lazy-loads the project before the item is dirty
    if "queue_status" in changes:
        _apply_status(item, changes["queue_status"], actor)
    if "priority" in changes:
        _apply_priority(item, priority, actor)
    if "notes" in changes:
        _apply_notes(item, notes, actor)
    _commit_item(item)
    logger.info("Queue item updated item_id=%s fields=%s", item.id, ",".join(fields))
    return item


# ═════════════════════════════════════════════════════════════════════════════
# Homologation issues
# ═════════════════════════════════════════════════════════════════════════════


def get_issue(issue_id: str) -> ConversionIssue:
    issue = db.session.get(ConversionIssue, issue_id)
    if issue is None:
        raise NotFoundError(resource="ConversionIssue", resource_id=issue_id)
    return issue


def list_issues(project_id: str | None = None, status: str | None = None) -> list[ConversionIssue]:
    """Issues newest first, optionally filtered by project and/or status."""
    stmt = select(ConversionIssue)
    if project_id:
        stmt = stmt.where(ConversionIssue.project_id == project_id)
    if status:
        stmt = stmt.where(ConversionIssue.status == status)
    stmt = stmt.order_by(ConversionIssue.reported_at.desc())
    return list(db.session.execute(stmt).scalars().all())


def issue_stats(project_id: str | None = None) -> dict:
    """Counts by status: total, open, in_progress, resolved."""
    stmt = select(ConversionIssue.status, func.count(ConversionIssue.id)).group_by(ConversionIssue.status)
    if project_id:
        stmt = stmt.where(ConversionIssue.project_id == project_id)
    by_status = {status: n for status, n in db.session.execute(stmt).all()}
    return {
        "total": sum(by_status.values()),
        "open": by_status.get("open", 0),
        "in_progress": by_status.get("in_progress", 0),
        "resolved": by_status.get("resolved", 0),
    }


def _audit_issue(issue: ConversionIssue, actor: Actor, action: str, message: str, metadata=None):
    record_event(
        project_id=issue.project_id,
        actor=actor.label,
        message=message,
        action=action,
        entity_type="conversion_issue",
        entity_id=issue.id,
        metadata=metadata,
    )


def _check_issue_status(issue: ConversionIssue, status: str) -> None:
    if not isinstance(status, str) or status not in ISSUE_STATUSES:
        raise ValidationError(
            f"Invalid issue status '{status}'",
            details={"status": f"must be one of: {', '.join(sorted(ISSUE_STATUSES))}"},
        )
    if status != issue.status and not validate_issue_transition(issue.status, status):
        raise ValidationError(f"Cannot move issue from '{issue.status}' to '{status}'")


def _apply_issue_status(issue: ConversionIssue, status: str, actor: Actor) -> None:
    old = issue.status
    issue.status = status
    if status == "resolved":
        issue.fixed_by = actor.label
        issue.fixed_at = utcnow()
    else:
        issue.fixed_by = None
        issue.fixed_at = None
    _audit_issue(issue, actor, "issue.update_status", f"Issue {old} → {status}", {"old": old, "new": status})


def _apply_issue_notes(issue: ConversionIssue, notes: str | None, actor: Actor) -> None:
    issue.notes = notes
    _audit_issue(issue, actor, "issue.update_notes", "Issue notes updated")


def update_issue_status(issue_id: str, status: str, actor: Actor) -> ConversionIssue:
    """Move an issue along open → in_progress → resolved (or reopen it).

    Resolving through here stamps fixed_by/fixed_at; reopening clears them.
    """
    issue = get_issue(issue_id)
    _check_issue_status(issue, status)
    old = issue.status
    if old == status:
        return issue

    _apply_issue_status(issue, status, actor)
    commit_or_raise("ConversionIssue", issue.id)
    logger.info("Issue status updated issue_id=%s %s→%s", issue.id, old, status)
    return issue


def resolve_issue(issue_id: str, actor: Actor, notes: str | None = None) -> ConversionIssue:
    """Mark an issue resolved, recording who fixed it and their notes."""
    issue = get_issue(issue_id)
    if issue.status == "resolved":
        raise ValidationError("Issue is already resolved")
    _check_notes(notes)

    old = issue.status
    issue.status = "resolved"
    issue.fixed_by = actor.label
    issue.fixed_at = utcnow()
    if notes is not None:
        issue.notes = notes

    _audit_issue(issue, actor, "issue.resolve", f"Issue resolved: {issue.title}", {"from": old})
    commit_or_raise("ConversionIssue", issue.id)
    logger.info("Issue resolved issue_id=%s by=%s", issue.id, actor.user_id)
    return issue


def update_issue_notes(issue_id: str, notes: str | None, actor: Actor) -> ConversionIssue:
    issue = get_issue(issue_id)
    _apply_issue_notes(issue, _check_notes(notes), actor)
    commit_or_raise("ConversionIssue", issue.id)
    logger.info("Issue notes updated issue_id=%s", issue.id)
    return issue


def update_issue(issue_id: str, changes: dict, actor: Actor) -> ConversionIssue:
    """Apply status and/or notes in one commit, validating both first."""
    if not ({"status", "notes"} & set(changes)):
        raise ValidationError("Nothing to update; send status or notes")

    issue = get_issue(issue_id)
    status = changes.get("status", issue.status)
    _check_issue_status(issue, status)
    if "notes" in changes:
        notes = _check_notes(changes["notes"])

    if status != issue.status:
        _apply_issue_status(issue, status, actor)
    if "notes" in changes:
        _apply_issue_notes(issue, notes, actor)
    commit_or_raise("ConversionIssue", issue.id)
    logger.info("Issue updated issue_id=%s", issue.id)
    return issue


def delete_issue(issue_id: str, actor: Actor) -> None:
    """Hard delete; the audit trail keeps the record of it."""
    issue = get_issue(issue_id)
    _audit_issue(
        issue, actor, "issue.delete", f"Issue deleted: {issue.title}",
        {"title": issue.title, "status": issue.status, "priority": issue.priority},
    )
    db.session.delete(issue)
    commit_or_raise("ConversionIssue", issue_id)
    logger.info("Issue deleted issue_id=%s", issue_id)
