"""
Delivery Tracker
Audit domain model.

Models:
    - AuditEvent: immutable, append-only trail of state-changing actions.

Ordering: readers get newest first by insertion sequence. Timestamps can
collide under load, so the autoincrement id decides order, never the
wall clock alone.
"""

import json
from datetime import datetime, timezone

from delivery_tracker.models import db


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"project", "stage", "queue_item", "conversion_issue"}

AUDIT_ACTIONS = {
    # Pipeline
    "project.create",
    "project.update",
    "stage.update",
    # Conversion queue
    "queue.send_to_conversion",
    "queue.assign",
    "queue.transfer",
    "queue.send_to_homologation",
    "queue.start_homologation",
    "queue.approve_homologation",
    "queue.update_priority",
    "queue.update_notes",
    "queue.update_status",
    # Homologation issues
    "issue.report",
    "issue.update_status",
    "issue.resolve",
    "issue.update_notes",
    "issue.delete",
}


class AuditEvent(db.Model):
    """
    One row per state-changing action.

    ``metadata_json`` carries the structured payload, usually a
    ``{field: {old, new}}`` diff.
    """

    __tablename__ = "audit_events"
    __table_args__ = (
        db.Index("idx_audit_project", "project_id"),
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    project_id = db.Column(db.String(36), nullable=True)
    entity_type = db.Column(db.String(30), nullable=False, default="project")
    entity_id = db.Column(db.String(36), nullable=True)
    action = db.Column(db.String(60), nullable=False)
    actor = db.Column(db.String(150), nullable=False, default="system")
    message = db.Column(db.String(500), nullable=False)
    metadata_json = db.Column(db.Text, default="{}")
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    @property
    def event_metadata(self) -> dict:
        """Deserialise *metadata_json* to a Python dict."""
        try:
            return json.loads(self.metadata_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "message": self.message,
            "metadata": self.event_metadata,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditEvent {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Writer / reader ──────────────────────────────────────────────────────────

def record_event(
    *,
    project_id: str | None,
    actor: str,
    message: str,
    action: str,
    entity_type: str = "project",
    entity_id: str | None = None,
    metadata: dict | None = None,
) -> AuditEvent:
    """
    Append a single audit row to the current session. Nothing is written
    until the caller commits, so the event and the mutation it describes
    land in the same transaction (or neither does).

    Returns the pending AuditEvent instance.
    """
    event = AuditEvent(
        project_id=project_id,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else project_id,
        action=action,
        actor=actor or "system",
        message=message[:500],
        metadata_json=json.dumps(metadata or {}, default=str),
    )
    db.session.add(event)
    return event


def list_events(
    project_id: str | None = None,
    *,
    entity_type: str | None = None,
    entity_id: str | None = None,
    action: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[AuditEvent], int]:
    """Return ``(events, total)`` newest first in insertion order."""
    q = AuditEvent.query
    if project_id:
        q = q.filter(AuditEvent.project_id == project_id)
    if entity_type:
        q = q.filter(AuditEvent.entity_type == entity_type)
    if entity_id:
        q = q.filter(AuditEvent.entity_id == entity_id)
    if action:
        q = q.filter(AuditEvent.action.startswith(action))
    total = q.count()
    items = (
        q.order_by(AuditEvent.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return items, total
