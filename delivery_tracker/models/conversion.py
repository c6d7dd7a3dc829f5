"""
Delivery Tracker
Conversion queue domain models.

Models:
    - ConversionQueueItem: one unit of data-conversion work for a project
    - ConversionIssue:     inconsistency reported during homologation review

Architecture:
    Project ──1:N──▶ ConversionQueueItem   (at most one non-terminal at a time)
    Project ──1:N──▶ ConversionIssue ◀──N:1── ConversionQueueItem

Lifecycle states:
    ConversionQueueItem: pending → in_progress → awaiting_homologation
                         → homologation → done
                         awaiting_homologation | homologation → homologation_issues
                         homologation_issues → awaiting_homologation
                         any → cancelled  (via explicit status update)
    ConversionIssue:     open → in_progress → resolved
"""

import uuid
from datetime import datetime, timezone

from delivery_tracker.models import db


# ── Constants ────────────────────────────────────────────────────────────────

QUEUE_STATUSES = {
    "pending", "in_progress", "awaiting_homologation", "homologation",
    "homologation_issues", "approved", "done", "cancelled",
}

TERMINAL_QUEUE_STATUSES = {"done", "cancelled"}

# An owner is mandatory while work is underway or under review
ASSIGNED_QUEUE_STATUSES = {
    "in_progress", "awaiting_homologation", "homologation", "homologation_issues",
}

HOMOLOGATION_STATUSES = {"awaiting_homologation", "homologation"}

DEFAULT_QUEUE_PRIORITY = 3

ISSUE_PRIORITIES = {"high", "medium", "low"}

ISSUE_STATUSES = {"open", "in_progress", "resolved"}

ISSUE_TRANSITIONS = {
    "open":        ["in_progress", "resolved"],
    "in_progress": ["open", "resolved"],
    "resolved":    ["open"],   # re-open if the fix did not hold
}


def validate_issue_transition(old_status, new_status):
    """Return True if the issue status transition is allowed."""
    return new_status in ISSUE_TRANSITIONS.get(old_status, [])


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Queue item ───────────────────────────────────────────────────────────────


class ConversionQueueItem(db.Model):
    """
    Conversion work item referencing exactly one project.

    Finished and cancelled items are kept for reporting; nothing in the
    workflow deletes them.
    """

    __tablename__ = "conversion_queue"
    __table_args__ = (
        db.Index("idx_cq_status_priority", "queue_status", "priority", "sent_at"),
        db.Index("idx_cq_assignee", "assigned_to"),
    )

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    project_id = db.Column(
        db.String(36),
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    queue_status = db.Column(db.String(30), nullable=False, default="pending")
    priority = db.Column(
        db.Integer, nullable=False, default=DEFAULT_QUEUE_PRIORITY,
        comment="1 = most urgent; presentation ordering only",
    )

    sent_by = db.Column(db.String(150), nullable=True)
    sent_by_name = db.Column(db.String(150), nullable=True)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    assigned_to = db.Column(db.String(150), nullable=True)
    assigned_to_name = db.Column(db.String(150), nullable=True)
    assigned_at = db.Column(db.DateTime(timezone=True), nullable=True)

    started_at = db.Column(db.DateTime(timezone=True), nullable=True)
    estimated_completion = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    version = db.Column(db.Integer, nullable=False, default=1)

    project = db.relationship("Project", backref=db.backref("queue_items", lazy="dynamic"))

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_terminal(self) -> bool:
        return self.queue_status in TERMINAL_QUEUE_STATUSES

    def set_assignee(self, user_id, user_name, when=None):
        """Set owner id, display name and assignment time together."""
        self.assigned_to = user_id
        self.assigned_to_name = user_name
        self.assigned_at = when or _utcnow()

    def to_dict(self) -> dict:
        project = self.project
        return {
            "id": self.id,
            "project_id": self.project_id,
            "client_name": project.client_name if project else None,
            "ticket_number": project.ticket_number if project else None,
            "system_type": project.system_type if project else None,
            "queue_status": self.queue_status,
            "priority": self.priority,
            "sent_by": self.sent_by,
            "sent_by_name": self.sent_by_name,
            "sent_at": _iso(self.sent_at),
            "assigned_to": self.assigned_to,
            "assigned_to_name": self.assigned_to_name,
            "assigned_at": _iso(self.assigned_at),
            "started_at": _iso(self.started_at),
            "estimated_completion": _iso(self.estimated_completion),
            "completed_at": _iso(self.completed_at),
            "notes": self.notes,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "version": self.version,
        }

    def __repr__(self):
        return f"<ConversionQueueItem {self.id}: {self.queue_status} p{self.priority}>"


# ── Homologation issue ───────────────────────────────────────────────────────


class ConversionIssue(db.Model):
    """Inconsistency found while reviewing a converted dataset."""

    __tablename__ = "conversion_issues"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    project_id = db.Column(
        db.String(36),
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    queue_item_id = db.Column(
        db.String(36),
        db.ForeignKey("conversion_queue.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, nullable=True)
    priority = db.Column(db.String(10), nullable=False, default="medium")
    status = db.Column(db.String(20), nullable=False, default="open")

    reported_by = db.Column(db.String(150), nullable=True)
    reported_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    fixed_by = db.Column(db.String(150), nullable=True)
    fixed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, nullable=True)

    project = db.relationship("Project")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "queue_item_id": self.queue_item_id,
            "client_name": self.project.client_name if self.project else None,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "status": self.status,
            "reported_by": self.reported_by,
            "reported_at": _iso(self.reported_at),
            "fixed_by": self.fixed_by,
            "fixed_at": _iso(self.fixed_at),
            "notes": self.notes,
        }

    def __repr__(self):
        return f"<ConversionIssue {self.id}: {self.status} {self.title[:40]}>"
