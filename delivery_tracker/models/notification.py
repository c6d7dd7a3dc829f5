"""
Delivery Tracker
Notification domain model.

Models:
    - Notification: in-app notification addressed to a team or a user
"""

from datetime import datetime, timezone

from delivery_tracker.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_TYPES = {"conversion_request", "issue_escalation", "assignment", "system"}
TEAMS = {"conversion", "infra", "implementation", "commercial"}


class Notification(db.Model):
    """Message shown in the bell menu of a team, of one user, or both."""

    __tablename__ = "notifications"
    __table_args__ = (
        db.CheckConstraint("team IS NOT NULL OR recipient IS NOT NULL", name="ck_notification_addressee"),
    )

    id = db.Column(db.Integer, primary_key=True)
    team = db.Column(db.String(30), nullable=True, index=True)
    recipient = db.Column(db.String(150), nullable=True, index=True, comment="User id, or NULL for team-wide")
    project_id = db.Column(
        db.String(36), db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    type = db.Column(db.String(30), default="system")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")

    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    @property
    def audience(self) -> str:
        if self.recipient and self.team:
            return "team+user"
        return "user" if self.recipient else "team"

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "team": self.team,
            "recipient": self.recipient,
            "audience": self.audience,
            "project_id": self.project_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id} -> {self.recipient or self.team}: {self.title[:40]}>"
