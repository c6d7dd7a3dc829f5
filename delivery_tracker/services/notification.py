"""
Delivery Tracker
Notification Service.

Central service for creating and querying in-app notifications.
Integrated with conversion queue events (new request, escalated issue,
ownership transfer).

Notifications are a best-effort side channel: each call commits in its own
transaction, after the workflow mutation it reports has already committed.
"""

import logging

from delivery_tracker.core.exceptions import NotFoundError, ValidationError
from delivery_tracker.models import db
from delivery_tracker.models.notification import NOTIFICATION_TYPES, Notification

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, title, message="", type="system", team=None, recipient=None, project_id=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (already committed).
        """
        if type not in NOTIFICATION_TYPES:
            raise ValidationError(
                f"Invalid notification type '{type}'",
                details={"type": f"must be one of: {', '.join(sorted(NOTIFICATION_TYPES))}"},
            )
        if not team and not recipient:
            raise ValidationError("A notification needs a team or a recipient")
        notif = Notification(
            team=team,
            recipient=recipient,
            project_id=project_id,
            type=type,
            title=title,
            message=message,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    @staticmethod
    def notify_team(team, *, title, message="", type="system", project_id=None):
        """Address a notification to every member of *team*."""
        return NotificationService.create(
            title=title, message=message, type=type, team=team, project_id=project_id,
        )

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for(*, team=None, recipient=None, unread_only=False, limit=50, offset=0):
        """
        Notifications visible to a team and/or a user, newest first.

        A user sees notifications addressed to them and to their team.
        """
        q = Notification.query
        if team and recipient:
            q = q.filter((Notification.team == team) | (Notification.recipient == recipient))
        elif team:
            q = q.filter(Notification.team == team)
        elif recipient:
            q = q.filter(Notification.recipient == recipient)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )
        return items, total

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id):
        """Mark a single notification as read."""
        notif = db.session.get(Notification, notification_id)
        if notif is None:
            raise NotFoundError(resource="Notification", resource_id=notification_id)
        if not notif.is_read:
            notif.mark_read()
            db.session.commit()
        return notif

    # ── Conversion queue helpers ──────────────────────────────────────────

    @staticmethod
    def notify_conversion_request(item, team="conversion"):
        """New item entered the conversion queue."""
        project = item.project
        client = project.client_name if project else item.project_id
        ticket = f" (#{project.ticket_number})" if project and project.ticket_number else ""
        return NotificationService.notify_team(
            team,
            title=f"New conversion request: {client}{ticket}",
            message=f"Sent by {item.sent_by_name or item.sent_by or 'system'} with priority {item.priority}.",
            type="conversion_request",
            project_id=item.project_id,
        )

    @staticmethod
    def notify_issue_escalation(issue, team="conversion"):
        """High-priority homologation issue raised."""
        client = issue.project.client_name if issue.project else issue.project_id
        return NotificationService.notify_team(
            team,
            title=f"High-priority homologation issue: {client}",
            message=f"{issue.title}",
            type="issue_escalation",
            project_id=issue.project_id,
        )

    @staticmethod
    def notify_assignment(item, previous_owner=None):
        """Queue item transferred to a new owner."""
        client = item.project.client_name if item.project else item.project_id
        msg = f"{client} conversion was assigned to you"
        if previous_owner:
            msg += f" (previously {previous_owner})"
        return NotificationService.create(
            title=f"Conversion assigned: {client}",
            message=msg + ".",
            type="assignment",
            recipient=item.assigned_to,
            project_id=item.project_id,
        )
