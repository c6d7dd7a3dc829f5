"""Tests for homologation issues.

Coverage:
  1. Reporting during review moves the item to homologation_issues
  2. Resolve stamps fixed_by / fixed_at and drops out of the open count
  3. Status transitions, reopen, notes, hard delete
  4. High-priority escalation notification
"""

from datetime import datetime, timedelta, timezone

import pytest

from delivery_tracker.core.exceptions import NotFoundError, ValidationError
from delivery_tracker.models import db
from delivery_tracker.models.audit import AuditEvent
from delivery_tracker.models.conversion import ConversionIssue, ConversionQueueItem
from delivery_tracker.models.notification import Notification
from delivery_tracker.services import queue_workflow as qw
from delivery_tracker.utils.helpers import ensure_utc


@pytest.fixture()
def in_review(pending_item, actor):
    """Queue item claimed and submitted for homologation."""
    qw.assign_to_me(pending_item.id, actor)
    qw.send_to_homologation(pending_item.id, actor)
    return pending_item


@pytest.fixture()
def issue(in_review, reviewer):
    return qw.report_issue(in_review.id, "Missing field X", "CPF column empty", "medium", reviewer)


class TestReportIssue:
    def test_scenario_report_during_review(self, in_review, reviewer):
        before = datetime.now(timezone.utc)
        issue = qw.report_issue(in_review.id, "Missing field X", None, "medium", reviewer)
        assert issue.status == "open"
        assert issue.reported_by == "Bruno Lima"
        reported = ensure_utc(issue.reported_at)
        assert before - timedelta(seconds=5) <= reported <= datetime.now(timezone.utc) + timedelta(seconds=5)
        assert qw.issue_stats()["open"] == 1

    def test_item_moves_to_issues(self, issue, in_review):
        item = db.session.get(ConversionQueueItem, in_review.id)
        assert item.queue_status == "homologation_issues"
        assert issue.queue_item_id == item.id
        assert issue.project_id == item.project_id

    def test_allowed_during_active_homologation(self, in_review, actor, reviewer):
        qw.start_homologation(in_review.id, reviewer)
        issue = qw.report_issue(in_review.id, "Totals differ", None, "low", reviewer)
        assert issue.priority == "low"

    def test_rejected_before_review(self, pending_item, reviewer):
        with pytest.raises(ValidationError):
            qw.report_issue(pending_item.id, "Too early", None, "medium", reviewer)
        assert ConversionIssue.query.count() == 0

    def test_title_required(self, in_review, reviewer):
        with pytest.raises(ValidationError):
            qw.report_issue(in_review.id, "  ", None, "medium", reviewer)

    def test_invalid_priority(self, in_review, reviewer):
        with pytest.raises(ValidationError):
            qw.report_issue(in_review.id, "x", None, "urgent", reviewer)

    def test_default_priority_medium(self, in_review, reviewer):
        assert qw.report_issue(in_review.id, "x", None, None, reviewer).priority == "medium"

    def test_audit_event(self, issue):
        event = AuditEvent.query.filter_by(action="issue.report").one()
        assert event.entity_type == "conversion_issue"
        assert event.entity_id == issue.id
        assert event.event_metadata["from"] == "awaiting_homologation"

    def test_high_priority_escalates(self, in_review, reviewer):
        qw.report_issue(in_review.id, "Wrong balances", None, "high", reviewer)
        notif = Notification.query.filter_by(type="issue_escalation").one()
        assert notif.team == "conversion"
        assert notif.message == "Wrong balances"

    def test_medium_priority_not_escalated(self, issue):
        assert Notification.query.filter_by(type="issue_escalation").count() == 0

    def test_resubmit_after_issues(self, issue, in_review, actor):
        item = qw.send_to_homologation(in_review.id, actor)
        assert item.queue_status == "awaiting_homologation"


class TestResolve:
    def test_scenario_resolve(self, issue, actor):
        resolved = qw.resolve_issue(issue.id, actor, notes="Backfilled from legacy")
        assert resolved.status == "resolved"
        assert resolved.fixed_by == "Ana Souza"
        assert resolved.fixed_at is not None
        assert resolved.notes == "Backfilled from legacy"
        stats = qw.issue_stats()
        assert stats["open"] == 0
        assert stats["resolved"] == 1
        assert stats["total"] == 1

    def test_resolve_twice_rejected(self, issue, actor):
        qw.resolve_issue(issue.id, actor)
        with pytest.raises(ValidationError):
            qw.resolve_issue(issue.id, actor)

    def test_notes_untouched_when_omitted(self, issue, actor):
        qw.update_issue_notes(issue.id, "keep me", actor)
        assert qw.resolve_issue(issue.id, actor).notes == "keep me"

    def test_unknown_issue(self, actor):
        with pytest.raises(NotFoundError):
            qw.resolve_issue("missing", actor)


class TestIssueStatus:
    def test_open_to_in_progress(self, issue, actor):
        updated = qw.update_issue_status(issue.id, "in_progress", actor)
        assert updated.status == "in_progress"
        assert updated.fixed_at is None
        assert qw.issue_stats()["in_progress"] == 1

    def test_resolve_via_status(self, issue, actor):
        updated = qw.update_issue_status(issue.id, "resolved", actor)
        assert updated.fixed_by == "Ana Souza"
        assert updated.fixed_at is not None

    def test_reopen_clears_fix(self, issue, actor):
        qw.resolve_issue(issue.id, actor)
        reopened = qw.update_issue_status(issue.id, "open", actor)
        assert reopened.status == "open"
        assert reopened.fixed_by is None
        assert reopened.fixed_at is None

    def test_resolved_to_in_progress_rejected(self, issue, actor):
        qw.resolve_issue(issue.id, actor)
        with pytest.raises(ValidationError):
            qw.update_issue_status(issue.id, "in_progress", actor)

    def test_unknown_status(self, issue, actor):
        with pytest.raises(ValidationError):
            qw.update_issue_status(issue.id, "wontfix", actor)

    def test_same_status_is_noop(self, issue, actor):
        qw.update_issue_status(issue.id, "open", actor)
        assert AuditEvent.query.filter_by(action="issue.update_status").count() == 0


class TestListAndDelete:
    def test_list_newest_first_and_filters(self, issue, in_review, reviewer, actor):
        second = qw.report_issue(in_review.id, "Dup records", None, "low", reviewer)
        # Make ordering independent of clock resolution
        second.reported_at = ensure_utc(issue.reported_at) + timedelta(seconds=1)
        db.session.commit()

        assert [i.id for i in qw.list_issues()] == [second.id, issue.id]
        qw.resolve_issue(issue.id, actor)
        assert [i.id for i in qw.list_issues(status="open")] == [second.id]
        assert len(qw.list_issues(project_id=in_review.project_id)) == 2
        assert qw.list_issues(project_id="other") == []

    def test_stats_scoped_to_project(self, issue, in_review):
        assert qw.issue_stats(in_review.project_id)["total"] == 1
        assert qw.issue_stats("other")["total"] == 0

    def test_hard_delete_keeps_audit(self, issue, actor):
        qw.delete_issue(issue.id, actor)
        assert db.session.get(ConversionIssue, issue.id) is None
        event = AuditEvent.query.filter_by(action="issue.delete").one()
        assert event.event_metadata["title"] == "Missing field X"
        assert qw.issue_stats()["total"] == 0

    def test_delete_unknown(self, actor):
        with pytest.raises(NotFoundError):
            qw.delete_issue("missing", actor)
