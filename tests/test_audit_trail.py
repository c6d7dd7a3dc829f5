"""Tests for the append-only audit trail."""

from delivery_tracker.models import db
from delivery_tracker.models.audit import (
    AUDIT_ACTIONS,
    AUDIT_ENTITY_TYPES,
    AuditEvent,
    list_events,
    record_event,
)
from delivery_tracker.services import pipeline_service as ps
from delivery_tracker.services import queue_workflow as qw


def test_record_event_waits_for_commit(project):
    record_event(project_id=project.id, actor="x", message="draft", action="project.update")
    db.session.rollback()
    assert AuditEvent.query.filter_by(message="draft").count() == 0


def test_newest_first_by_insertion(project):
    ps.update_stage(project.id, "infra", {"status": "in-progress"}, "x")
    ps.update_stage(project.id, "infra", {"status": "done"}, "x")
    events, total = list_events(project.id)
    assert total == 3
    assert [e.action for e in events] == ["stage.update", "stage.update", "project.create"]
    assert events[0].id > events[1].id > events[2].id
    assert events[0].event_metadata["diff"]["status"]["new"] == "done"


def test_same_timestamp_keeps_insertion_order(project):
    ts = AuditEvent.query.one().timestamp
    for n in range(3):
        record_event(project_id=project.id, actor="x", message=f"m{n}", action="project.update")
    db.session.commit()
    AuditEvent.query.update({AuditEvent.timestamp: ts})
    db.session.commit()
    events, _ = list_events(project.id, action="project.update")
    assert [e.message for e in events] == ["m2", "m1", "m0"]


def test_filters_and_paging(pending_item, project, actor):
    qw.assign_to_me(pending_item.id, actor)
    _, total = list_events(project.id)
    queue_events, queue_total = list_events(entity_type="queue_item", entity_id=pending_item.id)
    assert queue_total == 2
    assert [e.action for e in queue_events] == ["queue.assign", "queue.send_to_conversion"]

    page, paged_total = list_events(project.id, limit=1, offset=1)
    assert paged_total == total
    assert len(page) == 1

    by_prefix, _ = list_events(action="queue.")
    assert {e.action for e in by_prefix} == {"queue.assign", "queue.send_to_conversion"}


def test_actor_defaults_to_system(project):
    event = record_event(project_id=project.id, actor="", message="m", action="project.update")
    db.session.commit()
    assert event.actor == "system"


def test_metadata_serialised(project):
    event = record_event(
        project_id=project.id, actor="x", message="m", action="project.update",
        metadata={"when": project.created_at},
    )
    db.session.commit()
    assert isinstance(event.to_dict()["metadata"]["when"], str)


def test_workflow_uses_known_vocabulary(pending_item, project, actor, reviewer):
    ps.update_stage(project.id, "infra", {"status": "done"}, "x")
    ps.update_project(project.id, {"project_leader": "Lia"}, "x")
    qw.assign_to_me(pending_item.id, actor)
    qw.transfer_to(pending_item.id, "u3", "Caio Reis", actor)
    qw.update_priority(pending_item.id, 2, actor)
    qw.update_notes(pending_item.id, "n", actor)
    qw.send_to_homologation(pending_item.id, actor)
    qw.start_homologation(pending_item.id, reviewer)
    issue = qw.report_issue(pending_item.id, "Missing field X", None, "high", reviewer)
    qw.update_issue_status(issue.id, "in_progress", actor)
    qw.update_issue_notes(issue.id, "checking", actor)
    qw.resolve_issue(issue.id, actor)
    qw.delete_issue(issue.id, actor)
    qw.send_to_homologation(pending_item.id, actor)
    qw.approve_homologation(pending_item.id, reviewer)
    qw.update_queue_status(pending_item.id, "cancelled", actor)

    events = AuditEvent.query.all()
    assert {e.action for e in events} == AUDIT_ACTIONS
    assert {e.entity_type for e in events} <= AUDIT_ENTITY_TYPES
