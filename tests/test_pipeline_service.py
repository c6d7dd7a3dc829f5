"""Tests for the project pipeline service.

Coverage:
  1. create_project seeds six 'todo' stages and one audit event
  2. update_stage keeps all six keys, validates key / status / reason / dates
  3. blocked ⇔ non-empty blocking_reason after every update
  4. Attribute bag merge semantics
  5. Progress / global status recomputation
  6. Optimistic locking: expected_version and stale writes
  7. Persistence failures roll back (no stage change without its audit event)
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from delivery_tracker.core.exceptions import (
    ConcurrencyAnomaly,
    InvalidDateRange,
    InvalidStageKey,
    MissingBlockingReason,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from delivery_tracker.models import db
from delivery_tracker.models.audit import AuditEvent, list_events
from delivery_tracker.models.project import Project
from delivery_tracker.models.stage import STAGE_KEYS
from delivery_tracker.services import health
from delivery_tracker.services import pipeline_service as ps


def _events(project_id):
    items, _ = list_events(project_id)
    return items


# ── create_project ──────────────────────────────────────────────────────


class TestCreateProject:
    def test_six_todo_stages(self, project):
        assert [s.stage_key for s in project.stages] == list(STAGE_KEYS)
        assert all(s.status == "todo" for s in project.stages)
        assert all(s.responsible is None and s.start_date is None for s in project.stages)
        assert project.global_status == "todo"
        assert project.overall_progress == 0

    def test_timestamps_and_actor(self, project):
        assert project.created_at is not None
        assert project.created_at == project.last_updated_at
        assert project.last_updated_by == "Ana Souza"

    def test_creation_audit_event(self, project):
        events = _events(project.id)
        assert len(events) == 1
        assert events[0].action == "project.create"
        assert events[0].actor == "Ana Souza"

    def test_client_name_required(self):
        with pytest.raises(ValidationError):
            ps.create_project({"client_name": "   "}, "x")
        assert Project.query.count() == 0

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            ps.create_project({"client_name": "Acme", "budget": 10}, "x")


# ── update_stage ────────────────────────────────────────────────────────


class TestUpdateStage:
    def test_invalid_stage_key(self, project):
        with pytest.raises(InvalidStageKey):
            ps.update_stage(project.id, "billing", {"status": "done"}, "x")

    def test_missing_project(self):
        with pytest.raises(NotFoundError):
            ps.update_stage("nope", "infra", {"status": "done"}, "x")

    def test_unknown_field(self, project):
        with pytest.raises(ValidationError):
            ps.update_stage(project.id, "infra", {"colour": "red"}, "x")

    def test_invalid_status(self, project):
        with pytest.raises(ValidationError):
            ps.update_stage(project.id, "infra", {"status": "paused"}, "x")

    @pytest.mark.parametrize("key", STAGE_KEYS)
    def test_other_keys_preserved(self, project, key):
        ps.update_stage(project.id, key, {"status": "in-progress", "responsible": "Rita"}, "x")
        db.session.expire_all()
        p = db.session.get(Project, project.id)
        assert sorted(p.stage_map) == sorted(STAGE_KEYS)
        assert p.stage(key).status == "in-progress"
        assert all(s.status == "todo" for s in p.stages if s.stage_key != key)

    def test_updates_last_updated(self, project):
        before = project.last_updated_at
        p = ps.update_stage(project.id, "infra", {"status": "in-progress"}, "Carla")
        assert p.last_updated_by == "Carla"
        assert p.last_updated_at >= before

    def test_one_audit_event_with_diff(self, project):
        ps.update_stage(project.id, "infra", {"status": "in-progress", "responsible": "Rita"}, "Carla")
        events = _events(project.id)
        assert len(events) == 2
        latest = events[0]
        assert latest.action == "stage.update"
        assert latest.actor == "Carla"
        diff = latest.event_metadata["diff"]
        assert diff["status"] == {"old": "todo", "new": "in-progress"}
        assert diff["responsible"] == {"old": None, "new": "Rita"}

    def test_blank_responsible_rejected(self, project):
        with pytest.raises(ValidationError):
            ps.update_stage(project.id, "infra", {"responsible": "  "}, "x")

    def test_responsible_can_be_unset(self, project):
        ps.update_stage(project.id, "infra", {"responsible": "Rita"}, "x")
        p = ps.update_stage(project.id, "infra", {"responsible": None}, "x")
        assert p.stage("infra").responsible is None


class TestBlockingReason:
    def test_blocked_without_reason_rejected(self, project):
        with pytest.raises(MissingBlockingReason):
            ps.update_stage(project.id, "infra", {"status": "blocked"}, "x")
        db.session.expire_all()
        assert db.session.get(Project, project.id).stage("infra").status == "todo"
        assert len(_events(project.id)) == 1

    def test_blocked_with_reason(self, project):
        p = ps.update_stage(project.id, "infra", {"status": "blocked", "blocking_reason": "no server"}, "x")
        assert p.stage("infra").status == "blocked"
        assert p.stage("infra").blocking_reason == "no server"

    def test_reason_persists_while_blocked(self, project):
        ps.update_stage(project.id, "infra", {"status": "blocked", "blocking_reason": "no server"}, "x")
        p = ps.update_stage(project.id, "infra", {"responsible": "Rita"}, "x")
        assert p.stage("infra").status == "blocked"
        assert p.stage("infra").blocking_reason == "no server"

    def test_leaving_blocked_clears_reason(self, project):
        ps.update_stage(project.id, "infra", {"status": "blocked", "blocking_reason": "no server"}, "x")
        p = ps.update_stage(project.id, "infra", {"status": "in-progress"}, "x")
        assert p.stage("infra").blocking_reason is None

    def test_reason_ignored_when_not_blocked(self, project):
        p = ps.update_stage(project.id, "infra", {"status": "done", "blocking_reason": "stray"}, "x")
        assert p.stage("infra").blocking_reason is None

    def test_property_blocked_iff_reason(self, project):
        updates = [
            {"status": "in-progress"},
            {"status": "blocked", "blocking_reason": "vpn"},
            {"responsible": "Rita"},
            {"status": "blocked", "blocking_reason": "firewall"},
            {"status": "done"},
            {"status": "blocked", "blocking_reason": "regression"},
            {"status": "todo"},
        ]
        for update in updates:
            p = ps.update_stage(project.id, "environment", update, "x")
            stage = p.stage("environment")
            assert (stage.status == "blocked") == bool(stage.blocking_reason)


class TestDates:
    def test_valid_range(self, project):
        p = ps.update_stage(
            project.id, "infra", {"start_date": "2025-01-10", "end_date": "2025-01-20"}, "x",
        )
        stage = p.stage("infra")
        assert stage.start_date.date().isoformat() == "2025-01-10"

    def test_end_before_start(self, project):
        with pytest.raises(InvalidDateRange):
            ps.update_stage(project.id, "infra", {"start_date": "2025-01-10", "end_date": "2025-01-05"}, "x")

    def test_end_before_existing_start(self, project):
        ps.update_stage(project.id, "infra", {"start_date": "10.01.2025"}, "x")
        with pytest.raises(InvalidDateRange):
            ps.update_stage(project.id, "infra", {"end_date": "2025-01-09T23:00:00Z"}, "x")

    def test_same_day_allowed(self, project):
        p = ps.update_stage(project.id, "infra", {"start_date": "2025-01-10", "end_date": "2025-01-10"}, "x")
        assert p.stage("infra").end_date is not None

    def test_unparseable_date(self, project):
        with pytest.raises(ValidationError):
            ps.update_stage(project.id, "infra", {"start_date": "next tuesday"}, "x")


class TestAttributes:
    def test_merge_and_remove(self, project):
        ps.update_stage(project.id, "conversion", {"attributes": {"sourceSystem": "Legacy", "recordCount": 120}}, "x")
        p = ps.update_stage(project.id, "conversion", {"attributes": {"recordCount": None, "complexity": "high"}}, "x")
        assert p.stage("conversion").attributes == {"sourceSystem": "Legacy", "complexity": "high"}

    def test_must_be_object(self, project):
        with pytest.raises(ValidationError):
            ps.update_stage(project.id, "infra", {"attributes": ["a"]}, "x")


class TestDerivedAggregates:
    def test_scenario_blocked_stage_health_ok_status_blocked(self, project):
        p = ps.update_stage(project.id, "infra", {"status": "blocked", "blocking_reason": "no server"}, "x")
        assert health.compute_health(p) == "ok"
        assert p.global_status == "blocked"

    def test_progress_stored_and_never_regresses(self, project):
        ps.update_stage(project.id, "infra", {"status": "done"}, "x")
        p = ps.update_stage(project.id, "adherence", {"status": "done"}, "x")
        assert p.overall_progress == 33
        p = ps.update_stage(project.id, "adherence", {"status": "in-progress"}, "x")
        assert p.overall_progress == 33
        assert p.global_status == "in-progress"

    def test_all_done(self, project):
        for key in STAGE_KEYS:
            p = ps.update_stage(project.id, key, {"status": "done"}, "x")
        assert p.global_status == "done"
        assert p.overall_progress == 100

    def test_archived_not_recomputed(self, project):
        ps.update_project(project.id, {"global_status": "archived"}, "x")
        p = ps.update_stage(project.id, "infra", {"status": "in-progress"}, "x")
        assert p.global_status == "archived"

    def test_list_projects_hides_archived(self, project):
        other = ps.create_project({"client_name": "Other"}, "x")
        ps.update_project(other.id, {"global_status": "archived"}, "x")
        assert [p.id for p in ps.list_projects()] == [project.id]
        assert len(ps.list_projects(include_archived=True)) == 2
        assert [p.id for p in ps.list_projects(global_status="archived")] == [other.id]


class TestConcurrency:
    def test_expected_version_mismatch(self, project):
        with pytest.raises(ConcurrencyAnomaly):
            ps.update_stage(project.id, "infra", {"status": "done"}, "x", expected_version=project.version + 5)

    def test_expected_version_match(self, project):
        p = ps.update_stage(project.id, "infra", {"status": "done"}, "x", expected_version=project.version)
        assert p.stage("infra").status == "done"

    def test_version_bumps_on_stage_update(self, project):
        v = project.version
        p = ps.update_stage(project.id, "infra", {"status": "done"}, "x")
        assert p.version == v + 1

    def test_stale_write_detected(self, project):
        p = db.session.get(Project, project.id)
        assert p.version == 1
        # Simulate another writer committing in between read and write
        db.session.execute(
            db.text("UPDATE projects SET version = version + 1 WHERE id = :id"), {"id": p.id},
        )
        with pytest.raises(ConcurrencyAnomaly):
            ps.update_stage(project.id, "infra", {"status": "done"}, "x")
        assert AuditEvent.query.filter_by(action="stage.update").count() == 0


def test_commit_failure_rolls_back_everything(project):
    with patch.object(
        db.session, "commit", side_effect=OperationalError("COMMIT", {}, Exception("db gone")),
    ):
        with pytest.raises(PersistenceError):
            ps.update_stage(project.id, "infra", {"status": "done"}, "x")
    db.session.expire_all()
    assert db.session.get(Project, project.id).stage("infra").status == "todo"
    assert AuditEvent.query.filter_by(action="stage.update").count() == 0


def test_summary_is_cached_until_next_update(project):
    first = ps.get_project_summary(project.id)
    assert first["overall_progress"] == 0
    ps.update_stage(project.id, "infra", {"status": "done"}, "x")
    second = ps.get_project_summary(project.id)
    assert second["overall_progress"] == 17


def test_stale_project_health(project):
    project.last_updated_at = datetime.now(timezone.utc) - timedelta(days=8)
    db.session.commit()
    assert ps.serialize_project(project)["health"] == "critical"
