"""
Project health & progress — derived on read, never cached on the row.

Business rules:
    - Health is staleness only: time since ``last_updated_at``.
          > 7 days → critical, > 3 days → warning, otherwise ok.
      A blocked stage does not change health; it shows up in global status.
    - Progress is the share of stages in 'done', rounded to a whole
      percent, but never lower than the persisted ``overall_progress``.
      A client-facing progress number must not go backwards when work is
      reopened.
    - Readiness: which stages have their prerequisites met.
    - Bottlenecks: stages 'in-progress' for more than 7 days since they
      were started/sent. Implementation and post are excluded.

Every function here is pure: it reads the project and its stages and
returns plain values. Nothing is written.
"""

from __future__ import annotations

import math
from datetime import datetime

from delivery_tracker.models.stage import STAGE_KEYS, STAGE_LABELS
from delivery_tracker.utils.helpers import ensure_utc, parse_datetime, utcnow

WARNING_AFTER_DAYS = 3
CRITICAL_AFTER_DAYS = 7

BOTTLENECK_AFTER_DAYS = 7
BOTTLENECK_STAGES = ("infra", "adherence", "environment", "conversion")
_SEVERITY_ORDER = {"high": 3, "medium": 2, "low": 1}


def _elapsed_days(since: datetime | None, now: datetime | None) -> float:
    if since is None:
        return 0.0
    now = ensure_utc(now) or utcnow()
    return (now - ensure_utc(since)).total_seconds() / 86400


# ── Health ────────────────────────────────────────────────────────────────


def compute_health(
    project,
    now: datetime | None = None,
    *,
    warning_days: float = WARNING_AFTER_DAYS,
    critical_days: float = CRITICAL_AFTER_DAYS,
) -> str:
    """Return 'ok', 'warning' or 'critical' from time since the last update."""
    days = _elapsed_days(project.last_updated_at, now)
    if days > critical_days:
        return "critical"
    if days > warning_days:
        return "warning"
    return "ok"


# ── Progress / global status ──────────────────────────────────────────────


def computed_progress(project) -> int:
    """Share of done stages as a whole percent (0..100), ignoring stored progress."""
    done = sum(1 for s in project.stages if s.status == "done")
    return int(round(done * 100 / len(STAGE_KEYS)))


def compute_progress(project) -> int:
    """Displayed progress: the larger of the stored and the computed value."""
    stored = project.overall_progress or 0
    return max(stored, computed_progress(project))


def derive_global_status(project) -> str:
    """Aggregate stage statuses into a project-level status.

    'archived' is sticky; otherwise a single blocked stage marks the whole
    project blocked, all-done is done, all-todo is todo, anything else is
    in progress.
    """
    if project.global_status == "archived":
        return "archived"
    statuses = [s.status for s in project.stages]
    if any(st == "blocked" for st in statuses):
        return "blocked"
    if statuses and all(st == "done" for st in statuses):
        return "done"
    if all(st == "todo" for st in statuses):
        return "todo"
    return "in-progress"


# ── Readiness ─────────────────────────────────────────────────────────────


def _is_done(stages: dict, key: str) -> bool:
    stage = stages.get(key)
    return stage is not None and stage.status == "done"


def get_stage_readiness(project) -> list[dict]:
    """Return, per stage, whether its prerequisites are met and it can start.

    A stage is *ready* when its prerequisites are met and it is still 'todo'.
    """
    stages = project.stage_map
    env = stages.get("environment")
    env_approved = bool(env is not None and (env.attributes or {}).get("approvedByInfra") is True)

    rules = {
        "infra": (True, "First stage of the pipeline"),
        "adherence": (
            _is_done(stages, "infra"),
            "Waiting for infrastructure to finish",
        ),
        "environment": (
            _is_done(stages, "infra") and _is_done(stages, "adherence"),
            "Waiting for infrastructure and adherence to finish",
        ),
        "conversion": (
            _is_done(stages, "infra") and _is_done(stages, "adherence"),
            "Waiting for infrastructure and adherence to finish",
        ),
        "implementation": (
            _is_done(stages, "conversion") and env_approved,
            "Waiting for environment approval by infra"
            if not env_approved else "Waiting for conversion to finish",
        ),
        "post": (
            _is_done(stages, "implementation"),
            "Waiting for implementation to finish",
        ),
    }

    result = []
    for key in STAGE_KEYS:
        met, waiting_reason = rules[key]
        stage = stages.get(key)
        status = stage.status if stage is not None else "todo"
        result.append({
            "stage": key,
            "label": STAGE_LABELS[key],
            "prerequisites_met": met,
            "is_ready": met and status == "todo",
            "reason": "Prerequisites met" if met else waiting_reason,
        })
    return result


# ── Bottlenecks ───────────────────────────────────────────────────────────


def _bottleneck_severity(days: int) -> str:
    if days > 14:
        return "high"
    if days > 10:
        return "medium"
    return "low"


def _days_stuck(stage, now: datetime | None) -> int:
    """Whole days (rounded up) since the stage was sent or started."""
    reference = None
    if stage.stage_key == "conversion":
        try:
            reference = parse_datetime((stage.attributes or {}).get("sentAt"))
        except ValueError:
            reference = None
    reference = reference or stage.start_date
    if reference is None:
        return 0
    days = math.ceil(_elapsed_days(reference, now))
    return days if days > 0 else 0


def identify_bottlenecks(project, now: datetime | None = None) -> list[dict]:
    """All active bottlenecks, most severe first, then longest stuck first."""
    stages = project.stage_map
    found = []
    for key in BOTTLENECK_STAGES:
        stage = stages.get(key)
        if stage is None or stage.status != "in-progress":
            continue
        days = _days_stuck(stage, now)
        if days <= BOTTLENECK_AFTER_DAYS:
            continue
        found.append({
            "stage": key,
            "stage_name": STAGE_LABELS[key],
            "severity": _bottleneck_severity(days),
            "days_stuck": days,
            "reason": f"In progress for {days} days without completion",
            "responsible": stage.responsible,
            "status": stage.status,
        })
    found.sort(key=lambda b: (-_SEVERITY_ORDER[b["severity"]], -b["days_stuck"]))
    return found


def identify_bottleneck(project, now: datetime | None = None) -> dict:
    """The primary (most severe) bottleneck, or a 'none' record."""
    bottlenecks = identify_bottlenecks(project, now)
    if not bottlenecks:
        return {
            "stage": None,
            "stage_name": None,
            "severity": "none",
            "days_stuck": 0,
            "reason": "Project flowing normally",
            "responsible": None,
        }
    primary = dict(bottlenecks[0])
    primary.pop("status", None)
    return primary


# ── Summary ───────────────────────────────────────────────────────────────


def project_summary(
    project,
    now: datetime | None = None,
    *,
    warning_days: float = WARNING_AFTER_DAYS,
    critical_days: float = CRITICAL_AFTER_DAYS,
) -> dict:
    """Everything the dashboard derives from one project, in one dict."""
    return {
        "project_id": project.id,
        "health": compute_health(project, now, warning_days=warning_days, critical_days=critical_days),
        "overall_progress": compute_progress(project),
        "computed_progress": computed_progress(project),
        "global_status": project.global_status,
        "derived_global_status": derive_global_status(project),
        "bottleneck": identify_bottleneck(project, now),
        "bottlenecks": identify_bottlenecks(project, now),
        "readiness": get_stage_readiness(project),
    }
