"""
Delivery Tracker
Stage pipeline schema.

Models:
    - ProjectStage: one of the six fixed delivery phases of a Project.

Pipeline (fixed order, never extended at runtime):
    infra → adherence → environment → conversion → implementation → post

Stage status:
    todo | in-progress | done | blocked | waiting_adjustment

    Any status may move to any other status (work gets reopened, e.g.
    done → in-progress). The only guard: entering 'blocked' requires a
    non-empty blocking_reason, and leaving 'blocked' clears it.
"""

from delivery_tracker.models import db


# ── Constants ────────────────────────────────────────────────────────────────

STAGE_KEYS = (
    "infra",
    "adherence",
    "environment",
    "conversion",
    "implementation",
    "post",
)

STAGE_LABELS = {
    "infra": "Infrastructure",
    "adherence": "Adherence",
    "environment": "Environment",
    "conversion": "Conversion",
    "implementation": "Implementation",
    "post": "Post-implementation",
}

STAGE_STATUSES = {
    "todo", "in-progress", "done", "blocked", "waiting_adjustment",
}

# Fields a caller may touch through a partial stage update
STAGE_UPDATABLE_FIELDS = {
    "status", "responsible", "start_date", "end_date",
    "blocking_reason", "observations", "attributes",
}


# ── Transition rules ─────────────────────────────────────────────────────────


def validate_stage_key(stage_key: str) -> str:
    """Return *stage_key* unchanged or raise InvalidStageKey."""
    if stage_key not in STAGE_KEYS:
        from delivery_tracker.core.exceptions import InvalidStageKey
        raise InvalidStageKey(stage_key)
    return stage_key


def is_valid_transition(old_status: str, new_status: str, blocking_reason: str | None = None) -> bool:
    """Check whether a stage may move from *old_status* to *new_status*.

    Every pair of known statuses is allowed except entering 'blocked'
    without a non-empty blocking reason.
    """
    if old_status not in STAGE_STATUSES or new_status not in STAGE_STATUSES:
        return False
    if new_status == "blocked":
        return bool((blocking_reason or "").strip())
    return True


def resolve_blocking_reason(new_status: str, requested: str | None, current: str | None) -> str | None:
    """Blocking reason to store after a status change.

    A blocked stage keeps the requested reason, or the one already stored
    when the update does not carry a new one. Any other status clears it.
    """
    if new_status != "blocked":
        return None
    requested = (requested or "").strip()
    return requested or (current or "").strip() or None


# ── Model ────────────────────────────────────────────────────────────────────


class ProjectStage(db.Model):
    """
    One delivery phase of a Project.

    Exactly six rows exist per project, created with the project and never
    deleted on their own. ``attributes`` is the open extension bag for
    stage-specific values (conversion.sourceSystem, infra.serverInUse, ...).
    """

    __tablename__ = "project_stages"
    __table_args__ = (
        db.UniqueConstraint("project_id", "stage_key", name="uq_project_stage_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.String(36),
        db.ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stage_key = db.Column(
        db.String(20), nullable=False,
        comment="infra | adherence | environment | conversion | implementation | post",
    )
    position = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(30), nullable=False, default="todo")
    responsible = db.Column(db.String(150), nullable=True)
    start_date = db.Column(db.DateTime(timezone=True), nullable=True)
    end_date = db.Column(db.DateTime(timezone=True), nullable=True)
    blocking_reason = db.Column(db.Text, nullable=True)
    observations = db.Column(db.JSON, nullable=True, comment="Opaque rich-content blob")
    attributes = db.Column(db.JSON, nullable=False, default=dict)

    @property
    def label(self) -> str:
        return STAGE_LABELS.get(self.stage_key, self.stage_key)

    def to_dict(self) -> dict:
        return {
            "key": self.stage_key,
            "label": self.label,
            "status": self.status,
            "responsible": self.responsible,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "blocking_reason": self.blocking_reason,
            "observations": self.observations,
            "attributes": dict(self.attributes or {}),
        }

    def __repr__(self):
        return f"<ProjectStage {self.project_id}/{self.stage_key}: {self.status}>"
