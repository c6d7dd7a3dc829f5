"""Project domain model: a client implementation tracked through the six-stage pipeline."""

import uuid
from datetime import datetime, timezone

from delivery_tracker.models import db
from delivery_tracker.models.stage import STAGE_KEYS


GLOBAL_STATUSES = {"todo", "in-progress", "blocked", "done", "archived"}


class Project(db.Model):
    """
    Client implementation project.

    ``health`` and computed progress are not stored here; they are derived
    on read by ``delivery_tracker.services.health``. ``overall_progress`` is
    the last persisted value and only ever moves up.
    """

    __tablename__ = "projects"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    client_name = db.Column(db.String(200), nullable=False)
    ticket_number = db.Column(db.String(50), nullable=True, index=True)
    system_type = db.Column(db.String(50), nullable=True)
    project_leader = db.Column(db.String(150), nullable=True)

    global_status = db.Column(
        db.String(20), nullable=False, default="todo",
        comment="todo | in-progress | blocked | done | archived",
    )
    overall_progress = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    last_updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    last_updated_by = db.Column(db.String(150), nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    stages = db.relationship(
        "ProjectStage",
        backref="project",
        cascade="all, delete-orphan",
        order_by="ProjectStage.position",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def stage(self, stage_key: str):
        """Return the ProjectStage row for *stage_key* (None if missing)."""
        for s in self.stages:
            if s.stage_key == stage_key:
                return s
        return None

    @property
    def stage_map(self) -> dict:
        return {s.stage_key: s for s in self.stages}

    def to_dict(self, include_stages: bool = True) -> dict:
        """Serialize project fields for API responses."""
        data = {
            "id": self.id,
            "client_name": self.client_name,
            "ticket_number": self.ticket_number,
            "system_type": self.system_type,
            "project_leader": self.project_leader,
            "global_status": self.global_status,
            "overall_progress": self.overall_progress,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_updated_at": self.last_updated_at.isoformat() if self.last_updated_at else None,
            "last_updated_by": self.last_updated_by,
            "version": self.version,
        }
        if include_stages:
            by_key = self.stage_map
            data["stages"] = {
                key: by_key[key].to_dict() for key in STAGE_KEYS if key in by_key
            }
        return data

    def __repr__(self) -> str:
        return f"<Project {self.id}: {self.client_name}>"
