"""
Client Portal
Phase workflow models.

Models:
    - ProjectPhaseState: one row per project; current phase and status
    - ActionCompletion: per (project, phase, action) completion flag
    - PhaseTransition: append-only history of phase moves

Mutation goes through PhaseTrackingStore and TransitionEngine only.
``version`` is bumped by every transition and guards the conditional
UPDATE that linearises concurrent advances.
"""

from datetime import datetime, timezone

from portal.models import db


# ── Constants ────────────────────────────────────────────────────────────────

PHASE_STATUSES = {
    "pending", "in_progress", "waiting_client",
    "needs_approval", "approved", "completed",
}
# "completed" is reserved to the transition engine
ADMIN_SETTABLE_STATUSES = {"waiting_client", "needs_approval", "approved", "in_progress"}
TRANSITION_SOURCES = {"automatic", "automation", "manual", "override"}
ACTOR_ROLES = {"client", "admin"}

# Pseudo phase key recorded as ``to_phase_key`` when the last phase finishes
COMPLETED_PHASE_KEY = "done"


class ProjectPhaseState(db.Model):
    """Current workflow position of a project."""

    __tablename__ = "project_phase_states"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
                           nullable=False, unique=True, index=True)
    current_phase_key = db.Column(db.String(40), nullable=False)
    current_phase_index = db.Column(db.Integer, nullable=False, default=1,
                                    comment="1-based catalog position")
    status = db.Column(db.String(30), nullable=False, default="pending",
                       comment="pending, in_progress, waiting_client, needs_approval, approved, completed")
    version = db.Column(db.Integer, nullable=False, default=1,
                        comment="Incremented by every transition (check-and-set guard)")

    phase_started_at = db.Column(db.DateTime(timezone=True),
                                 default=lambda: datetime.now(timezone.utc))
    phase_completed_at = db.Column(db.DateTime(timezone=True), nullable=True,
                                   comment="When the previous phase finished")
    is_completed = db.Column(db.Boolean, nullable=False, default=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    notes = db.Column(db.Text, default="")
    metadata_json = db.Column(db.JSON, default=dict)
    phase_timestamps = db.Column(db.JSON, default=dict,
                                 comment="phase_key -> {started_at, completed_at}")

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "project_id": self.project_id,
            "current_phase_key": self.current_phase_key,
            "current_phase_index": self.current_phase_index,
            "status": self.status,
            "version": self.version,
            "phase_started_at": self.phase_started_at.isoformat() if self.phase_started_at else None,
            "phase_completed_at": self.phase_completed_at.isoformat() if self.phase_completed_at else None,
            "is_completed": self.is_completed,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "notes": self.notes or "",
            "metadata": self.metadata_json or {},
            "phase_timestamps": self.phase_timestamps or {},
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<ProjectPhaseState project={self.project_id} {self.current_phase_key} v{self.version}>"


class ActionCompletion(db.Model):
    """Completion flag for one required action of one phase of a project."""

    __tablename__ = "phase_action_completions"
    __table_args__ = (
        db.UniqueConstraint("project_id", "phase_key", "action_key",
                            name="uq_action_completion_project_phase_action"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
                           nullable=False, index=True)
    phase_key = db.Column(db.String(40), nullable=False)
    action_key = db.Column(db.String(60), nullable=False)
    is_completed = db.Column(db.Boolean, nullable=False, default=False)
    completed_by = db.Column(db.String(150), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    notes = db.Column(db.Text, default="")

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    @classmethod
    def reset_for_phase(cls, project_id, phase):
        """Ensure one uncompleted row per action of ``phase``.

        Existing rows (from an earlier visit after an override rewind) are
        reset rather than duplicated. Caller commits.
        """
        existing = {
            row.action_key: row
            for row in cls.query.filter_by(project_id=project_id, phase_key=phase.key).all()
        }
        for action in phase.actions:
            row = existing.get(action.key)
            if row is None:
                db.session.add(cls(project_id=project_id, phase_key=phase.key,
                                   action_key=action.key, is_completed=False))
            else:
                row.is_completed = False
                row.completed_by = None
                row.completed_at = None

    def to_dict(self):
        return {
            "phase_key": self.phase_key,
            "action_key": self.action_key,
            "is_completed": self.is_completed,
            "completed_by": self.completed_by,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "notes": self.notes or "",
        }

    def __repr__(self):
        mark = "x" if self.is_completed else " "
        return f"<ActionCompletion [{mark}] {self.project_id}:{self.phase_key}.{self.action_key}>"


class PhaseTransition(db.Model):
    """Append-only phase history entry."""

    __tablename__ = "phase_transitions"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
                           nullable=False, index=True)
    from_phase_key = db.Column(db.String(40), nullable=True,
                               comment="'done' when rewinding a completed project")
    to_phase_key = db.Column(db.String(40), nullable=False)
    from_phase_index = db.Column(db.Integer, nullable=True)
    to_phase_index = db.Column(db.Integer, nullable=True,
                               comment="NULL when the project completes")
    source = db.Column(db.String(20), nullable=False,
                       comment="automatic, automation, manual, override")
    actor_id = db.Column(db.String(150), nullable=True)
    reason = db.Column(db.Text, nullable=True)
    rule_id = db.Column(db.Integer, nullable=True,
                        comment="AutomationRule that caused the move, if any")

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "from_phase_key": self.from_phase_key,
            "to_phase_key": self.to_phase_key,
            "from_phase_index": self.from_phase_index,
            "to_phase_index": self.to_phase_index,
            "source": self.source,
            "actor_id": self.actor_id,
            "reason": self.reason,
            "rule_id": self.rule_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<PhaseTransition {self.project_id}: {self.from_phase_key} → {self.to_phase_key} ({self.source})>"
