"""
Client Portal
Phase automation models.

Models:
    - AutomationRule: admin-defined trigger → action rule
    - RuleExecutionRecord: idempotency claim for one (rule, project, occurrence)

The unique constraint on RuleExecutionRecord is the only guard against a rule
firing twice for the same occurrence: the sweep inserts (claims) the row
before performing the action.
"""

from datetime import datetime, timezone

from portal.models import db


# ── Constants ────────────────────────────────────────────────────────────────

ACTION_TYPES = {"advance_phase", "send_notification", "mark_complete"}
TRIGGER_TYPES = {
    "phase_entered", "all_actions_complete", "payment_received",
    "days_in_phase", "actions_pending", "invoice_overdue",
}
EXECUTION_STATUSES = {"claimed", "success", "failed"}


class AutomationRule(db.Model):
    """A trigger condition plus the action to run when it matches."""

    __tablename__ = "automation_rules"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    trigger_phase_key = db.Column(db.String(40), nullable=True,
                                  comment="NULL = any phase")
    trigger_condition = db.Column(db.JSON, nullable=False, default=dict,
                                  comment='{"type": "...", ...params}')
    action_type = db.Column(db.String(30), nullable=False,
                            comment="advance_phase, send_notification, mark_complete")
    action_config = db.Column(db.JSON, nullable=False, default=dict)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    priority = db.Column(db.Integer, nullable=False, default=100,
                         comment="Lower runs first")
    created_by = db.Column(db.String(150), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    executions = db.relationship("RuleExecutionRecord", backref="rule", lazy="dynamic",
                                 cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description or "",
            "trigger_phase_key": self.trigger_phase_key,
            "trigger_condition": self.trigger_condition or {},
            "action_type": self.action_type,
            "action_config": self.action_config or {},
            "is_active": self.is_active,
            "priority": self.priority,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<AutomationRule {self.id}: {self.name} [{self.action_type}]>"


class RuleExecutionRecord(db.Model):
    """Claim / outcome of one rule firing for one project occurrence."""

    __tablename__ = "rule_execution_records"
    __table_args__ = (
        db.UniqueConstraint("rule_id", "project_id", "occurrence_key",
                            name="uq_rule_execution_occurrence"),
    )

    id = db.Column(db.Integer, primary_key=True)
    rule_id = db.Column(db.Integer, db.ForeignKey("automation_rules.id", ondelete="CASCADE"),
                        nullable=False, index=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
                           nullable=False, index=True)
    occurrence_key = db.Column(db.String(120), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="claimed",
                       comment="claimed, success, failed")
    detail = db.Column(db.JSON, nullable=True)
    error = db.Column(db.Text, nullable=True)

    claimed_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    finished_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def record_outcome(self, *, status="success", detail=None, error=None):
        """Record the final outcome. Only a ``claimed`` record may change."""
        if self.status != "claimed":
            raise ValueError(f"Execution {self.id} already finished with status {self.status}")
        self.status = status
        self.detail = detail
        self.error = str(error) if error else None
        self.finished_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "project_id": self.project_id,
            "occurrence_key": self.occurrence_key,
            "status": self.status,
            "detail": self.detail,
            "error": self.error,
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    def __repr__(self):
        return f"<RuleExecutionRecord rule={self.rule_id} project={self.project_id} {self.occurrence_key} [{self.status}]>"
