"""
Client Portal
Automation Rule Catalog.

Rules are stored as JSON (trigger_condition / action_config) and compiled
into closed, typed variants before use. Compilation is the single
validation point: the admin API compiles on save and the sweep compiles on
load, so a rule that reaches evaluation is always well-formed.

Trigger predicates (``trigger_condition["type"]``):
    phase_entered          once per phase entry
    all_actions_complete   phase has mandatory actions and all are done
    payment_received       invoice paid since the phase started
    days_in_phase          {days, repeat_days?}
    actions_pending        {days, repeat_days?}
    invoice_overdue        {days} grace; once per invoice per UTC day

Actions (``action_type``):
    advance_phase          {to_phase?}
    send_notification      {kind, recipient_role, title?, message?}
    mark_complete          {action_key}
"""

from __future__ import annotations

import logging
import string
from dataclasses import dataclass, field
from functools import cached_property

from portal.core.exceptions import NotFoundError, RuleConfigError
from portal.models import db
from portal.models.automation import ACTION_TYPES, AutomationRule, RuleExecutionRecord
from portal.models.notification import RECIPIENT_ROLES
from portal.services.phase_catalog import DEFAULT_CATALOG
from portal.utils.helpers import whole_days_between

logger = logging.getLogger(__name__)

# Placeholders allowed in notification title/message templates
TEMPLATE_FIELDS = frozenset({
    "project_name", "phase_key", "phase_name", "days_in_phase",
    "pending_actions", "invoice_number", "days_overdue",
})


# ═══════════════════════════════════════════════════════════════════════════
#  Evaluation context
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class TriggerMatch:
    occurrence_key: str
    context: dict = field(default_factory=dict)


class RuleContext:
    """What a predicate may look at for one (rule, project) pair.

    Phase key, version and start time are copied from the state row up front
    so later commits in the sweep cannot change what the pair observed.
    """

    def __init__(self, project, state, phase, engine, directory, now):
        self.project = project
        self.phase = phase
        self.phase_key = state.current_phase_key
        self.version = state.version
        self.is_completed = bool(state.is_completed)
        self.phase_started_at = state.phase_started_at
        self.engine = engine
        self.directory = directory
        self.now = now

    @cached_property
    def days_in_phase(self) -> int:
        return whole_days_between(self.phase_started_at, self.now)

    @cached_property
    def pending_actions(self) -> list[str]:
        return self.engine.pending_mandatory_actions(self.project.id, self.phase)

    @cached_property
    def payment_received(self) -> bool:
        return self.directory.has_payment_since(self.project.id, self.phase_started_at)

    @property
    def today(self):
        return self.now.date()

    def overdue_invoices(self, grace_days: int):
        return self.directory.overdue_invoices(self.project.id, self.today, grace_days)

    def template_values(self, extra: dict | None = None) -> dict:
        values = {
            "project_name": self.project.name,
            "phase_key": self.phase.key,
            "phase_name": self.phase.name,
            "days_in_phase": self.days_in_phase,
            "pending_actions": ", ".join(self.pending_actions),
        }
        values.update(extra or {})
        return values


# ═══════════════════════════════════════════════════════════════════════════
#  Trigger predicates
# ═══════════════════════════════════════════════════════════════════════════


def _repeat_suffix(elapsed: int, days: int, repeat_days: int | None) -> str:
    if repeat_days is None:
        return ""
    return f":r{(elapsed - days) // repeat_days}"


@dataclass(frozen=True)
class PhaseEntered:
    kind = "phase_entered"
    applies_to_completed = False

    def evaluate(self, ctx: RuleContext) -> list[TriggerMatch]:
        return [TriggerMatch(f"entered:{ctx.phase_key}:v{ctx.version}")]


@dataclass(frozen=True)
class AllActionsComplete:
    kind = "all_actions_complete"
    applies_to_completed = False

    def evaluate(self, ctx: RuleContext) -> list[TriggerMatch]:
        if not ctx.phase.mandatory_actions or ctx.pending_actions:
            return []
        return [TriggerMatch(f"complete:{ctx.phase_key}:v{ctx.version}")]


@dataclass(frozen=True)
class PaymentReceived:
    kind = "payment_received"
    applies_to_completed = False

    def evaluate(self, ctx: RuleContext) -> list[TriggerMatch]:
        if not ctx.payment_received:
            return []
        return [TriggerMatch(f"paid:{ctx.phase_key}:v{ctx.version}")]


@dataclass(frozen=True)
class DaysInPhase:
    days: int
    repeat_days: int | None = None
    kind = "days_in_phase"
    applies_to_completed = False

    def evaluate(self, ctx: RuleContext) -> list[TriggerMatch]:
        elapsed = ctx.days_in_phase
        if elapsed < self.days:
            return []
        suffix = _repeat_suffix(elapsed, self.days, self.repeat_days)
        return [TriggerMatch(f"stuck:{ctx.phase_key}:v{ctx.version}{suffix}")]


@dataclass(frozen=True)
class ActionsPending:
    days: int = 0
    repeat_days: int | None = None
    kind = "actions_pending"
    applies_to_completed = False

    def evaluate(self, ctx: RuleContext) -> list[TriggerMatch]:
        if not ctx.pending_actions:
            return []
        elapsed = ctx.days_in_phase
        if elapsed < self.days:
            return []
        suffix = _repeat_suffix(elapsed, self.days, self.repeat_days)
        return [TriggerMatch(f"pending:{ctx.phase_key}:v{ctx.version}{suffix}")]


@dataclass(frozen=True)
class InvoiceOverdue:
    days: int = 0
    kind = "invoice_overdue"
    # Billing continues after delivery
    applies_to_completed = True

    def evaluate(self, ctx: RuleContext) -> list[TriggerMatch]:
        day = ctx.today.isoformat()
        return [
            TriggerMatch(
                f"overdue:inv{invoice.id}:{day}",
                {"invoice_number": invoice.invoice_number,
                 "days_overdue": invoice.days_overdue(ctx.today)},
            )
            for invoice in ctx.overdue_invoices(self.days)
        ]


# ═══════════════════════════════════════════════════════════════════════════
#  Actions
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class AdvancePhaseAction:
    to_phase: str | None = None
    kind = "advance_phase"


@dataclass(frozen=True)
class SendNotificationAction:
    notification_kind: str
    recipient_role: str
    title: str | None = None
    message: str | None = None
    kind = "send_notification"


@dataclass(frozen=True)
class MarkCompleteAction:
    action_key: str
    kind = "mark_complete"


@dataclass(frozen=True)
class CompiledRule:
    id: int | None
    name: str
    trigger_phase_key: str | None
    predicate: object
    action: object
    priority: int = 100


# ═══════════════════════════════════════════════════════════════════════════
#  Compilation / validation
# ═══════════════════════════════════════════════════════════════════════════


def _check_keys(section: str, payload: dict, allowed: set, rule_id) -> None:
    unknown = sorted(set(payload) - allowed)
    if unknown:
        raise RuleConfigError(f"Unknown {section} field(s): {', '.join(unknown)}",
                              rule_id=rule_id, details={section: unknown})


def _int_param(payload: dict, name: str, rule_id, *, default=None, minimum=0, required=False):
    if name not in payload or payload[name] is None:
        if required:
            raise RuleConfigError(f"'{name}' is required", rule_id=rule_id, details={name: "required"})
        return default
    value = payload[name]
    if isinstance(value, bool) or not isinstance(value, int):
        raise RuleConfigError(f"'{name}' must be an integer", rule_id=rule_id,
                              details={name: "integer expected"})
    if value < minimum:
        raise RuleConfigError(f"'{name}' must be >= {minimum}", rule_id=rule_id,
                              details={name: f"minimum {minimum}"})
    return value


def parse_trigger(condition, rule_id=None):
    """Build a predicate from ``trigger_condition`` JSON."""
    if not isinstance(condition, dict):
        raise RuleConfigError("trigger_condition must be an object", rule_id=rule_id)
    trigger_type = condition.get("type")
    params = {k: v for k, v in condition.items() if k != "type"}

    if trigger_type in ("phase_entered", "all_actions_complete", "payment_received"):
        _check_keys("trigger_condition", params, set(), rule_id)
        return {"phase_entered": PhaseEntered,
                "all_actions_complete": AllActionsComplete,
                "payment_received": PaymentReceived}[trigger_type]()

    if trigger_type in ("days_in_phase", "actions_pending"):
        _check_keys("trigger_condition", params, {"days", "repeat_days"}, rule_id)
        days = _int_param(params, "days", rule_id, required=trigger_type == "days_in_phase", default=0)
        repeat_days = _int_param(params, "repeat_days", rule_id, minimum=1)
        cls = DaysInPhase if trigger_type == "days_in_phase" else ActionsPending
        return cls(days=days, repeat_days=repeat_days)

    if trigger_type == "invoice_overdue":
        _check_keys("trigger_condition", params, {"days"}, rule_id)
        return InvoiceOverdue(days=_int_param(params, "days", rule_id, default=0))

    raise RuleConfigError(f"Unknown trigger type {trigger_type!r}", rule_id=rule_id,
                          details={"type": trigger_type})


def _check_template(name: str, template, rule_id) -> str | None:
    if template is None:
        return None
    if not isinstance(template, str):
        raise RuleConfigError(f"'{name}' must be a string", rule_id=rule_id)
    try:
        fields = [f for _, f, _, _ in string.Formatter().parse(template) if f is not None]
    except ValueError as exc:
        raise RuleConfigError(f"'{name}' is not a valid template: {exc}", rule_id=rule_id) from exc
    unknown = sorted({f for f in fields if f not in TEMPLATE_FIELDS})
    if unknown:
        raise RuleConfigError(
            f"'{name}' references unknown field(s): {', '.join(unknown)}",
            rule_id=rule_id,
            details={name: unknown, "allowed": sorted(TEMPLATE_FIELDS)},
        )
    return template


def parse_action(action_type, config, trigger_phase_key, catalog=DEFAULT_CATALOG, rule_id=None):
    """Build an action from ``action_type`` + ``action_config`` JSON."""
    if action_type not in ACTION_TYPES:
        raise RuleConfigError(f"Unknown action type {action_type!r}", rule_id=rule_id,
                              details={"action_type": action_type})
    config = config if config is not None else {}
    if not isinstance(config, dict):
        raise RuleConfigError("action_config must be an object", rule_id=rule_id)

    if action_type == "advance_phase":
        _check_keys("action_config", config, {"to_phase"}, rule_id)
        to_phase = config.get("to_phase")
        if to_phase is None:
            return AdvancePhaseAction()
        if trigger_phase_key is None:
            raise RuleConfigError("'to_phase' needs a trigger phase; omit it to mean the next phase",
                                  rule_id=rule_id)
        if not catalog.has_phase(to_phase):
            raise RuleConfigError(f"Unknown phase {to_phase!r}", rule_id=rule_id,
                                  details={"to_phase": to_phase})
        if not catalog.is_adjacent(trigger_phase_key, to_phase):
            raise RuleConfigError(
                f"'to_phase' must be the phase after {trigger_phase_key!r}",
                rule_id=rule_id, details={"to_phase": to_phase},
            )
        return AdvancePhaseAction(to_phase=to_phase)

    if action_type == "send_notification":
        _check_keys("action_config", config, {"kind", "recipient_role", "title", "message"}, rule_id)
        kind = config.get("kind")
        if not isinstance(kind, str) or not kind.strip():
            raise RuleConfigError("'kind' is required", rule_id=rule_id, details={"kind": "required"})
        role = config.get("recipient_role", "client")
        if role not in RECIPIENT_ROLES:
            raise RuleConfigError(f"'recipient_role' must be one of {sorted(RECIPIENT_ROLES)}",
                                  rule_id=rule_id, details={"recipient_role": role})
        return SendNotificationAction(
            notification_kind=kind.strip(),
            recipient_role=role,
            title=_check_template("title", config.get("title"), rule_id),
            message=_check_template("message", config.get("message"), rule_id),
        )

    _check_keys("action_config", config, {"action_key"}, rule_id)
    action_key = config.get("action_key")
    if not isinstance(action_key, str) or not action_key:
        raise RuleConfigError("'action_key' is required", rule_id=rule_id,
                              details={"action_key": "required"})
    if trigger_phase_key is None:
        raise RuleConfigError("mark_complete rules need a trigger phase", rule_id=rule_id)
    if catalog.get_phase(trigger_phase_key).get_action(action_key) is None:
        raise RuleConfigError(
            f"Action {action_key!r} is not part of phase {trigger_phase_key!r}",
            rule_id=rule_id, details={"action_key": action_key},
        )
    return MarkCompleteAction(action_key=action_key)


def compile_definition(*, name, trigger_phase_key, trigger_condition, action_type,
                       action_config, priority=100, rule_id=None, catalog=DEFAULT_CATALOG) -> CompiledRule:
    if not isinstance(name, str) or not name.strip():
        raise RuleConfigError("'name' is required", rule_id=rule_id, details={"name": "required"})
    if trigger_phase_key is not None and not catalog.has_phase(trigger_phase_key):
        raise RuleConfigError(f"Unknown trigger phase {trigger_phase_key!r}", rule_id=rule_id,
                              details={"trigger_phase_key": trigger_phase_key})
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise RuleConfigError("'priority' must be an integer", rule_id=rule_id)
    return CompiledRule(
        id=rule_id,
        name=name.strip(),
        trigger_phase_key=trigger_phase_key,
        predicate=parse_trigger(trigger_condition, rule_id),
        action=parse_action(action_type, action_config, trigger_phase_key, catalog, rule_id),
        priority=priority,
    )


def compile_rule(rule: AutomationRule, catalog=DEFAULT_CATALOG) -> CompiledRule:
    return compile_definition(
        name=rule.name,
        trigger_phase_key=rule.trigger_phase_key,
        trigger_condition=rule.trigger_condition,
        action_type=rule.action_type,
        action_config=rule.action_config,
        priority=rule.priority if rule.priority is not None else 100,
        rule_id=rule.id,
        catalog=catalog,
    )


# ═══════════════════════════════════════════════════════════════════════════
#  Rule admin
# ═══════════════════════════════════════════════════════════════════════════

_EDITABLE_FIELDS = (
    "name", "description", "trigger_phase_key", "trigger_condition",
    "action_type", "action_config", "is_active", "priority",
)


def list_rules(active_only: bool = False) -> list[AutomationRule]:
    """Rules in evaluation order: priority ascending, then id."""
    q = AutomationRule.query
    if active_only:
        q = q.filter_by(is_active=True)
    return q.order_by(AutomationRule.priority, AutomationRule.id).all()


def load_active_rules() -> list[AutomationRule]:
    return list_rules(active_only=True)


def get_rule(rule_id: int) -> AutomationRule:
    rule = db.session.get(AutomationRule, rule_id)
    if rule is None:
        raise NotFoundError(resource="AutomationRule", resource_id=rule_id)
    return rule


def create_rule(data: dict, created_by: str | None = None, catalog=DEFAULT_CATALOG) -> AutomationRule:
    """Validate and store a new rule."""
    payload = {k: data.get(k) for k in _EDITABLE_FIELDS}
    priority = payload["priority"] if payload["priority"] is not None else 100
    compile_definition(
        name=payload["name"],
        trigger_phase_key=payload["trigger_phase_key"],
        trigger_condition=payload["trigger_condition"],
        action_type=payload["action_type"],
        action_config=payload["action_config"] or {},
        priority=priority,
        catalog=catalog,
    )
    rule = AutomationRule(
        name=payload["name"].strip(),
        description=payload["description"] or "",
        trigger_phase_key=payload["trigger_phase_key"],
        trigger_condition=payload["trigger_condition"],
        action_type=payload["action_type"],
        action_config=payload["action_config"] or {},
        is_active=True if payload["is_active"] is None else bool(payload["is_active"]),
        priority=priority,
        created_by=created_by,
    )
    db.session.add(rule)
    db.session.commit()
    logger.info("Automation rule %s created: %s", rule.id, rule.name, extra={"rule_id": rule.id})
    return rule


def update_rule(rule_id: int, data: dict, catalog=DEFAULT_CATALOG) -> AutomationRule:
    """Apply a partial update; the merged rule must still compile."""
    rule = get_rule(rule_id)
    merged = {k: getattr(rule, k) for k in _EDITABLE_FIELDS}
    merged.update({k: v for k, v in data.items() if k in _EDITABLE_FIELDS})
    if merged["priority"] is None:
        # null clears a custom priority back to the default
        merged["priority"] = 100
    compile_definition(
        name=merged["name"],
        trigger_phase_key=merged["trigger_phase_key"],
        trigger_condition=merged["trigger_condition"],
        action_type=merged["action_type"],
        action_config=merged["action_config"] or {},
        priority=merged["priority"],
        rule_id=rule_id,
        catalog=catalog,
    )
    for key, value in merged.items():
        if key == "name":
            value = value.strip()
        elif key == "action_config":
            value = value or {}
        elif key == "is_active":
            value = bool(value)
        setattr(rule, key, value)
    db.session.commit()
    logger.info("Automation rule %s updated", rule_id, extra={"rule_id": rule_id})
    return rule


def deactivate_rule(rule_id: int) -> AutomationRule:
    """Rules are never deleted: execution records reference them."""
    rule = get_rule(rule_id)
    rule.is_active = False
    db.session.commit()
    logger.info("Automation rule %s deactivated", rule_id, extra={"rule_id": rule_id})
    return rule


def list_executions(rule_id=None, project_id=None, status=None, limit=100, offset=0):
    q = RuleExecutionRecord.query
    if rule_id is not None:
        q = q.filter_by(rule_id=rule_id)
    if project_id is not None:
        q = q.filter_by(project_id=project_id)
    if status:
        q = q.filter_by(status=status)
    total = q.count()
    items = q.order_by(RuleExecutionRecord.id.desc()).offset(offset).limit(limit).all()
    return items, total


# ── Default rules ────────────────────────────────────────────────────────

DEFAULT_RULES = [
    {
        "name": "Advance to sign-off when payment is received",
        "description": "A paid invoice during the Payment phase moves the project to Sign-off.",
        "trigger_phase_key": "payment",
        "trigger_condition": {"type": "payment_received"},
        "action_type": "advance_phase",
        "action_config": {"to_phase": "signoff"},
        "priority": 10,
    },
    {
        "name": "Advance to ideation when onboarding is complete",
        "description": ("Fallback for the synchronous advance on action completion: only fires "
                        "when brief and agreement are done but that advance did not happen."),
        "trigger_phase_key": "onboarding",
        "trigger_condition": {"type": "all_actions_complete"},
        "action_type": "advance_phase",
        "action_config": {"to_phase": "ideation"},
        "priority": 20,
    },
    {
        "name": "Stuck project reminder",
        "description": "Remind the client when a project sits in one phase for a week, then every 3 days.",
        "trigger_phase_key": None,
        "trigger_condition": {"type": "days_in_phase", "days": 7, "repeat_days": 3},
        "action_type": "send_notification",
        "action_config": {
            "kind": "project_stuck",
            "recipient_role": "client",
            "title": "{project_name} is waiting in {phase_name}",
            "message": "Your project has been in {phase_name} for {days_in_phase} days.",
        },
        "priority": 50,
    },
    {
        "name": "Pending actions reminder",
        "description": "Remind the client about open required actions after 3 days, then every 2 days.",
        "trigger_phase_key": None,
        "trigger_condition": {"type": "actions_pending", "days": 3, "repeat_days": 2},
        "action_type": "send_notification",
        "action_config": {
            "kind": "action_reminder",
            "recipient_role": "client",
            "title": "Action needed on {project_name}",
            "message": "Still waiting on: {pending_actions}.",
        },
        "priority": 60,
    },
    {
        "name": "Overdue invoice reminder",
        "description": "Daily reminder for each unpaid invoice past its due date.",
        "trigger_phase_key": None,
        "trigger_condition": {"type": "invoice_overdue", "days": 0},
        "action_type": "send_notification",
        "action_config": {
            "kind": "payment_reminder",
            "recipient_role": "client",
            "title": "Invoice {invoice_number} is overdue",
            "message": "Invoice {invoice_number} is {days_overdue} days past due.",
        },
        "priority": 70,
    },
]


def seed_default_rules(created_by: str = "system") -> int:
    """Insert default rules that are missing (matched by name). Caller commits."""
    existing = {name for (name,) in db.session.query(AutomationRule.name).all()}
    count = 0
    for definition in DEFAULT_RULES:
        if definition["name"] in existing:
            continue
        compile_definition(
            name=definition["name"],
            trigger_phase_key=definition["trigger_phase_key"],
            trigger_condition=definition["trigger_condition"],
            action_type=definition["action_type"],
            action_config=definition["action_config"],
            priority=definition["priority"],
        )
        db.session.add(AutomationRule(created_by=created_by, is_active=True, **definition))
        count += 1
    return count
