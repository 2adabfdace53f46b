"""
Automation rule compilation and admin tests.

Every rule is validated when it is saved and again when the sweep loads it;
these tests cover the validation rules for triggers, actions and templates,
plus the rule CRUD helpers and default seeding.
"""

import pytest

from portal.core.exceptions import NotFoundError, RuleConfigError
from portal.models import db
from portal.models.automation import AutomationRule
from portal.services import automation_rules
from portal.services.automation_rules import (
    ActionsPending,
    AdvancePhaseAction,
    DaysInPhase,
    InvoiceOverdue,
    MarkCompleteAction,
    SendNotificationAction,
    compile_definition,
    parse_trigger,
)


def _definition(**overrides):
    data = {
        "name": "Rule",
        "trigger_phase_key": "payment",
        "trigger_condition": {"type": "payment_received"},
        "action_type": "advance_phase",
        "action_config": {"to_phase": "signoff"},
        "priority": 100,
    }
    data.update(overrides)
    return data


class TestTriggerParsing:

    def test_days_in_phase(self):
        predicate = parse_trigger({"type": "days_in_phase", "days": 7, "repeat_days": 3})
        assert predicate == DaysInPhase(days=7, repeat_days=3)

    def test_days_in_phase_requires_days(self):
        with pytest.raises(RuleConfigError, match="'days' is required"):
            parse_trigger({"type": "days_in_phase"})

    def test_actions_pending_defaults(self):
        assert parse_trigger({"type": "actions_pending"}) == ActionsPending(days=0, repeat_days=None)

    def test_invoice_overdue_applies_after_completion(self):
        predicate = parse_trigger({"type": "invoice_overdue", "days": 2})
        assert predicate == InvoiceOverdue(days=2)
        assert predicate.applies_to_completed is True

    @pytest.mark.parametrize("condition", [
        {"type": "days_in_phase", "days": -1},
        {"type": "days_in_phase", "days": "7"},
        {"type": "days_in_phase", "days": True},
        {"type": "days_in_phase", "days": 7, "repeat_days": 0},
        {"type": "phase_entered", "days": 3},
        {"type": "full_moon"},
        {},
        "payment_received",
    ])
    def test_invalid_conditions(self, condition):
        with pytest.raises(RuleConfigError):
            parse_trigger(condition)


class TestActionParsing:

    def test_advance_to_adjacent_phase(self):
        rule = compile_definition(**_definition())
        assert rule.action == AdvancePhaseAction(to_phase="signoff")

    def test_advance_to_non_adjacent_phase_rejected(self):
        with pytest.raises(RuleConfigError, match="phase after"):
            compile_definition(**_definition(action_config={"to_phase": "delivery"}))

    def test_advance_without_trigger_phase_must_omit_target(self):
        with pytest.raises(RuleConfigError):
            compile_definition(**_definition(trigger_phase_key=None))
        rule = compile_definition(**_definition(trigger_phase_key=None, action_config={}))
        assert rule.action == AdvancePhaseAction(to_phase=None)

    def test_unknown_trigger_phase(self):
        with pytest.raises(RuleConfigError, match="Unknown trigger phase"):
            compile_definition(**_definition(trigger_phase_key="party"))

    def test_send_notification(self):
        rule = compile_definition(**_definition(
            trigger_phase_key=None,
            trigger_condition={"type": "days_in_phase", "days": 7},
            action_type="send_notification",
            action_config={"kind": "project_stuck", "recipient_role": "admin",
                           "title": "{project_name} stuck for {days_in_phase} days"},
        ))
        assert rule.action == SendNotificationAction(
            notification_kind="project_stuck", recipient_role="admin",
            title="{project_name} stuck for {days_in_phase} days", message=None,
        )

    @pytest.mark.parametrize("config", [
        {"recipient_role": "client"},
        {"kind": "x", "recipient_role": "accountant"},
        {"kind": "x", "title": "{client_email}"},
        {"kind": "x", "title": "{project_name.upper}"},
        {"kind": "x", "message": "unbalanced {"},
        {"kind": "x", "channel": "sms"},
    ])
    def test_invalid_notification_configs(self, config):
        with pytest.raises(RuleConfigError):
            compile_definition(**_definition(
                trigger_condition={"type": "phase_entered"},
                action_type="send_notification",
                action_config=config,
            ))

    def test_mark_complete(self):
        rule = compile_definition(**_definition(
            action_type="mark_complete", action_config={"action_key": "complete_payment"},
        ))
        assert rule.action == MarkCompleteAction(action_key="complete_payment")

    def test_mark_complete_key_must_belong_to_trigger_phase(self):
        with pytest.raises(RuleConfigError, match="not part of phase"):
            compile_definition(**_definition(
                action_type="mark_complete", action_config={"action_key": "sign_agreement"},
            ))

    def test_mark_complete_requires_trigger_phase(self):
        with pytest.raises(RuleConfigError, match="trigger phase"):
            compile_definition(**_definition(
                trigger_phase_key=None,
                action_type="mark_complete", action_config={"action_key": "complete_payment"},
            ))

    def test_unknown_action_type(self):
        with pytest.raises(RuleConfigError):
            compile_definition(**_definition(action_type="send_sms"))

    def test_rule_id_prefixes_message(self):
        with pytest.raises(RuleConfigError, match=r"^Rule 12: "):
            compile_definition(rule_id=12, **_definition(action_type="send_sms"))


class TestRuleAdmin:

    def test_create_and_order(self):
        late = automation_rules.create_rule(_definition(name="Late", priority=50))
        early = automation_rules.create_rule(_definition(name="Early", priority=5))
        same = automation_rules.create_rule(_definition(name="Same", priority=50))

        ordered = [r.id for r in automation_rules.list_rules()]
        assert ordered == [early.id, late.id, same.id]

    def test_create_rejects_invalid(self):
        with pytest.raises(RuleConfigError):
            automation_rules.create_rule(_definition(action_config={"to_phase": "delivery"}))
        assert AutomationRule.query.count() == 0

    def test_update_validates_merged_rule(self):
        rule = automation_rules.create_rule(_definition())
        with pytest.raises(RuleConfigError):
            automation_rules.update_rule(rule.id, {"trigger_phase_key": "review"})

        updated = automation_rules.update_rule(rule.id, {"name": "Renamed", "priority": 1})
        assert updated.name == "Renamed"
        assert updated.trigger_phase_key == "payment"

    def test_update_null_priority_resets_default(self):
        rule = automation_rules.create_rule(_definition(priority=7))

        updated = automation_rules.update_rule(rule.id, {"priority": None})

        assert updated.priority == 100
        db.session.expire_all()
        assert automation_rules.get_rule(rule.id).priority == 100

    def test_deactivate(self):
        rule = automation_rules.create_rule(_definition())
        automation_rules.deactivate_rule(rule.id)
        assert automation_rules.load_active_rules() == []

    def test_get_unknown_rule(self):
        with pytest.raises(NotFoundError):
            automation_rules.get_rule(321)

    def test_seed_default_rules_is_idempotent(self):
        assert automation_rules.seed_default_rules() == len(automation_rules.DEFAULT_RULES)
        db.session.commit()
        assert automation_rules.seed_default_rules() == 0
        for rule in automation_rules.list_rules():
            automation_rules.compile_rule(rule)
