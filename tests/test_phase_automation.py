"""
Automation sweep tests.

Sweeps run against a frozen clock and a recording dispatcher so that
time-based rules and notifications can be asserted exactly. Each claimed
occurrence must leave exactly one RuleExecutionRecord behind.
"""

from datetime import date, timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError

from conftest import advance_to, complete_phase
from portal.models import db
from portal.models.automation import AutomationRule, RuleExecutionRecord
from portal.models.phase import ActionCompletion
from portal.services import automation_rules, phase_automation


def _rule(**overrides):
    data = {
        "name": "Notify on entry",
        "trigger_phase_key": None,
        "trigger_condition": {"type": "phase_entered"},
        "action_type": "send_notification",
        "action_config": {"kind": "welcome", "recipient_role": "client"},
        "priority": 100,
    }
    data.update(overrides)
    return automation_rules.create_rule(data)


def _records(**filters):
    return RuleExecutionRecord.query.filter_by(**filters).order_by(RuleExecutionRecord.id).all()


@pytest.fixture()
def tracked(service, make_project):
    """An initialized project at onboarding."""
    project = make_project()
    service.initialize_phase_tracking(project.id)
    return project


class TestPaymentAdvance:

    def test_payment_received_moves_to_signoff(self, service, clock, recorder, tracked, make_invoice):
        advance_to(service, tracked.id, "payment")
        rule = _rule(
            name="Paid", trigger_phase_key="payment",
            trigger_condition={"type": "payment_received"},
            action_type="advance_phase", action_config={"to_phase": "signoff"},
        )
        clock.advance(hours=2)
        make_invoice(tracked, status="paid", paid_at=clock.now)

        result = service.run_automation_sweep_once()

        assert result["claimed"] == 1
        assert result["succeeded"] == 1
        state = service.store.get_state(tracked.id)
        assert state.current_phase_key == "signoff"
        records = _records(rule_id=rule.id)
        assert len(records) == 1
        assert records[0].status == "success"
        assert records[0].detail["advanced"] is True

        last = service.list_phase_history(tracked.id)[-1]
        assert last.source == "automation"
        assert last.rule_id == rule.id

    def test_payment_before_phase_start_ignored(self, service, clock, tracked, make_invoice):
        make_invoice(tracked, status="paid", paid_at=clock.now - timedelta(days=3))
        advance_to(service, tracked.id, "payment")
        _rule(
            name="Paid", trigger_phase_key="payment",
            trigger_condition={"type": "payment_received"},
            action_type="advance_phase", action_config={"to_phase": "signoff"},
        )

        result = service.run_automation_sweep_once()

        assert result["matches"] == 0
        assert service.store.get_state(tracked.id).current_phase_key == "payment"

    def test_rerun_has_no_side_effects(self, service, clock, recorder, tracked, make_invoice):
        advance_to(service, tracked.id, "payment")
        _rule(
            name="Paid", trigger_phase_key="payment",
            trigger_condition={"type": "payment_received"},
            action_type="advance_phase", action_config={"to_phase": "signoff"},
        )
        make_invoice(tracked, status="paid", paid_at=clock.now)

        service.run_automation_sweep_once()
        sent = len(recorder.requests)
        version = service.store.get_state(tracked.id).version

        result = service.run_automation_sweep_once()

        assert result["claimed"] == 0
        assert RuleExecutionRecord.query.count() == 1
        assert len(recorder.requests) == sent
        assert service.store.get_state(tracked.id).version == version

    def test_advance_without_target_completes_last_phase(self, service, clock, recorder,
                                                         tracked, make_invoice):
        advance_to(service, tracked.id, "delivery")
        _rule(
            name="Finish", trigger_phase_key="delivery",
            trigger_condition={"type": "payment_received"},
            action_type="advance_phase", action_config={},
        )
        make_invoice(tracked, status="paid", paid_at=clock.now)

        service.run_automation_sweep_once()

        assert service.store.get_state(tracked.id).is_completed is True
        assert recorder.kinds()[-1] == "project_completed"


class TestIdempotency:

    def test_phase_entered_fires_once_per_entry(self, service, recorder, tracked):
        _rule()

        first = service.run_automation_sweep_once()
        second = service.run_automation_sweep_once()

        assert first["claimed"] == 1
        assert second["claimed"] == 0
        assert second["duplicates"] == 1
        assert recorder.kinds().count("welcome") == 1

        advance_to(service, tracked.id, "ideation")
        third = service.run_automation_sweep_once()
        assert third["claimed"] == 1
        keys = [r.occurrence_key for r in _records()]
        assert keys == ["entered:onboarding:v1", "entered:ideation:v2"]

    def test_rules_run_in_priority_order(self, service, recorder, tracked):
        _rule(name="Later", action_config={"kind": "later"}, priority=50)
        _rule(name="Sooner", action_config={"kind": "sooner"}, priority=5)

        service.run_automation_sweep_once()

        assert recorder.kinds() == ["sooner", "later"]

    def test_untracked_project_skipped(self, service, recorder, make_project):
        make_project()
        _rule()

        result = service.run_automation_sweep_once()

        assert result["projects"] == 1
        assert result["pairs_evaluated"] == 0
        assert recorder.requests == []

    def test_archived_and_inactive_projects_skipped(self, service, recorder, make_project):
        archived = make_project(name="Old", is_archived=True)
        paused = make_project(name="Paused", status="on_hold")
        for project in (archived, paused):
            service.initialize_phase_tracking(project.id)
        _rule()

        result = service.run_automation_sweep_once()

        assert result["projects"] == 0
        assert RuleExecutionRecord.query.count() == 0


class TestTimeBasedRules:

    def test_days_in_phase_repeats(self, service, clock, recorder, tracked):
        _rule(
            name="Stuck",
            trigger_condition={"type": "days_in_phase", "days": 7, "repeat_days": 3},
            action_config={"kind": "project_stuck", "recipient_role": "client",
                           "title": "{project_name} is waiting in {phase_name}",
                           "message": "{days_in_phase} days"},
        )

        clock.advance(days=6)
        assert service.run_automation_sweep_once()["matches"] == 0

        clock.advance(days=1)
        service.run_automation_sweep_once()
        clock.advance(days=2)
        assert service.run_automation_sweep_once()["claimed"] == 0
        clock.advance(days=1)
        service.run_automation_sweep_once()

        keys = [r.occurrence_key for r in _records()]
        assert keys == ["stuck:onboarding:v1:r0", "stuck:onboarding:v1:r1"]
        first = recorder.requests[0]
        assert first.data["title"] == "Bakery rebrand is waiting in Onboarding"
        assert first.data["message"] == "7 days"

    def test_actions_pending_lists_open_actions(self, service, clock, recorder, tracked):
        _rule(
            name="Pending",
            trigger_condition={"type": "actions_pending", "days": 3},
            action_config={"kind": "action_reminder", "message": "Waiting on {pending_actions}"},
        )
        service.complete_required_action(tracked.id, "complete_brief", "client-1")
        clock.advance(days=3)

        service.run_automation_sweep_once()

        assert recorder.requests[-1].data["message"] == "Waiting on sign_agreement"

    def test_overdue_invoice_once_per_day(self, service, clock, recorder, tracked, make_invoice):
        invoice = make_invoice(tracked, status="sent", due_date=date(2026, 2, 25))
        _rule(
            name="Overdue",
            trigger_condition={"type": "invoice_overdue", "days": 0},
            action_config={"kind": "payment_reminder",
                           "title": "Invoice {invoice_number} is overdue",
                           "message": "{days_overdue} days late"},
        )

        service.run_automation_sweep_once()
        service.run_automation_sweep_once()
        clock.advance(days=1)
        service.run_automation_sweep_once()

        keys = [r.occurrence_key for r in _records()]
        assert keys == [f"overdue:inv{invoice.id}:2026-03-02", f"overdue:inv{invoice.id}:2026-03-03"]
        assert recorder.requests[0].data["title"] == f"Invoice {invoice.invoice_number} is overdue"
        assert recorder.requests[0].data["message"] == "5 days late"

    def test_overdue_grace_days(self, service, tracked, make_invoice):
        make_invoice(tracked, status="sent", due_date=date(2026, 2, 25))
        _rule(name="Overdue", trigger_condition={"type": "invoice_overdue", "days": 7},
              action_config={"kind": "payment_reminder"})

        assert service.run_automation_sweep_once()["matches"] == 0

    def test_completed_project_only_gets_billing_rules(self, service, clock, recorder,
                                                       tracked, make_invoice):
        advance_to(service, tracked.id, "delivery")
        complete_phase(service, tracked.id)
        make_invoice(tracked, status="overdue", due_date=date(2026, 2, 1))
        _rule(name="Stuck", trigger_condition={"type": "days_in_phase", "days": 0},
              action_config={"kind": "project_stuck"})
        _rule(name="Overdue", trigger_condition={"type": "invoice_overdue"},
              action_config={"kind": "payment_reminder"})
        before = len(recorder.requests)

        service.run_automation_sweep_once()

        assert recorder.kinds()[before:] == ["payment_reminder"]


class TestFailures:

    def test_invalid_rule_skipped(self, service, recorder, tracked):
        broken = _rule(name="Broken")
        broken.action_config = {"kind": "x", "title": "{secret}"}
        db.session.commit()
        _rule(name="Fine", action_config={"kind": "fine"})

        result = service.run_automation_sweep_once()

        assert result["rules_invalid"] == 1
        assert result["rules_loaded"] == 1
        assert recorder.kinds() == ["fine"]

    def test_notification_failure_recorded_and_sweep_continues(self, service, recorder,
                                                                tracked, make_project):
        other = make_project(name="Second")
        service.initialize_phase_tracking(other.id)
        rule = _rule()
        recorder.fail = True

        result = service.run_automation_sweep_once()

        assert result["claimed"] == 2
        assert result["failed"] == 2
        records = _records(rule_id=rule.id)
        assert [r.status for r in records] == ["failed", "failed"]
        assert "recording dispatcher" in records[0].error

        # A failed occurrence is not retried
        recorder.fail = False
        assert service.run_automation_sweep_once()["duplicates"] == 2
        assert recorder.requests == []

    def test_mark_complete_on_done_action(self, service, tracked):
        service.complete_required_action(tracked.id, "complete_brief", "client-1")
        rule = _rule(name="Auto brief", trigger_phase_key="onboarding",
                     action_type="mark_complete", action_config={"action_key": "complete_brief"})

        result = service.run_automation_sweep_once()

        assert result["succeeded"] == 1
        record = _records(rule_id=rule.id)[0]
        assert record.detail == {"action_key": "complete_brief", "already_completed": True}

    def test_mark_complete_can_finish_phase(self, service, tracked):
        service.complete_required_action(tracked.id, "complete_brief", "client-1")
        _rule(name="Auto agreement", trigger_phase_key="onboarding",
              action_type="mark_complete", action_config={"action_key": "sign_agreement"})

        service.run_automation_sweep_once()

        assert service.store.get_state(tracked.id).current_phase_key == "ideation"

    def test_stale_advance_is_not_an_error(self, service, tracked, monkeypatch):
        _rule(name="Push", trigger_phase_key="onboarding",
              action_type="advance_phase", action_config={"to_phase": "ideation"})
        engine = service.engine
        original = engine.advance_from

        def racing_advance(project_id, *args, **kwargs):
            engine.advance_manually(project_id, "ideation", "admin-1")
            return original(project_id, *args, **kwargs)

        monkeypatch.setattr(engine, "advance_from", racing_advance)
        result = service.run_automation_sweep_once()

        assert result["succeeded"] == 1
        assert _records()[0].detail["advanced"] is False
        assert service.store.get_state(tracked.id).current_phase_key == "ideation"

    def test_load_failure_aborts(self, service, tracked, monkeypatch):
        _rule()

        def boom():
            raise SQLAlchemyError("database unavailable")

        monkeypatch.setattr(phase_automation, "load_active_rules", boom)
        result = service.run_automation_sweep_once()

        assert result["aborted"] is True
        assert "database unavailable" in result["error"]
        assert RuleExecutionRecord.query.count() == 0

    def test_inactive_rules_ignored(self, service, recorder, tracked):
        rule = _rule()
        automation_rules.deactivate_rule(rule.id)

        assert service.run_automation_sweep_once()["rules_loaded"] == 0
        assert AutomationRule.query.count() == 1


class TestDefaultOnboardingRule:

    NAME = "Advance to ideation when onboarding is complete"

    def _seed(self):
        automation_rules.seed_default_rules()
        db.session.commit()
        return AutomationRule.query.filter_by(name=self.NAME).one()

    def test_idle_after_synchronous_advance(self, service, tracked):
        rule = self._seed()
        assert "Fallback" in rule.description

        complete_phase(service, tracked.id)
        service.run_automation_sweep_once()

        assert _records(rule_id=rule.id) == []
        history = service.list_phase_history(tracked.id)
        assert [t.source for t in history] == ["automatic"]

    def test_advances_when_synchronous_advance_missed(self, service, tracked):
        rule = self._seed()
        # completions saved, advance never ran
        ActionCompletion.query.filter_by(project_id=tracked.id, phase_key="onboarding").update(
            {"is_completed": True, "completed_by": "client-1"}, synchronize_session=False,
        )
        db.session.commit()

        service.run_automation_sweep_once()

        assert service.store.get_state(tracked.id).current_phase_key == "ideation"
        last = service.list_phase_history(tracked.id)[-1]
        assert last.source == "automation"
        assert last.rule_id == rule.id
