"""
Client Portal
Phase Automation: rule evaluator and sweep runner.

One sweep:
    1. load active rules (priority, id) and compile them; malformed rules are
       logged and skipped
    2. load candidate projects (active, not archived)
    3. per (project, rule): evaluate the predicate against fresh state
    4. claim each match by inserting a RuleExecutionRecord (unique on
       rule/project/occurrence) and committing before acting
    5. perform the action and record the outcome

A claimed occurrence is never fired again, so re-running a sweep without a
state change has no side effects. Failures stay inside their pair.
"""

from __future__ import annotations

import logging
import time

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from portal.core.exceptions import (
    ActionAlreadyCompletedError,
    ConflictError,
    NotFoundError,
    NotificationDispatchError,
    RuleConfigError,
    TransientStorageError,
    ValidationError,
)
from portal.models import db
from portal.models.automation import RuleExecutionRecord
from portal.services.automation_rules import RuleContext, compile_rule, load_active_rules
from portal.services.notification_dispatcher import NotificationRequest, render_template
from portal.services.phase_catalog import DEFAULT_CATALOG
from portal.utils.helpers import utcnow

logger = logging.getLogger(__name__)

# Errors that fail one pair but are expected in normal operation
_PAIR_ERRORS = (
    ValidationError, ConflictError, NotFoundError, TransientStorageError, SQLAlchemyError,
)


class PhaseAutomationService:
    """Evaluates automation rules against every active project."""

    def __init__(self, engine, store, directory, dispatcher, catalog=DEFAULT_CATALOG,
                 clock=utcnow, actor_id="system"):
        self.engine = engine
        self.store = store
        self.directory = directory
        self.dispatcher = dispatcher
        self.catalog = catalog
        self.clock = clock
        self.actor_id = actor_id

    def run_sweep_once(self) -> dict:
        """Run one full sweep and return its counters."""
        started = time.monotonic()
        result = {
            "rules_loaded": 0,
            "rules_invalid": 0,
            "projects": 0,
            "pairs_evaluated": 0,
            "matches": 0,
            "claimed": 0,
            "duplicates": 0,
            "succeeded": 0,
            "failed": 0,
            "errors": 0,
            "aborted": False,
        }

        try:
            rules = load_active_rules()
            compiled = []
            for rule in rules:
                try:
                    compiled.append(compile_rule(rule, self.catalog))
                except RuleConfigError as exc:
                    result["rules_invalid"] += 1
                    logger.error("Skipping invalid automation rule %s: %s", rule.id, exc,
                                 extra={"rule_id": rule.id})
            project_ids = self.directory.list_active_project_ids()
        except SQLAlchemyError as exc:
            db.session.rollback()
            result["aborted"] = True
            result["error"] = str(exc)
            result["duration_ms"] = int((time.monotonic() - started) * 1000)
            logger.error("Automation sweep aborted, could not load rules or projects: %s", exc)
            return result

        result["rules_loaded"] = len(compiled)
        result["projects"] = len(project_ids)
        now = self.clock()

        for project_id in project_ids:
            for rule in compiled:
                self._run_pair(rule, project_id, now, result)

        result["duration_ms"] = int((time.monotonic() - started) * 1000)
        level = logging.INFO if result["claimed"] or result["failed"] or result["errors"] else logging.DEBUG
        logger.log(
            level,
            "Automation sweep: %d rules, %d projects, %d matches, %d claimed, %d duplicates, "
            "%d succeeded, %d failed (%dms)",
            result["rules_loaded"], result["projects"], result["matches"], result["claimed"],
            result["duplicates"], result["succeeded"], result["failed"], result["duration_ms"],
        )
        return result

    # ── Per pair ──────────────────────────────────────────────────────────

    def _run_pair(self, rule, project_id: int, now, result: dict) -> None:
        extra = {"rule_id": rule.id, "project_id": project_id}
        try:
            evaluated = self._evaluate(rule, project_id, now)
        except _PAIR_ERRORS as exc:
            db.session.rollback()
            result["errors"] += 1
            logger.error("Evaluating rule %s for project %s failed: %s", rule.id, project_id, exc,
                         extra=extra)
            return
        if evaluated is None:
            return
        result["pairs_evaluated"] += 1
        ctx, matches = evaluated

        for match in matches:
            result["matches"] += 1
            pair_extra = dict(extra, occurrence_key=match.occurrence_key)
            try:
                record_id = self._claim(rule, project_id, match.occurrence_key, now)
            except SQLAlchemyError as exc:
                db.session.rollback()
                result["errors"] += 1
                logger.error("Could not claim %s: %s", match.occurrence_key, exc, extra=pair_extra)
                continue
            if record_id is None:
                result["duplicates"] += 1
                continue
            result["claimed"] += 1

            status, detail, error = "success", None, None
            try:
                detail = self._perform(rule, ctx, match)
            except NotificationDispatchError as exc:
                status, error = "failed", exc
                logger.warning("Rule %s notification for project %s failed: %s",
                               rule.id, project_id, exc, extra=pair_extra)
            except _PAIR_ERRORS as exc:
                db.session.rollback()
                status, error = "failed", exc
                logger.error("Rule %s action on project %s failed: %s",
                             rule.id, project_id, exc, extra=pair_extra)
            except Exception as exc:
                db.session.rollback()
                status, error = "failed", exc
                logger.exception("Rule %s crashed on project %s", rule.id, project_id, extra=pair_extra)

            result["succeeded" if status == "success" else "failed"] += 1
            self._finish(record_id, status, detail, error, pair_extra)

    def _evaluate(self, rule, project_id: int, now):
        """Return (context, matches), or None when the rule does not apply."""
        state = self.store.find_state(project_id)
        if state is None:
            return None
        if state.is_completed and not rule.predicate.applies_to_completed:
            return None
        if rule.trigger_phase_key and rule.trigger_phase_key != state.current_phase_key:
            return None

        project = self.directory.get_project(project_id)
        phase = self.catalog.get_phase(state.current_phase_key)
        ctx = RuleContext(project, state, phase, self.engine, self.directory, now)
        return ctx, rule.predicate.evaluate(ctx)

    def _claim(self, rule, project_id: int, occurrence_key: str, now) -> int | None:
        """Insert the idempotency record; None when it already exists."""
        record = RuleExecutionRecord(
            rule_id=rule.id,
            project_id=project_id,
            occurrence_key=occurrence_key,
            status="claimed",
            claimed_at=now,
        )
        db.session.add(record)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return None
        return record.id

    def _finish(self, record_id: int, status: str, detail, error, extra: dict) -> None:
        try:
            record = db.session.get(RuleExecutionRecord, record_id)
            record.record_outcome(status=status, detail=detail, error=error)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Could not record outcome of execution %s", record_id, extra=extra)

    def _perform(self, rule, ctx: RuleContext, match) -> dict:
        action = rule.action
        project_id = ctx.project.id

        if action.kind == "advance_phase":
            target = action.to_phase
            if target is None:
                next_phase = self.catalog.next_phase(ctx.phase_key)
                target = next_phase.key if next_phase else None
            moved = self.engine.advance_from(
                project_id, ctx.phase_key, ctx.version, action.to_phase,
                source="automation",
                actor_id=self.actor_id,
                reason=f"Automation rule {rule.id}: {rule.name}",
                rule_id=rule.id,
            )
            return {"advanced": moved, "from_phase": ctx.phase_key, "to_phase": target or "done"}

        if action.kind == "send_notification":
            values = ctx.template_values(match.context)
            data = dict(values, rule_id=rule.id, occurrence_key=match.occurrence_key)
            if action.title:
                data["title"] = render_template(action.title, values)
            if action.message:
                data["message"] = render_template(action.message, values)
            self.dispatcher.dispatch(NotificationRequest(
                project_id, action.recipient_role, action.notification_kind, data,
            ))
            return {"notified": action.recipient_role, "kind": action.notification_kind}

        try:
            self.store.complete_action(project_id, action.action_key, self.actor_id)
        except ActionAlreadyCompletedError:
            return {"action_key": action.action_key, "already_completed": True}
        return {"action_key": action.action_key, "already_completed": False}
