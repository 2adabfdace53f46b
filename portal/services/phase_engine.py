"""
Client Portal
Transition Engine: the phase state machine.

States are the catalog phases in order plus the terminal "done" state.
Every move is a single conditional UPDATE keyed on
(project_id, current_phase_key, version); the caller whose UPDATE matches
no row lost a race and must not write history or notify.

Entry points:
    - try_advance:       automatic forward move once mandatory actions are done
    - advance_from:      guarded adjacent move used by automation rules
    - advance_manually:  administrative move (adjacent, or override with reason)
    - list_history:      transition log, oldest first
"""

from __future__ import annotations

import logging

from sqlalchemy import update
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError

from portal.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    NotificationDispatchError,
    TransientStorageError,
    ValidationError,
)
from portal.models import db
from portal.models.phase import (
    COMPLETED_PHASE_KEY,
    ActionCompletion,
    PhaseTransition,
    ProjectPhaseState,
)
from portal.services.notification_dispatcher import NotificationRequest
from portal.services.phase_catalog import DEFAULT_CATALOG, Phase
from portal.services.project_directory import ProjectDirectory
from portal.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class TransitionEngine:
    """Applies phase transitions for one catalog."""

    def __init__(self, dispatcher, catalog=DEFAULT_CATALOG, directory=None, clock=utcnow):
        self.dispatcher = dispatcher
        self.catalog = catalog
        self.directory = directory or ProjectDirectory()
        self.clock = clock

    # ── Reads ─────────────────────────────────────────────────────────────

    def load_state(self, project_id: int) -> ProjectPhaseState:
        """Fresh state row for ``project_id``; NotFoundError if not initialized."""
        state = (
            ProjectPhaseState.query
            .filter_by(project_id=project_id)
            .populate_existing()
            .first()
        )
        if state is None:
            raise NotFoundError(resource="ProjectPhaseState", resource_id=project_id)
        return state

    def completion_rows(self, project_id: int, phase_key: str) -> dict[str, ActionCompletion]:
        rows = (
            ActionCompletion.query
            .filter_by(project_id=project_id, phase_key=phase_key)
            .populate_existing()
            .all()
        )
        return {row.action_key: row for row in rows}

    def pending_mandatory_actions(self, project_id: int, phase: Phase) -> list[str]:
        rows = self.completion_rows(project_id, phase.key)
        return [
            action.key
            for action in phase.mandatory_actions
            if not (rows.get(action.key) and rows[action.key].is_completed)
        ]

    def mandatory_actions_complete(self, project_id: int, phase: Phase) -> bool:
        """True only when the phase has mandatory actions and all are done."""
        if not phase.mandatory_actions:
            return False
        return not self.pending_mandatory_actions(project_id, phase)

    def list_history(self, project_id: int) -> list[PhaseTransition]:
        if not self.directory.exists(project_id):
            raise NotFoundError(resource="Project", resource_id=project_id)
        return (
            PhaseTransition.query
            .filter_by(project_id=project_id)
            .order_by(PhaseTransition.id)
            .all()
        )

    # ── Transitions ───────────────────────────────────────────────────────

    def try_advance(self, project_id: int, actor_id: str | None = None) -> ProjectPhaseState:
        """Advance one phase if every mandatory action of the current phase is done.

        Not an error when nothing moves: the unchanged state is returned.
        """
        state = self.load_state(project_id)
        if state.is_completed:
            return state

        phase = self.catalog.get_phase(state.current_phase_key)
        if not self.mandatory_actions_complete(project_id, phase):
            return state

        moved = self._transition(
            state,
            self.catalog.next_phase(phase.key),
            source="automatic",
            actor_id=actor_id,
        )
        if moved is None:
            # Another caller advanced first
            return self.load_state(project_id)
        return moved

    def advance_from(self, project_id: int, from_phase_key: str, expected_version: int,
                     to_phase_key: str | None = None, *, source: str = "automation",
                     actor_id: str | None = None, reason: str | None = None,
                     rule_id: int | None = None) -> bool:
        """Guarded adjacent advance from a phase the caller observed.

        Returns False (no change) when the project is no longer at
        ``from_phase_key`` / ``expected_version`` or has completed.
        """
        state = self.load_state(project_id)
        if (state.is_completed
                or state.current_phase_key != from_phase_key
                or state.version != expected_version):
            return False

        if to_phase_key is None:
            target = self.catalog.next_phase(from_phase_key)
        else:
            target = self.catalog.get_phase(to_phase_key)
            if not self.catalog.is_adjacent(from_phase_key, to_phase_key):
                raise InvalidTransitionError(from_phase_key, to_phase_key,
                                             "Automated transitions must move to the next phase")

        moved = self._transition(state, target, source=source, actor_id=actor_id,
                                 reason=reason, rule_id=rule_id)
        return moved is not None

    def advance_manually(self, project_id: int, target_phase_key: str, actor_id: str,
                         override: bool = False, reason: str | None = None) -> ProjectPhaseState:
        """Administrative move.

        Without ``override`` only the adjacent next phase is allowed (mandatory
        actions are not checked). With ``override`` any phase is allowed,
        including rewinding a completed project, but a reason is required.
        """
        target = self.catalog.get_phase(target_phase_key)
        state = self.load_state(project_id)
        from_label = COMPLETED_PHASE_KEY if state.is_completed else state.current_phase_key

        if override:
            if not reason or not reason.strip():
                raise ValidationError("An override requires a reason",
                                      details={"reason": "required"})
        elif state.is_completed:
            raise InvalidTransitionError(
                COMPLETED_PHASE_KEY, target.key,
                "Project is completed; only an override can move it",
            )
        elif not self.catalog.is_adjacent(state.current_phase_key, target.key):
            raise InvalidTransitionError(state.current_phase_key, target.key)

        source = "override" if override else "manual"
        if override:
            logger.warning(
                "Phase override for project %s: %s → %s by %s (%s)",
                project_id, from_label, target.key, actor_id, reason,
                extra={"project_id": project_id, "phase_key": target.key, "actor_id": actor_id},
            )

        moved = self._transition(state, target, source=source, actor_id=actor_id,
                                 reason=reason.strip() if reason else None)
        if moved is None:
            raise ConflictError(
                "ProjectPhaseState", "version", str(state.version),
                message=f"Project {project_id} changed phase concurrently; reload and retry",
            )
        return moved

    # ── Internals ─────────────────────────────────────────────────────────

    def _transition(self, state: ProjectPhaseState, to_phase: Phase | None, *, source: str,
                    actor_id: str | None = None, reason: str | None = None,
                    rule_id: int | None = None) -> ProjectPhaseState | None:
        """Move ``state`` to ``to_phase`` (None = complete the project).

        Returns the reloaded state, or None when the check-and-set lost.
        """
        project_id = state.project_id
        from_key = state.current_phase_key
        from_label = COMPLETED_PHASE_KEY if state.is_completed else from_key
        from_index = state.current_phase_index
        version = state.version
        now = self.clock()
        stamp = now.isoformat()

        timestamps = {k: dict(v) for k, v in (state.phase_timestamps or {}).items()}
        if not state.is_completed:
            timestamps.setdefault(from_key, {})["completed_at"] = stamp

        values = {
            "version": version + 1,
            "phase_completed_at": now,
            "updated_at": now,
        }
        if to_phase is None:
            to_key, to_index = COMPLETED_PHASE_KEY, None
            values.update(status="completed", is_completed=True, completed_at=now)
        else:
            to_key, to_index = to_phase.key, to_phase.index
            timestamps[to_phase.key] = {"started_at": stamp}
            values.update(
                current_phase_key=to_phase.key,
                current_phase_index=to_phase.index,
                phase_started_at=now,
                status="waiting_client" if to_phase.requires_client_action else "in_progress",
                is_completed=False,
                completed_at=None,
            )
        values["phase_timestamps"] = timestamps

        try:
            result = db.session.execute(
                update(ProjectPhaseState)
                .where(
                    ProjectPhaseState.project_id == project_id,
                    ProjectPhaseState.current_phase_key == from_key,
                    ProjectPhaseState.version == version,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.session.rollback()
                logger.info(
                    "Transition %s → %s for project %s lost to a concurrent update",
                    from_label, to_key, project_id,
                    extra={"project_id": project_id, "phase_key": from_key},
                )
                return None

            if to_phase is not None:
                ActionCompletion.reset_for_phase(project_id, to_phase)
            db.session.add(PhaseTransition(
                project_id=project_id,
                from_phase_key=from_label,
                to_phase_key=to_key,
                from_phase_index=from_index,
                to_phase_index=to_index,
                source=source,
                actor_id=actor_id,
                reason=reason,
                rule_id=rule_id,
                created_at=now,
            ))
            db.session.commit()
        except (OperationalError, InterfaceError) as exc:
            db.session.rollback()
            raise TransientStorageError(
                f"Transition {from_label} → {to_key} for project {project_id} failed: {exc}"
            ) from exc

        logger.info(
            "Project %s moved %s → %s (%s)", project_id, from_label, to_key, source,
            extra={"project_id": project_id, "phase_key": to_key, "rule_id": rule_id},
        )
        self._emit(project_id, from_label, to_phase, source)
        return self.load_state(project_id)

    def _emit(self, project_id: int, from_key: str, to_phase: Phase | None, source: str) -> None:
        """Notify after commit. Failures are logged, never raised."""
        try:
            project_name = self.directory.get_project(project_id).name
        except NotFoundError:
            project_name = ""
        except SQLAlchemyError as exc:
            # the transition is already committed; send without the name
            db.session.rollback()
            logger.warning("Could not load project %s for notification: %s", project_id, exc,
                           extra={"project_id": project_id})
            project_name = ""
        data = {
            "project_name": project_name,
            "from_phase": from_key,
            "source": source,
        }
        if to_phase is None:
            kind = "project_completed"
            data["to_phase"] = COMPLETED_PHASE_KEY
        else:
            kind = "phase_advanced"
            data.update(to_phase=to_phase.key, to_phase_name=to_phase.name)

        try:
            self.dispatcher.dispatch(NotificationRequest(project_id, "client", kind, data))
        except NotificationDispatchError as exc:
            logger.warning("Could not notify %s for project %s: %s", kind, project_id, exc,
                           extra={"project_id": project_id})
