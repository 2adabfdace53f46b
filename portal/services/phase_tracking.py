"""
Client Portal
Phase Tracking Store: per-project phase state and action completions.

Owns initialization and the client/admin side of the workflow (completing
required actions, admin status changes). Phase moves are delegated to the
TransitionEngine.
"""

from __future__ import annotations

import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError

from portal.core.exceptions import (
    ActionAlreadyCompletedError,
    AlreadyInitializedError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    TransientStorageError,
    UnknownActionError,
    ValidationError,
)
from portal.models import db
from portal.models.phase import (
    ADMIN_SETTABLE_STATUSES,
    COMPLETED_PHASE_KEY,
    ActionCompletion,
    ProjectPhaseState,
)
from portal.services.phase_catalog import DEFAULT_CATALOG
from portal.services.project_directory import ProjectDirectory
from portal.utils.helpers import utcnow

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (OperationalError, InterfaceError)


class PhaseTrackingStore:
    """Reads and writes ProjectPhaseState / ActionCompletion rows."""

    def __init__(self, engine, directory=None, catalog=DEFAULT_CATALOG, clock=utcnow):
        self.engine = engine
        self.directory = directory or ProjectDirectory()
        self.catalog = catalog
        self.clock = clock

    # ── Reads ─────────────────────────────────────────────────────────────

    def find_state(self, project_id: int) -> ProjectPhaseState | None:
        return (
            ProjectPhaseState.query
            .filter_by(project_id=project_id)
            .populate_existing()
            .first()
        )

    def get_state(self, project_id: int) -> ProjectPhaseState:
        state = self.find_state(project_id)
        if state is None:
            raise NotFoundError(resource="ProjectPhaseState", resource_id=project_id)
        return state

    def get_completion_summary(self, project_id: int) -> dict:
        """Counts for the current phase's actions."""
        state = self.get_state(project_id)
        phase = self.catalog.get_phase(state.current_phase_key)
        rows = self.engine.completion_rows(project_id, phase.key)

        def done(action):
            row = rows.get(action.key)
            return bool(row and row.is_completed)

        return {
            "phase_key": phase.key,
            "total": len(phase.actions),
            "completed": sum(1 for a in phase.actions if done(a)),
            "mandatory_total": len(phase.mandatory_actions),
            "mandatory_completed": sum(1 for a in phase.mandatory_actions if done(a)),
        }

    def list_actions(self, project_id: int) -> list[dict]:
        """Current phase's actions merged with their completion rows."""
        state = self.get_state(project_id)
        phase = self.catalog.get_phase(state.current_phase_key)
        rows = self.engine.completion_rows(project_id, phase.key)
        items = []
        for action in phase.actions:
            row = rows.get(action.key)
            items.append({
                "key": action.key,
                "description": action.description,
                "mandatory": action.mandatory,
                "actor_role": action.actor_role,
                "is_completed": bool(row and row.is_completed),
                "completed_by": row.completed_by if row else None,
                "completed_at": row.completed_at.isoformat() if row and row.completed_at else None,
            })
        return items

    # ── Writes ────────────────────────────────────────────────────────────

    def initialize(self, project_id: int, actor_id: str = "system",
                   strict: bool = False) -> tuple[ProjectPhaseState, bool]:
        """Start tracking at the first phase.

        Returns (state, created). Re-initializing returns the existing state
        with created=False, or raises AlreadyInitializedError when strict.
        """
        self.directory.get_project(project_id)

        existing = self.find_state(project_id)
        if existing is not None:
            if strict:
                raise AlreadyInitializedError(project_id)
            return existing, False

        first = self.catalog.first_phase
        now = self.clock()
        try:
            db.session.add(ProjectPhaseState(
                project_id=project_id,
                current_phase_key=first.key,
                current_phase_index=first.index,
                status="pending",
                version=1,
                phase_started_at=now,
                phase_timestamps={first.key: {"started_at": now.isoformat()}},
                metadata_json={},
                notes="",
            ))
            ActionCompletion.reset_for_phase(project_id, first)
            db.session.commit()
        except IntegrityError:
            # Initialized concurrently
            db.session.rollback()
            existing = self.find_state(project_id)
            if existing is None:
                raise
            if strict:
                raise AlreadyInitializedError(project_id) from None
            return existing, False
        except _TRANSIENT_ERRORS as exc:
            db.session.rollback()
            raise TransientStorageError(f"Initializing project {project_id} failed: {exc}") from exc

        logger.info("Phase tracking initialized for project %s at %s by %s", project_id, first.key,
                    actor_id, extra={"project_id": project_id, "phase_key": first.key, "actor_id": actor_id})
        return self.get_state(project_id), True

    def complete_action(self, project_id: int, action_key: str, actor_id: str,
                        notes: str | None = None) -> ProjectPhaseState:
        """Mark a required action of the current phase done, then try to advance."""
        state = self.get_state(project_id)
        if state.is_completed:
            raise InvalidTransitionError(COMPLETED_PHASE_KEY, None,
                                         f"Project {project_id} has completed every phase")

        phase = self.catalog.get_phase(state.current_phase_key)
        if phase.get_action(action_key) is None:
            raise UnknownActionError(action_key, phase.key)

        now = self.clock()
        try:
            result = db.session.execute(
                update(ActionCompletion)
                .where(
                    ActionCompletion.project_id == project_id,
                    ActionCompletion.phase_key == phase.key,
                    ActionCompletion.action_key == action_key,
                    ActionCompletion.is_completed.is_(False),
                )
                .values(is_completed=True, completed_by=actor_id, completed_at=now,
                        notes=notes or "")
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                row = ActionCompletion.query.filter_by(
                    project_id=project_id, phase_key=phase.key, action_key=action_key,
                ).first()
                if row is not None:
                    db.session.rollback()
                    raise ActionAlreadyCompletedError(action_key, phase.key)
                db.session.add(ActionCompletion(
                    project_id=project_id, phase_key=phase.key, action_key=action_key,
                    is_completed=True, completed_by=actor_id, completed_at=now,
                    notes=notes or "",
                ))

            db.session.execute(
                update(ProjectPhaseState)
                .where(
                    ProjectPhaseState.project_id == project_id,
                    ProjectPhaseState.version == state.version,
                    ProjectPhaseState.status.in_(("pending", "waiting_client")),
                )
                .values(status="in_progress", updated_at=now)
                .execution_options(synchronize_session=False)
            )
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise ActionAlreadyCompletedError(action_key, phase.key) from None
        except _TRANSIENT_ERRORS as exc:
            db.session.rollback()
            raise TransientStorageError(
                f"Completing {action_key} for project {project_id} failed: {exc}"
            ) from exc

        logger.info("Action %s.%s completed by %s", phase.key, action_key, actor_id,
                    extra={"project_id": project_id, "phase_key": phase.key, "actor_id": actor_id})
        return self.engine.try_advance(project_id, actor_id=actor_id)

    def update_status(self, project_id: int, status: str, actor_id: str) -> ProjectPhaseState:
        """Admin status change within the current phase."""
        state = self.get_state(project_id)
        if status == "completed":
            raise InvalidTransitionError(
                state.current_phase_key, COMPLETED_PHASE_KEY,
                "Status 'completed' is set by the workflow when the last phase finishes",
            )
        if status not in ADMIN_SETTABLE_STATUSES:
            raise ValidationError(
                f"Unknown status '{status}'",
                details={"status": status, "allowed": sorted(ADMIN_SETTABLE_STATUSES)},
            )
        if state.is_completed:
            raise InvalidTransitionError(COMPLETED_PHASE_KEY, None,
                                         f"Project {project_id} has completed every phase")

        try:
            result = db.session.execute(
                update(ProjectPhaseState)
                .where(
                    ProjectPhaseState.project_id == project_id,
                    ProjectPhaseState.version == state.version,
                    ProjectPhaseState.is_completed.is_(False),
                )
                .values(status=status, updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.session.rollback()
                raise ConflictError(
                    "ProjectPhaseState", "version", str(state.version),
                    message=f"Project {project_id} changed phase concurrently; reload and retry",
                )
            db.session.commit()
        except _TRANSIENT_ERRORS as exc:
            db.session.rollback()
            raise TransientStorageError(f"Status update for project {project_id} failed: {exc}") from exc

        logger.info("Project %s status set to %s by %s", project_id, status, actor_id,
                    extra={"project_id": project_id, "actor_id": actor_id})
        return self.get_state(project_id)
