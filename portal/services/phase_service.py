"""
Client Portal
Phase Service: facade used by the blueprints and CLI.

Wires the catalog, project directory, notification dispatcher, transition
engine, tracking store and automation service together once per app:

    init_phase_service(app)          # in create_app
    get_phase_service().get_phase_state(42)
"""

from __future__ import annotations

import logging

from flask import current_app

from portal.services.notification_dispatcher import build_dispatcher
from portal.services.phase_automation import PhaseAutomationService
from portal.services.phase_catalog import DEFAULT_CATALOG
from portal.services.phase_engine import TransitionEngine
from portal.services.phase_tracking import PhaseTrackingStore
from portal.services.project_directory import ProjectDirectory
from portal.utils.helpers import utcnow

logger = logging.getLogger(__name__)

AUTOMATION_JOB_NAME = "phase_automation_sweep"


class PhaseService:
    """External interface of the phase workflow."""

    def __init__(self, dispatcher, catalog=DEFAULT_CATALOG, directory=None, clock=utcnow,
                 system_actor_id="system"):
        self.catalog = catalog
        self.directory = directory or ProjectDirectory()
        self.dispatcher = dispatcher
        self.system_actor_id = system_actor_id
        self.engine = TransitionEngine(dispatcher, catalog=catalog, directory=self.directory, clock=clock)
        self.store = PhaseTrackingStore(self.engine, directory=self.directory, catalog=catalog, clock=clock)
        self.automation = PhaseAutomationService(
            self.engine, self.store, self.directory, dispatcher,
            catalog=catalog, clock=clock, actor_id=system_actor_id,
        )

    def list_phases(self) -> list[dict]:
        return [phase.to_dict() for phase in self.catalog.get_phases()]

    def initialize_phase_tracking(self, project_id: int, actor_id: str | None = None,
                                  strict: bool = False):
        return self.store.initialize(project_id, actor_id=actor_id or self.system_actor_id,
                                     strict=strict)

    def complete_required_action(self, project_id: int, action_key: str, actor_id: str,
                                 notes: str | None = None):
        return self.store.complete_action(project_id, action_key, actor_id, notes=notes)

    def get_phase_state(self, project_id: int) -> dict:
        """State, current phase details, action list and completion summary."""
        state = self.store.get_state(project_id)
        phase = self.catalog.get_phase(state.current_phase_key)
        next_phase = self.catalog.next_phase(phase.key)
        return {
            "state": state.to_dict(),
            "phase": {
                "key": phase.key,
                "index": phase.index,
                "name": phase.name,
                "code": phase.code,
                "description": phase.description,
                "requires_client_action": phase.requires_client_action,
            },
            "next_phase_key": next_phase.key if next_phase else None,
            "actions": self.store.list_actions(project_id),
            "summary": self.store.get_completion_summary(project_id),
        }

    def list_phase_history(self, project_id: int):
        return self.engine.list_history(project_id)

    def advance_phase_manually(self, project_id: int, target_phase_key: str, actor_id: str,
                               override: bool = False, reason: str | None = None):
        return self.engine.advance_manually(project_id, target_phase_key, actor_id,
                                            override=override, reason=reason)

    def update_phase_status(self, project_id: int, status: str, actor_id: str):
        return self.store.update_status(project_id, status, actor_id)

    def run_automation_sweep_once(self) -> dict:
        return self.automation.run_sweep_once()


def run_automation_sweep(app) -> dict:
    """Evaluate automation rules against all active projects."""
    return app.extensions["phase_service"].run_automation_sweep_once()


def init_phase_service(app, service: PhaseService | None = None) -> PhaseService:
    """Build the PhaseService for ``app`` and store it in app.extensions."""
    if service is None:
        service = PhaseService(
            build_dispatcher(app.config),
            system_actor_id=app.config.get("SYSTEM_ACTOR_ID", "system"),
        )
    app.extensions["phase_service"] = service
    return service


def get_phase_service() -> PhaseService:
    return current_app.extensions["phase_service"]
