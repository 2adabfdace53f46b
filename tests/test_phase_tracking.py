"""
Phase tracking store tests.

Initialization, required-action completion, completion summaries and admin
status changes.
"""

import pytest

from portal.core.exceptions import (
    ActionAlreadyCompletedError,
    AlreadyInitializedError,
    InvalidTransitionError,
    NotFoundError,
    UnknownActionError,
    ValidationError,
)
from portal.models.phase import ActionCompletion, PhaseTransition, ProjectPhaseState


class TestInitialize:

    def test_creates_state_at_first_phase(self, service, make_project):
        project = make_project()
        state, created = service.initialize_phase_tracking(project.id)

        assert created is True
        assert state.current_phase_key == "onboarding"
        assert state.current_phase_index == 1
        assert state.status == "pending"
        assert state.version == 1
        assert state.is_completed is False

        rows = ActionCompletion.query.filter_by(project_id=project.id).all()
        assert sorted(r.action_key for r in rows) == ["complete_brief", "sign_agreement", "submit_deposit"]
        assert all(not r.is_completed for r in rows)

        # Starting the workflow is not a phase move
        assert service.list_phase_history(project.id) == []
        assert state.phase_timestamps["onboarding"]["started_at"]

    def test_initialize_twice_creates_no_duplicates(self, service, make_project):
        project = make_project()
        first, _ = service.initialize_phase_tracking(project.id)
        again, created = service.initialize_phase_tracking(project.id)

        assert created is False
        assert again.id == first.id
        assert ProjectPhaseState.query.filter_by(project_id=project.id).count() == 1
        assert ActionCompletion.query.filter_by(project_id=project.id).count() == 3
        assert PhaseTransition.query.filter_by(project_id=project.id).count() == 0

    def test_strict_initialize_raises(self, service, make_project):
        project = make_project()
        service.initialize_phase_tracking(project.id)
        with pytest.raises(AlreadyInitializedError):
            service.initialize_phase_tracking(project.id, strict=True)

    def test_unknown_project(self, service):
        with pytest.raises(NotFoundError):
            service.initialize_phase_tracking(9999)

    def test_get_state_requires_initialization(self, service, make_project):
        project = make_project()
        with pytest.raises(NotFoundError):
            service.store.get_state(project.id)


class TestCompleteAction:

    def test_completion_increments_mandatory_count_by_one(self, service, make_project):
        project = make_project()
        service.initialize_phase_tracking(project.id)
        before = service.store.get_completion_summary(project.id)

        service.complete_required_action(project.id, "complete_brief", "client-1")
        after = service.store.get_completion_summary(project.id)

        assert before == {"phase_key": "onboarding", "total": 3, "completed": 0,
                          "mandatory_total": 2, "mandatory_completed": 0}
        assert after["mandatory_completed"] == before["mandatory_completed"] + 1
        assert after["completed"] == 1

    def test_records_actor_and_timestamp(self, service, clock, make_project):
        project = make_project()
        service.initialize_phase_tracking(project.id)
        service.complete_required_action(project.id, "complete_brief", "client-7", notes="done")

        row = ActionCompletion.query.filter_by(project_id=project.id, action_key="complete_brief").one()
        assert row.is_completed is True
        assert row.completed_by == "client-7"
        assert row.completed_at is not None
        assert row.notes == "done"

    def test_optional_action_does_not_advance(self, service, make_project):
        project = make_project()
        service.initialize_phase_tracking(project.id)
        state = service.complete_required_action(project.id, "submit_deposit", "client-1")
        assert state.current_phase_key == "onboarding"
        assert state.status == "in_progress"

    def test_unknown_action_for_current_phase(self, service, make_project):
        project = make_project()
        service.initialize_phase_tracking(project.id)
        with pytest.raises(UnknownActionError) as exc_info:
            service.complete_required_action(project.id, "approve_designs", "client-1")
        assert exc_info.value.details == {"action_key": "approve_designs", "phase_key": "onboarding"}

    def test_already_completed(self, service, make_project):
        project = make_project()
        service.initialize_phase_tracking(project.id)
        service.complete_required_action(project.id, "complete_brief", "client-1")
        with pytest.raises(ActionAlreadyCompletedError):
            service.complete_required_action(project.id, "complete_brief", "client-2")

        row = ActionCompletion.query.filter_by(project_id=project.id, action_key="complete_brief").one()
        assert row.completed_by == "client-1"

    def test_uninitialized_project(self, service, make_project):
        project = make_project()
        with pytest.raises(NotFoundError):
            service.complete_required_action(project.id, "complete_brief", "client-1")


class TestListActions:

    def test_merges_catalog_and_rows(self, service, make_project):
        project = make_project()
        service.initialize_phase_tracking(project.id)
        service.complete_required_action(project.id, "sign_agreement", "client-1")

        actions = {a["key"]: a for a in service.store.list_actions(project.id)}
        assert actions["sign_agreement"]["is_completed"] is True
        assert actions["sign_agreement"]["completed_by"] == "client-1"
        assert actions["complete_brief"]["is_completed"] is False
        assert actions["submit_deposit"]["mandatory"] is False


class TestUpdateStatus:

    def test_admin_sets_needs_approval(self, service, make_project):
        project = make_project()
        service.initialize_phase_tracking(project.id)
        state = service.update_phase_status(project.id, "needs_approval", "admin-1")
        assert state.status == "needs_approval"
        assert state.version == 1

    def test_completed_is_reserved(self, service, make_project):
        project = make_project()
        service.initialize_phase_tracking(project.id)
        with pytest.raises(InvalidTransitionError):
            service.update_phase_status(project.id, "completed", "admin-1")

    def test_unknown_status(self, service, make_project):
        project = make_project()
        service.initialize_phase_tracking(project.id)
        with pytest.raises(ValidationError):
            service.update_phase_status(project.id, "sleeping", "admin-1")
