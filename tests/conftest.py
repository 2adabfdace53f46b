"""
Shared pytest fixtures for the Client Portal test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - clock: controllable clock for time-based rules
    - recorder: dispatcher that records (or fails) notification requests
    - service: PhaseService wired to ``clock`` and ``recorder``
    - make_project / make_invoice: ORM helper factories
"""

from datetime import datetime, timedelta, timezone

import pytest

from portal import create_app
from portal.core.exceptions import NotificationDispatchError
from portal.models import db as _db
from portal.models.project import Invoice, Project
from portal.services.notification_dispatcher import Dispatcher
from portal.services.phase_service import PhaseService


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Test doubles ─────────────────────────────────────────────────────────


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now=None):
        self.now = now or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingDispatcher(Dispatcher):
    """Keeps every request; raises NotificationDispatchError when ``fail`` is set."""

    name = "recording"

    def __init__(self):
        self.requests = []
        self.fail = False

    def dispatch(self, request):
        if self.fail:
            raise NotificationDispatchError("recording dispatcher set to fail")
        self.requests.append(request)

    def kinds(self):
        return [r.kind for r in self.requests]


@pytest.fixture()
def clock():
    return FrozenClock()


@pytest.fixture()
def recorder():
    return RecordingDispatcher()


@pytest.fixture()
def service(clock, recorder):
    """PhaseService with a frozen clock and a recording dispatcher."""
    return PhaseService(recorder, clock=clock)


# ── ORM helper factories ─────────────────────────────────────────────────


@pytest.fixture()
def make_project():
    def _make(name="Bakery rebrand", status="active", is_archived=False, client_id="client-1"):
        project = Project(name=name, status=status, is_archived=is_archived, client_id=client_id)
        _db.session.add(project)
        _db.session.commit()
        return project
    return _make


@pytest.fixture()
def make_invoice():
    counter = {"n": 0}

    def _make(project, status="sent", due_date=None, paid_at=None, amount=500):
        counter["n"] += 1
        invoice = Invoice(
            project_id=project.id,
            invoice_number=f"INV-{project.id:03d}-{counter['n']:03d}",
            amount=amount,
            status=status,
            due_date=due_date,
            paid_at=paid_at,
        )
        _db.session.add(invoice)
        _db.session.commit()
        return invoice
    return _make


def complete_phase(service, project_id, actor_id="client-1"):
    """Complete every mandatory action of the project's current phase."""
    state = service.store.get_state(project_id)
    phase = service.catalog.get_phase(state.current_phase_key)
    for action in phase.mandatory_actions:
        service.complete_required_action(project_id, action.key, actor_id)


def advance_to(service, project_id, phase_key, actor_id="admin-1"):
    """Walk a project forward (adjacent manual advances) until it reaches ``phase_key``."""
    target_index = service.catalog.index_of(phase_key)
    while service.store.get_state(project_id).current_phase_index < target_index:
        state = service.store.get_state(project_id)
        nxt = service.catalog.next_phase(state.current_phase_key)
        service.advance_phase_manually(project_id, nxt.key, actor_id)
