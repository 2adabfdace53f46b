"""
Notification dispatch + in-app notification service tests.

External channels are exercised with a mocked requests session; nothing
leaves the process.
"""

import threading
from unittest.mock import MagicMock

import pytest
import requests

from portal.core.exceptions import NotificationDispatchError
from portal.models import db
from portal.models.notification import Notification
from portal.services.notification import NotificationService
from portal.services.notification_dispatcher import (
    CompositeDispatcher,
    Dispatcher,
    InAppDispatcher,
    NotificationRequest,
    TimeoutDispatcher,
    WebhookDispatcher,
    build_dispatcher,
    render_template,
)
from portal.services.phase_service import PhaseService


def _request(project_id=1, kind="phase_advanced", **data):
    data.setdefault("project_name", "Bakery rebrand")
    data.setdefault("to_phase_name", "Ideation")
    return NotificationRequest(project_id, "client", kind, data)


class TestRenderTemplate:

    def test_fills_known_values(self):
        assert render_template("{project_name} in {phase_name}",
                               {"project_name": "Site", "phase_name": "Design"}) == "Site in Design"

    def test_missing_values_render_blank(self):
        assert render_template("Invoice {invoice_number} due", {}) == "Invoice  due"


class TestInAppDispatcher:

    def test_uses_kind_template(self, make_project):
        project = make_project()
        notif = InAppDispatcher().dispatch(_request(project.id))

        stored = db.session.get(Notification, notif.id)
        assert stored.title == "Project moved to Ideation"
        assert stored.message == "Bakery rebrand is now in the Ideation phase."
        assert stored.recipient_role == "client"
        assert stored.severity == "info"

    def test_explicit_title_wins(self, make_project):
        project = make_project()
        notif = InAppDispatcher().dispatch(_request(project.id, kind="project_stuck",
                                                    title="Custom", message="Body"))
        assert notif.title == "Custom"
        assert notif.message == "Body"
        assert notif.severity == "warning"

    def test_unknown_kind_gets_generic_title(self, make_project):
        project = make_project()
        notif = InAppDispatcher().dispatch(_request(project.id, kind="studio_update"))
        assert notif.title == "Studio update"

    def test_phase_advance_writes_notification(self, app, make_project):
        service = PhaseService(build_dispatcher(app.config))
        project = make_project()
        service.initialize_phase_tracking(project.id)
        service.advance_phase_manually(project.id, "ideation", "admin-1")

        items, total = NotificationService.list_for_project(project.id)
        assert total == 1
        assert items[0].kind == "phase_advanced"
        assert items[0].data["to_phase"] == "ideation"


class TestWebhookDispatcher:

    def test_posts_request_as_json(self):
        session = MagicMock()
        session.post.return_value.status_code = 204
        dispatcher = WebhookDispatcher("https://hooks.example.com/portal", timeout=3, session=session)

        assert dispatcher.dispatch(_request()) == 204

        session.post.assert_called_once()
        _, kwargs = session.post.call_args
        assert kwargs["json"]["kind"] == "phase_advanced"
        assert kwargs["json"]["data"]["to_phase_name"] == "Ideation"
        assert kwargs["timeout"] == 3

    def test_http_error_raises_dispatch_error(self):
        session = MagicMock()
        session.post.return_value.raise_for_status.side_effect = requests.HTTPError("502 Bad Gateway")
        dispatcher = WebhookDispatcher("https://hooks.example.com/portal", session=session)

        with pytest.raises(NotificationDispatchError, match="502"):
            dispatcher.dispatch(_request())

    def test_connection_error_raises_dispatch_error(self):
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("refused")
        dispatcher = WebhookDispatcher("https://hooks.example.com/portal", session=session)

        with pytest.raises(NotificationDispatchError, match="refused"):
            dispatcher.dispatch(_request())


class _BlockingDispatcher(Dispatcher):
    name = "blocking"

    def __init__(self):
        self.release = threading.Event()

    def dispatch(self, request):
        self.release.wait(5)
        return "late"


class _CountingDispatcher(Dispatcher):
    def __init__(self, name, fail=False):
        self.name = name
        self.fail = fail
        self.calls = 0

    def dispatch(self, request):
        self.calls += 1
        if self.fail:
            raise NotificationDispatchError(f"{self.name} down")


class TestTimeoutDispatcher:

    def test_slow_channel_times_out(self):
        inner = _BlockingDispatcher()
        dispatcher = TimeoutDispatcher(inner, timeout=0.05)
        try:
            with pytest.raises(NotificationDispatchError, match="timed out"):
                dispatcher.dispatch(_request())
        finally:
            inner.release.set()
            dispatcher.shutdown()

    def test_fast_channel_returns_result(self):
        inner = _BlockingDispatcher()
        inner.release.set()
        dispatcher = TimeoutDispatcher(inner, timeout=2)
        assert dispatcher.dispatch(_request()) == "late"
        dispatcher.shutdown()

    def test_inner_error_propagates(self):
        dispatcher = TimeoutDispatcher(_CountingDispatcher("webhook", fail=True), timeout=2)
        with pytest.raises(NotificationDispatchError, match="webhook down"):
            dispatcher.dispatch(_request())
        dispatcher.shutdown()


class TestCompositeDispatcher:

    def test_failing_channel_does_not_block_others(self):
        broken = _CountingDispatcher("webhook", fail=True)
        healthy = _CountingDispatcher("in_app")
        dispatcher = CompositeDispatcher([broken, healthy])

        with pytest.raises(NotificationDispatchError, match="webhook: webhook down"):
            dispatcher.dispatch(_request())
        assert healthy.calls == 1

    def test_all_channels_ok(self):
        channels = [_CountingDispatcher("a"), _CountingDispatcher("b")]
        CompositeDispatcher(channels).dispatch(_request())
        assert [c.calls for c in channels] == [1, 1]

    def test_build_without_webhook_is_in_app_only(self, app):
        dispatcher = build_dispatcher(app.config)
        assert [d.name for d in dispatcher.dispatchers] == ["in_app"]

    def test_build_with_webhook(self):
        dispatcher = build_dispatcher({"NOTIFICATION_WEBHOOK_URL": "https://hooks.example.com/x",
                                       "NOTIFICATION_DISPATCH_TIMEOUT_SECONDS": 2})
        names = [d.name for d in dispatcher.dispatchers]
        assert names == ["in_app", "timeout"]
        assert dispatcher.dispatchers[1].inner.timeout == 2.0
        dispatcher.dispatchers[1].shutdown()


class TestNotificationService:

    def test_unread_and_mark_all_read(self, make_project):
        project = make_project()
        for title in ("One", "Two"):
            NotificationService.create(title=title, project_id=project.id)
        NotificationService.create(title="Admin only", project_id=project.id, recipient_role="admin")

        assert NotificationService.unread_count(project.id) == 3
        assert NotificationService.unread_count(project.id, recipient_role="client") == 2

        assert NotificationService.mark_all_read(project.id, recipient_role="client") == 2
        assert NotificationService.unread_count(project.id) == 1

    def test_mark_read(self, make_project):
        project = make_project()
        notif = NotificationService.create(title="Hello", project_id=project.id)

        updated = NotificationService.mark_read(notif.id)

        assert updated.is_read is True
        assert updated.read_at is not None
        assert NotificationService.mark_read(999) is None
