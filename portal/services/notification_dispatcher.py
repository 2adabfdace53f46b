"""
Client Portal
Notification Dispatcher: boundary between phase events and delivery.

A dispatch request is ``{project_id, recipient_role, kind, data}``. Every
dispatcher either returns normally or raises NotificationDispatchError;
callers log the error and never roll phase state back because of it.

    dispatcher = build_dispatcher(app.config)
    dispatcher.dispatch(NotificationRequest(42, "client", "phase_advanced",
                                            {"to_phase": "ideation"}))

Delivery channels:
  - InAppDispatcher:   writes a Notification row (always on)
  - WebhookDispatcher: POSTs the request as JSON (when a URL is configured)
  - TimeoutDispatcher: bounds a slow channel with a worker-thread timeout
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import asdict, dataclass, field

import requests
from sqlalchemy.exc import SQLAlchemyError

from portal.core.exceptions import NotificationDispatchError
from portal.models import db
from portal.services.notification import NotificationService

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 10

# kind -> (title template, message template, severity)
DEFAULT_TEMPLATES = {
    "phase_advanced": ("Project moved to {to_phase_name}",
                       "{project_name} is now in the {to_phase_name} phase.", "info"),
    "project_completed": ("Project completed",
                          "{project_name} has finished every phase.", "success"),
    "project_stuck": ("Project waiting on you",
                      "{project_name} has been in {phase_name} for {days_in_phase} days.", "warning"),
    "action_reminder": ("Actions pending",
                        "{project_name} is waiting on: {pending_actions}.", "warning"),
    "payment_reminder": ("Invoice overdue",
                         "Invoice {invoice_number} is {days_overdue} days overdue.", "warning"),
}


class _BlankDict(dict):
    def __missing__(self, key):
        return ""


def render_template(template: str, values: dict) -> str:
    """``str.format_map`` with unknown placeholders rendered empty."""
    return template.format_map(_BlankDict(values))


@dataclass(frozen=True)
class NotificationRequest:
    project_id: int
    recipient_role: str
    kind: str
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


class Dispatcher:
    """Delivery channel interface."""

    name = "base"

    def dispatch(self, request: NotificationRequest):
        raise NotImplementedError


class InAppDispatcher(Dispatcher):
    """Store the notification for the portal UI."""

    name = "in_app"

    def dispatch(self, request: NotificationRequest):
        data = dict(request.data or {})
        default_title, default_message, severity = DEFAULT_TEMPLATES.get(
            request.kind, (request.kind.replace("_", " ").capitalize(), "", "info"),
        )
        title = data.get("title") or render_template(default_title, data)
        message = data.get("message") or render_template(default_message, data)
        try:
            return NotificationService.create(
                title=title[:300],
                message=message,
                kind=request.kind,
                severity=severity,
                recipient_role=request.recipient_role,
                project_id=request.project_id,
                data=data,
            )
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise NotificationDispatchError(f"in-app notification failed: {exc}") from exc


class WebhookDispatcher(Dispatcher):
    """POST the request to an external endpoint (mail relay, chat bridge...).

    Pass a mock ``session`` in tests instead of a real requests.Session.
    """

    name = "webhook"

    def __init__(self, url: str, timeout: float = _DEFAULT_TIMEOUT, session=None):
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    def dispatch(self, request: NotificationRequest):
        try:
            response = self._session.post(self.url, json=request.to_dict(), timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise NotificationDispatchError(f"webhook {self.url} failed: {exc}") from exc
        return response.status_code


class TimeoutDispatcher(Dispatcher):
    """Run ``inner`` on a worker thread and give up after ``timeout`` seconds.

    The inner dispatcher must not touch the Flask-SQLAlchemy session: the
    worker thread has no app context.
    """

    name = "timeout"

    def __init__(self, inner: Dispatcher, timeout: float, max_workers: int = 4):
        self.inner = inner
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="notify")

    def dispatch(self, request: NotificationRequest):
        future = self._executor.submit(self.inner.dispatch, request)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError as exc:
            future.cancel()
            raise NotificationDispatchError(
                f"{self.inner.name} dispatch timed out after {self.timeout}s"
            ) from exc

    def shutdown(self):
        self._executor.shutdown(wait=False)


class CompositeDispatcher(Dispatcher):
    """Fan out to every channel; one failing channel does not block the others."""

    name = "composite"

    def __init__(self, dispatchers):
        self.dispatchers = list(dispatchers)

    def dispatch(self, request: NotificationRequest):
        errors = []
        for dispatcher in self.dispatchers:
            try:
                dispatcher.dispatch(request)
            except NotificationDispatchError as exc:
                logger.warning("Notification channel %s failed: %s", dispatcher.name, exc,
                               extra={"project_id": request.project_id})
                errors.append(f"{dispatcher.name}: {exc}")
        if errors:
            raise NotificationDispatchError("; ".join(errors))


def build_dispatcher(config) -> Dispatcher:
    """Build the dispatcher chain from app config."""
    channels = [InAppDispatcher()]
    url = config.get("NOTIFICATION_WEBHOOK_URL")
    if url:
        timeout = float(config.get("NOTIFICATION_DISPATCH_TIMEOUT_SECONDS", _DEFAULT_TIMEOUT))
        channels.append(TimeoutDispatcher(WebhookDispatcher(url, timeout=timeout), timeout=timeout))
        logger.info("Webhook notifications enabled (timeout=%ss)", timeout)
    return CompositeDispatcher(channels)
