"""
Client Portal
Notification Service.

Central service for creating and querying in-app notifications.
Phase events reach it through InAppDispatcher.
"""

from datetime import datetime, timezone

from portal.models import db
from portal.models.notification import Notification


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, title, message="", kind="custom", severity="info",
               recipient_role="client", recipient="all", project_id=None,
               data=None, commit=True):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (committed unless commit=False).
        """
        notif = Notification(
            project_id=project_id,
            recipient_role=recipient_role,
            recipient=recipient,
            kind=kind,
            title=title,
            message=message,
            severity=severity,
            data=data or {},
        )
        db.session.add(notif)
        if commit:
            db.session.commit()
        return notif

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_project(project_id, recipient_role=None, unread_only=False,
                         limit=50, offset=0):
        """
        Retrieve notifications of a project, newest first.
        """
        q = Notification.query.filter_by(project_id=project_id)
        if recipient_role:
            q = q.filter_by(recipient_role=recipient_role)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = (q.order_by(Notification.created_at.desc(), Notification.id.desc())
                 .offset(offset).limit(limit).all())
        return items, total

    @staticmethod
    def unread_count(project_id, recipient_role=None):
        """Return count of unread notifications."""
        q = Notification.query.filter_by(project_id=project_id, is_read=False)
        if recipient_role:
            q = q.filter_by(recipient_role=recipient_role)
        return q.count()

    # ── Actions ───────────────────────────────────────────────────────────

    @staticmethod
    def mark_read(notification_id):
        """Mark a single notification as read."""
        notif = db.session.get(Notification, notification_id)
        if notif:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(project_id, recipient_role=None):
        """Mark all notifications of a project as read."""
        q = Notification.query.filter_by(project_id=project_id, is_read=False)
        if recipient_role:
            q = q.filter_by(recipient_role=recipient_role)
        now = datetime.now(timezone.utc)
        count = q.update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        db.session.commit()
        return count
