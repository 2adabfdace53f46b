"""
Client Portal
Notification domain model.

Models:
    - Notification: in-app notification record with read tracking
"""

from datetime import datetime, timezone

from portal.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_KINDS = {
    "phase_advanced", "project_completed", "project_stuck",
    "action_reminder", "payment_reminder", "custom",
}
NOTIFICATION_SEVERITIES = {"info", "warning", "error", "success"}
RECIPIENT_ROLES = {"client", "admin"}


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient role per event.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=True, index=True,
    )
    recipient_role = db.Column(db.String(20), default="client", index=True,
                               comment="client or admin")
    recipient = db.Column(db.String(150), default="all", comment="User id or 'all' for the role")
    kind = db.Column(db.String(40), default="custom")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    severity = db.Column(db.String(20), default="info")
    data = db.Column(db.JSON, default=dict, comment="Event payload (phase keys, invoice ids)")

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "recipient_role": self.recipient_role,
            "recipient": self.recipient,
            "kind": self.kind,
            "title": self.title,
            "message": self.message,
            "severity": self.severity,
            "data": self.data or {},
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
