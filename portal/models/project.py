"""
Client Portal
Project & Invoice models.

These rows belong to the surrounding portal (project intake, billing).
The phase workflow only reads them through ProjectDirectory.

Models:
    - Project: a client engagement tracked through the phase workflow
    - Invoice: billing record; a paid invoice can trigger phase automation
"""

from datetime import datetime, timezone

from portal.models import db


# ── Constants ────────────────────────────────────────────────────────────────

PROJECT_STATUSES = {"active", "on_hold", "completed", "cancelled"}
INVOICE_STATUSES = {"draft", "sent", "paid", "overdue", "cancelled"}
UNPAID_INVOICE_STATUSES = {"sent", "overdue"}


class Project(db.Model):
    """A client project."""

    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    client_id = db.Column(db.String(150), nullable=True, index=True,
                          comment="Owning client account identifier")
    status = db.Column(db.String(20), default="active",
                       comment="active, on_hold, completed, cancelled")
    is_archived = db.Column(db.Boolean, default=False, nullable=False)
    archived_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    invoices = db.relationship("Invoice", backref="project", lazy="dynamic",
                               cascade="all, delete-orphan")

    def archive(self):
        self.is_archived = True
        self.archived_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "client_id": self.client_id,
            "status": self.status,
            "is_archived": self.is_archived,
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Project {self.id}: {self.name}>"


class Invoice(db.Model):
    """Invoice issued against a project."""

    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"),
                           nullable=False, index=True)
    invoice_number = db.Column(db.String(50), unique=True, nullable=False)
    amount = db.Column(db.Numeric(12, 2), default=0)
    status = db.Column(db.String(20), default="draft",
                       comment="draft, sent, paid, overdue, cancelled")
    due_date = db.Column(db.Date, nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "invoice_number": self.invoice_number,
            "amount": str(self.amount) if self.amount is not None else None,
            "status": self.status,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }

    def __repr__(self):
        return f"<Invoice {self.invoice_number} [{self.status}]>"
