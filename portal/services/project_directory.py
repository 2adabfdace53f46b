"""
Client Portal
Project Directory: read-only view of portal projects and invoices.

The phase workflow never writes Project or Invoice rows; it asks this
directory whether a project exists, which projects are candidates for a
sweep, and what the project's billing looks like.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from portal.core.exceptions import NotFoundError
from portal.models import db
from portal.models.project import UNPAID_INVOICE_STATUSES, Invoice, Project
from portal.utils.helpers import as_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProjectSnapshot:
    id: int
    name: str
    client_id: str | None
    status: str
    is_archived: bool


@dataclass(frozen=True)
class InvoiceSnapshot:
    id: int
    project_id: int
    invoice_number: str
    status: str
    due_date: date | None
    paid_at: datetime | None

    def days_overdue(self, today: date) -> int:
        if self.due_date is None:
            return 0
        return max((today - self.due_date).days, 0)


def _project_snapshot(project: Project) -> ProjectSnapshot:
    return ProjectSnapshot(
        id=project.id,
        name=project.name,
        client_id=project.client_id,
        status=project.status or "active",
        is_archived=bool(project.is_archived),
    )


def _invoice_snapshot(invoice: Invoice) -> InvoiceSnapshot:
    return InvoiceSnapshot(
        id=invoice.id,
        project_id=invoice.project_id,
        invoice_number=invoice.invoice_number,
        status=invoice.status,
        due_date=invoice.due_date,
        paid_at=as_utc(invoice.paid_at),
    )


class ProjectDirectory:
    """Query helper over Project / Invoice."""

    def get_project(self, project_id: int) -> ProjectSnapshot:
        project = db.session.get(Project, project_id)
        if project is None:
            raise NotFoundError(resource="Project", resource_id=project_id)
        return _project_snapshot(project)

    def exists(self, project_id: int) -> bool:
        return db.session.get(Project, project_id) is not None

    def list_active_project_ids(self) -> list[int]:
        """Projects eligible for automation: active and not archived."""
        rows = (
            db.session.query(Project.id)
            .filter(Project.status == "active", Project.is_archived.is_(False))
            .order_by(Project.id)
            .all()
        )
        return [r[0] for r in rows]

    def has_payment_since(self, project_id: int, since: datetime | None) -> bool:
        """True if a paid invoice has ``paid_at`` at or after ``since``."""
        paid = Invoice.query.filter_by(project_id=project_id, status="paid").all()
        since = as_utc(since)
        for invoice in paid:
            paid_at = as_utc(invoice.paid_at)
            if paid_at is None:
                continue
            if since is None or paid_at >= since:
                return True
        return False

    def overdue_invoices(self, project_id: int, today: date, grace_days: int = 0) -> list[InvoiceSnapshot]:
        """Unpaid invoices whose due date plus ``grace_days`` is before ``today``."""
        cutoff = today - timedelta(days=grace_days)
        invoices = (
            Invoice.query
            .filter(Invoice.project_id == project_id,
                    Invoice.status.in_(UNPAID_INVOICE_STATUSES),
                    Invoice.due_date.isnot(None),
                    Invoice.due_date < cutoff)
            .order_by(Invoice.id)
            .all()
        )
        return [_invoice_snapshot(i) for i in invoices]
