#!/usr/bin/env python3
"""Create a few demo projects with phase tracking and the default rules.

Usage:
    APP_ENV=development python scripts/seed_demo_projects.py
"""
import sys
from datetime import date, datetime, timedelta, timezone
sys.path.insert(0, ".")

from portal import create_app
from portal.models import db
from portal.models.project import Invoice, Project
from portal.services.automation_rules import seed_default_rules
from portal.services.phase_service import get_phase_service

DEMO_PROJECTS = [
    ("Bakery rebrand", "client-bakery"),
    ("Yoga studio brochure", "client-yoga"),
    ("Coffee roaster packaging", "client-coffee"),
]

app = create_app()
with app.app_context():
    rules = seed_default_rules()
    db.session.commit()
    print(f"Seeded {rules} automation rules")

    service = get_phase_service()
    for name, client_id in DEMO_PROJECTS:
        project = Project.query.filter_by(name=name).first()
        if project is None:
            project = Project(name=name, client_id=client_id, status="active")
            db.session.add(project)
            db.session.commit()
        _, created = service.initialize_phase_tracking(project.id, actor_id="seed")
        print(f"  {name:.<36} {'initialized' if created else 'exists'}")

    coffee = Project.query.filter_by(name="Coffee roaster packaging").first()
    if coffee and not Invoice.query.filter_by(invoice_number="DEMO-0001").first():
        db.session.add(Invoice(
            project_id=coffee.id,
            invoice_number="DEMO-0001",
            amount=1200,
            status="sent",
            due_date=date.today() - timedelta(days=5),
        ))
        db.session.commit()
        print(f"  overdue demo invoice created at {datetime.now(timezone.utc).isoformat()}")
