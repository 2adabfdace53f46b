#!/usr/bin/env python3
"""Show DB record counts for the client portal tables."""
import sys
sys.path.insert(0, ".")

from portal import create_app
from portal.models import db

TABLES = [
    "projects", "invoices", "project_phase_states", "phase_action_completions",
    "phase_transitions", "automation_rules", "rule_execution_records",
    "notifications", "scheduled_jobs",
]

app = create_app()
with app.app_context():
    total = 0
    for t in TABLES:
        c = db.session.execute(db.text(f"SELECT COUNT(*) FROM {t}")).scalar()
        total += c
        print(f"    {t:.<32} {c}")
    print(f"    {'TOTAL':.<32} {total}")
