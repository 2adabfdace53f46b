"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi seed-automation-rules
    gunicorn wsgi:app
"""

from portal import create_app

app = create_app()
