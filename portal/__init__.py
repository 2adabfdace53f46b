"""
Client Portal
Flask Application Factory.

Usage:
    from portal import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import atexit
import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate

from portal.config import config
from portal.models import db
from portal.middleware.logging_config import configure_logging
from portal.middleware.rate_limiter import init_rate_limits
from portal.middleware.timing import init_request_timing

logger = logging.getLogger(__name__)

# ── SQLite FK enforcement (global engine event) ─────────────────────────
from sqlalchemy import event as _sa_event, engine as _sa_engine


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit, applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),  # Redis in production, memory for dev
)


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    config_cls = config[config_name]
    app.config.from_object(config_cls() if config_name == "production" else config_cls)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    app.config.setdefault("MAX_CONTENT_LENGTH", 1 * 1024 * 1024)  # 1 MB

    # ── Import all models so Alembic can detect them ─────────────────────
    from portal.models import project as _project_models         # noqa: F401
    from portal.models import phase as _phase_models             # noqa: F401
    from portal.models import automation as _automation_models   # noqa: F401
    from portal.models import notification as _notification_models  # noqa: F401
    from portal.models import scheduling as _scheduling_models   # noqa: F401

    # ── Auto-create tables (CREATE IF NOT EXISTS) ────────────────────────
    if config_name == "development":
        os.makedirs(app.instance_path, exist_ok=True)
    with app.app_context():
        db.create_all()

    # ── Blueprints ───────────────────────────────────────────────────────
    from portal.blueprints.phase_bp import phase_bp
    from portal.blueprints.automation_bp import automation_bp
    from portal.blueprints.notification_bp import notification_bp
    from portal.blueprints.health_bp import health_bp

    app.register_blueprint(phase_bp)
    app.register_blueprint(automation_bp)
    app.register_blueprint(notification_bp)
    app.register_blueprint(health_bp)

    # ── CLI commands ─────────────────────────────────────────────────────
    @app.cli.command("seed-automation-rules")
    def seed_automation_rules_cmd():
        """Seed the default phase automation rules."""
        from portal.services.automation_rules import seed_default_rules
        count = seed_default_rules()
        db.session.commit()
        logger.info("Seeded %s new automation rules.", count)

    @app.cli.command("run-automation-sweep")
    def run_automation_sweep_cmd():
        """Run one automation sweep and print its counters."""
        from portal.services.phase_service import get_phase_service
        result = get_phase_service().run_automation_sweep_once()
        click.echo(result)

    # ── Health check (short form, detailed version at /health/live) ──────
    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Client Portal"}

    # ── Error handlers ───────────────────────────────────────────────────
    @app.errorhandler(404)
    def not_found(e):
        from flask import request
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    # ── Rate limiting (after blueprints registered) ──────────────────────
    init_rate_limits(app, limiter)

    # ── Phase workflow + automation scheduler ────────────────────────────
    from portal.services.phase_service import (
        AUTOMATION_JOB_NAME,
        init_phase_service,
        run_automation_sweep,
    )
    from portal.services.scheduler_service import JobScheduler

    init_phase_service(app)
    scheduler = JobScheduler()
    scheduler.register(
        AUTOMATION_JOB_NAME,
        run_automation_sweep,
        interval_seconds=app.config.get("AUTOMATION_INTERVAL_SECONDS", 60),
    )
    scheduler.init_app(app)
    scheduler.ensure_jobs_registered()

    if app.config.get("AUTOMATION_ENABLED"):
        scheduler.start()
        atexit.register(scheduler.stop)

    return app
