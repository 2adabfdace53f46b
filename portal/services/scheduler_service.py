"""
Client Portal
Scheduler Service.

Lightweight fixed-interval job scheduler running on one background thread.
Each run gets its own Flask app context; run history is persisted on the
ScheduledJob model. Jobs can also be triggered manually via the API.

Architecture:
    - JobScheduler: job registration, persistence, execution, start/stop
    - Jobs are stored in ScheduledJob for enable/disable and run history
    - One scheduler per app, kept in ``app.extensions["scheduler"]``

Usage:
    scheduler = JobScheduler()
    scheduler.register("phase_automation_sweep", sweep_fn, interval_seconds=60)
    scheduler.init_app(app)
    scheduler.start()
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from flask import Flask
from sqlalchemy.exc import SQLAlchemyError

from portal.models import db
from portal.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


@dataclass
class RegisteredJob:
    name: str
    fn: Callable
    interval_seconds: int
    description: str = ""


class JobScheduler:
    """
    Fixed-interval scheduler.

    A job is due when ``interval_seconds`` have passed since its last start
    (monotonic clock). Disabled jobs (ScheduledJob.is_enabled = False) are
    skipped by the loop but can still be run manually.
    """

    def __init__(self, tick_seconds: float = 5):
        self.tick_seconds = tick_seconds
        self._jobs: dict[str, RegisteredJob] = {}
        self._app: Flask | None = None
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._in_flight: set[str] = set()
        self._last_started: dict[str, float] = {}

    # ── Setup ─────────────────────────────────────────────────────────────

    def init_app(self, app: Flask) -> None:
        """Bind to the Flask app."""
        self._app = app
        self.tick_seconds = app.config.get("SCHEDULER_TICK_SECONDS", self.tick_seconds)
        app.extensions["scheduler"] = self
        logger.info("JobScheduler initialized with %d registered jobs", len(self._jobs))

    def register(self, name: str, fn: Callable, interval_seconds: int, description: str = "") -> None:
        """Register ``fn(app)`` to run every ``interval_seconds``."""
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be positive, got {interval_seconds}")
        self._jobs[name] = RegisteredJob(name, fn, int(interval_seconds),
                                         description or (fn.__doc__ or "").strip())

    def job(self, name: str, interval_seconds: int):
        """Decorator form of :meth:`register`."""
        def decorator(fn: Callable) -> Callable:
            self.register(name, fn, interval_seconds)
            return fn
        return decorator

    @property
    def registered_jobs(self) -> dict[str, RegisteredJob]:
        return dict(self._jobs)

    def ensure_jobs_registered(self) -> list[ScheduledJob]:
        """
        Ensure all registered jobs have a corresponding DB record.
        Creates missing records with their interval config.
        """
        if not self._app:
            return []

        created = []
        with self._app.app_context():
            for job in self._jobs.values():
                existing = ScheduledJob.query.filter_by(job_name=job.name).first()
                if not existing:
                    record = ScheduledJob(
                        job_name=job.name,
                        description=job.description or f"Scheduled job: {job.name}",
                        schedule_type="interval",
                        schedule_config={"interval_seconds": job.interval_seconds},
                        status="active",
                        is_enabled=True,
                        run_count=0,
                        error_count=0,
                    )
                    db.session.add(record)
                    created.append(record)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    # ── Execution ─────────────────────────────────────────────────────────

    def run_job(self, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with status, duration_ms, result or error.
        """
        job = self._jobs.get(job_name)
        if not job:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if not self._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        with self._lock:
            if job_name in self._in_flight:
                return {"job_name": job_name, "status": "skipped", "error": "Job already running"}
            self._in_flight.add(job_name)
            self._last_started[job_name] = time.monotonic()

        start = time.monotonic()
        result = None
        error = None
        status = "success"
        try:
            with self._app.app_context():
                result = job.fn(self._app)
            if isinstance(result, dict) and result.get("aborted"):
                status = "failed"
                error = result.get("error") or "aborted"
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc, extra={"job_name": job_name})
        finally:
            with self._lock:
                self._in_flight.discard(job_name)

        duration_ms = int((time.monotonic() - start) * 1000)

        try:
            with self._app.app_context():
                record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if record:
                    record.record_run(
                        status=status,
                        duration_ms=duration_ms,
                        result=result if isinstance(result, dict) else {"output": str(result)},
                        error=error,
                    )
                    db.session.commit()
        except SQLAlchemyError:
            logger.exception("Failed to update job record for %s", job_name,
                             extra={"job_name": job_name})

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    def due_jobs(self, now: float | None = None) -> list[str]:
        """Names of enabled jobs whose interval has elapsed."""
        now = time.monotonic() if now is None else now
        with self._app.app_context():
            disabled = {
                name for (name,) in db.session.query(ScheduledJob.job_name)
                .filter(ScheduledJob.is_enabled.is_(False)).all()
            }
        due = []
        for job in self._jobs.values():
            if job.name in disabled:
                continue
            last = self._last_started.get(job.name)
            if last is None or now - last >= job.interval_seconds:
                due.append(job.name)
        return due

    def run_due_jobs(self) -> list[dict]:
        try:
            names = self.due_jobs()
        except SQLAlchemyError:
            logger.exception("Could not read scheduled job state")
            return []
        return [self.run_job(name) for name in names]

    # ── Lifecycle ─────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background loop (idempotent)."""
        if self.running:
            return
        if not self._app:
            raise RuntimeError("JobScheduler.init_app() must be called before start()")
        self.ensure_jobs_registered()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="job-scheduler", daemon=True)
        self._thread.start()
        logger.info("JobScheduler started (tick=%ss)", self.tick_seconds)

    def stop(self, timeout: float = 10) -> None:
        """Signal the loop to exit and wait for the current run to finish."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info("JobScheduler stopped")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_due_jobs()
            if self._stop_event.wait(self.tick_seconds):
                break

    # ── Admin queries (call inside an app context) ────────────────────────

    def list_jobs(self) -> list[dict]:
        """List all registered jobs with their DB status."""
        jobs = []
        for name, job in self._jobs.items():
            record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "interval_seconds": job.interval_seconds,
                "registered": True,
                "running": name in self._in_flight,
                "db_record": record.to_dict() if record else None,
            })
        return jobs

    def get_job_status(self, job_name: str) -> dict | None:
        """Get status of a specific job."""
        record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if record:
            return record.to_dict()
        return None

    def toggle_job(self, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job."""
        record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not record:
            return None
        record.is_enabled = enabled
        record.status = "active" if enabled else "paused"
        db.session.commit()
        return record.to_dict()
