"""
Client Portal
Scheduler Service.

Lightweight background job runner built on a single daemon thread, so the
portal does not need Celery/APScheduler to drive the phase automation sweep.

Architecture:
    - JobRegistry:       explicit name → function map, created by ``create_app``
    - SchedulerService:  runs registered jobs inside an app context, persists
                         each run on the ScheduledJob model, and optionally
                         loops every SCHEDULER_INTERVAL_SECONDS on a thread
    - Manual trigger API (``/api/v1/scheduler/jobs/<name>/trigger``) for admins

Both live on ``app.extensions`` ("job_registry" / "scheduler").  Job functions
take ``(app, should_stop)`` and return a JSON-serialisable dict.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from flask import Flask, current_app

from portal.models import db
from portal.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

class JobRegistry:
    """Name → job function map with a defined owner (the app)."""

    def __init__(self) -> None:
        self._jobs: dict[str, Callable] = {}

    def register(self, name: str, fn: Callable) -> Callable:
        if name in self._jobs and self._jobs[name] is not fn:
            raise ValueError(f"Job already registered: {name}")
        self._jobs[name] = fn
        return fn

    def job(self, name: str):
        """Decorator form of ``register``.

        Usage:
            @registry.job("phase_automation_sweep")
            def sweep(app, should_stop):
                ...
        """
        def decorator(fn: Callable) -> Callable:
            return self.register(name, fn)
        return decorator

    def get(self, name: str) -> Callable | None:
        return self._jobs.get(name)

    def names(self) -> list[str]:
        return list(self._jobs)

    def __contains__(self, name: str) -> bool:
        return name in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)


# ═══════════════════════════════════════════════════════════════════════════
#  Scheduler
# ═══════════════════════════════════════════════════════════════════════════

class SchedulerService:
    """
    Runs registered jobs within the Flask app context.

    One instance per app.  ``start``/``stop`` manage the optional background
    loop; ``run_job`` is also called directly by the API and the CLI.
    """

    def __init__(self, app: Flask | None = None, registry: JobRegistry | None = None) -> None:
        self.app: Flask | None = None
        self.registry = registry or JobRegistry()
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        if app is not None:
            self.init_app(app)

    def init_app(self, app: Flask) -> None:
        """Attach to ``app`` and expose registry + scheduler on its extensions."""
        self.app = app
        app.extensions["job_registry"] = self.registry
        app.extensions["scheduler"] = self
        logger.info("SchedulerService initialized with %d registered jobs", len(self.registry))

    # ── Persistence ───────────────────────────────────────────────────────

    def ensure_jobs_registered(self) -> list[ScheduledJob]:
        """Create a ScheduledJob row for every registered job that lacks one."""
        if not self.app:
            return []

        created = []
        with self.app.app_context():
            for name in self.registry.names():
                if _find_record(name) is None:
                    created.append(_create_record(name, self.registry.get(name), self.app))
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    # ── Execution ─────────────────────────────────────────────────────────

    def should_stop(self) -> bool:
        return self._stop_event.is_set()

    def run_job(self, job_name: str, *, force: bool = False) -> dict:
        """
        Execute a single job by name.

        Disabled jobs are skipped unless ``force`` (manual trigger).

        Returns:
            Dict with job_name, status, duration_ms, result and error.
        """
        fn = self.registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if not self.app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        with self.app.app_context():
            record = _find_record(job_name)
            if record is None:
                record = _create_record(job_name, fn, self.app)
                db.session.commit()
            if not record.is_enabled and not force:
                return {"job_name": job_name, "status": "skipped", "duration_ms": 0,
                        "result": None, "error": None}

            start = time.monotonic()
            result = None
            error = None
            status = "success"
            try:
                result = fn(self.app, self.should_stop)
            except Exception as exc:
                db.session.rollback()
                status = "failed"
                error = str(exc)
                logger.exception("Job %s failed: %s", job_name, exc)

            duration_ms = int((time.monotonic() - start) * 1000)

            try:
                record = _find_record(job_name)
                record.record_run(
                    status=status,
                    duration_ms=duration_ms,
                    result=result if isinstance(result, dict) else {"output": str(result)},
                    error=error,
                )
                db.session.commit()
            except Exception:
                db.session.rollback()
                logger.exception("Failed to update job record for %s", job_name)

        logger.info("Job %s finished: %s in %dms", job_name, status, duration_ms)
        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    def run_due_jobs(self) -> list[dict]:
        """Run every enabled job once, stopping early if asked to."""
        results = []
        for name in self.registry.names():
            if self.should_stop():
                break
            results.append(self.run_job(name))
        return results

    # ── Background loop ───────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, interval_seconds: int | None = None) -> bool:
        if self.running or not self.app:
            return False
        interval = interval_seconds or int(self.app.config.get("SCHEDULER_INTERVAL_SECONDS", 300))
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, args=(interval,), name="portal-scheduler", daemon=True,
        )
        self._thread.start()
        logger.info("Scheduler thread started (interval=%ss)", interval)
        return True

    def stop(self, timeout: float | None = 10.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Scheduler thread stopped")

    def _loop(self, interval: int) -> None:
        self.ensure_jobs_registered()
        while not self._stop_event.is_set():
            self.run_due_jobs()
            self._stop_event.wait(interval)

    # ── Admin queries ─────────────────────────────────────────────────────

    def list_jobs(self) -> list[dict]:
        """List all registered jobs with their DB status."""
        jobs = []
        for name in self.registry.names():
            record = _find_record(name)
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": record.to_dict() if record else None,
            })
        return jobs

    def get_job_status(self, job_name: str) -> dict | None:
        record = _find_record(job_name)
        if record:
            return record.to_dict()
        return None

    def toggle_job(self, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job."""
        record = _find_record(job_name)
        if not record:
            return None
        record.set_enabled(enabled)
        db.session.commit()
        return record.to_dict()


def get_scheduler() -> SchedulerService:
    return current_app.extensions["scheduler"]


def _find_record(job_name: str) -> ScheduledJob | None:
    return ScheduledJob.query.filter_by(job_name=job_name).first()


def _create_record(job_name: str, fn: Callable, app: Flask) -> ScheduledJob:
    record = ScheduledJob(
        job_name=job_name,
        description=(fn.__doc__ or f"Scheduled job: {job_name}").strip().splitlines()[0][:500],
        interval_seconds=int(app.config.get("SCHEDULER_INTERVAL_SECONDS", 300)),
        status="active",
        is_enabled=True,
        run_count=0,
        error_count=0,
    )
    db.session.add(record)
    return record

