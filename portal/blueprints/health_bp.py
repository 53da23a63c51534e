"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — database, scheduler thread and automation sweep status

The sweep check degrades the probe once the sweep has failed
SWEEP_FAILURE_LIMIT times in a row; a sweep that has never run is fine
(the scheduler may be disabled and the sweep driven by cron via the CLI).
"""

import logging
import time

from flask import Blueprint, current_app, jsonify

from portal.models import db
from portal.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")

SWEEP_JOB = "phase_automation_sweep"
SWEEP_FAILURE_LIMIT = 3


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Readiness probe: 200 whenever the process is serving."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Liveness check with dependency status."""
    checks = {}
    overall = True

    # ── Database ─────────────────────────────────────────────────────
    try:
        t0 = time.perf_counter()
        db.session.execute(db.text("SELECT 1"))
        db_ms = (time.perf_counter() - t0) * 1000
        checks["database"] = {"status": "ok", "latency_ms": round(db_ms, 1)}
    except Exception as exc:
        db.session.rollback()
        checks["database"] = {"status": "error", "detail": str(exc)}
        logger.error("Health check: database failed: %s", exc)
        return jsonify({"status": "degraded", "checks": checks}), 503

    # ── Scheduler thread ─────────────────────────────────────────────
    scheduler = current_app.extensions.get("scheduler")
    checks["scheduler"] = {
        "enabled": bool(current_app.config.get("SCHEDULER_ENABLED")),
        "running": bool(scheduler and scheduler.running),
        "jobs": len(scheduler.registry) if scheduler else 0,
    }

    # ── Automation sweep ─────────────────────────────────────────────
    checks["automation_sweep"] = _sweep_check()
    if checks["automation_sweep"]["status"] != "ok":
        overall = False

    status_code = 200 if overall else 503
    return jsonify({
        "status": "healthy" if overall else "degraded",
        "checks": checks,
    }), status_code


def _sweep_check() -> dict:
    record = ScheduledJob.query.filter_by(job_name=SWEEP_JOB).first()
    if record is None or record.last_run_at is None:
        return {"status": "ok", "last_run_at": None}

    failures = record.consecutive_failures or 0
    status = "failing" if failures >= SWEEP_FAILURE_LIMIT else "ok"
    if status != "ok":
        logger.warning("Health check: automation sweep failed %d times in a row", failures)
    return {
        "status": status,
        "is_enabled": record.is_enabled,
        "last_run_at": record.last_run_at.isoformat(),
        "last_success_at": record.last_success_at.isoformat() if record.last_success_at else None,
        "consecutive_failures": failures,
    }
