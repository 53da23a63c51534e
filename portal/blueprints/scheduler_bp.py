"""
Scheduler blueprint (admin only).

Endpoints:
    GET   /api/v1/scheduler/jobs                     — registered jobs + run records
    GET   /api/v1/scheduler/jobs/<job_name>          — one job's run record
    POST  /api/v1/scheduler/jobs/<job_name>/trigger  — run a job now
    PATCH /api/v1/scheduler/jobs/<job_name>/toggle   — {"enabled": true|false}
"""

import logging

from flask import Blueprint, jsonify, request

from portal.auth import require_role
from portal.services.scheduler_service import get_scheduler
from portal.utils.errors import E, api_error

logger = logging.getLogger(__name__)

scheduler_bp = Blueprint("scheduler_bp", __name__, url_prefix="/api/v1/scheduler")


@scheduler_bp.route("/jobs", methods=["GET"])
@require_role("admin")
def list_scheduled_jobs():
    """List all registered jobs with their status."""
    jobs = get_scheduler().list_jobs()
    return jsonify({"jobs": jobs, "total": len(jobs)})


@scheduler_bp.route("/jobs/<job_name>", methods=["GET"])
@require_role("admin")
def get_job_status(job_name):
    status = get_scheduler().get_job_status(job_name)
    if status is None:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(status)


@scheduler_bp.route("/jobs/<job_name>/trigger", methods=["POST"])
@require_role("admin")
def trigger_job(job_name):
    """Manually run a job, even if it is paused."""
    scheduler = get_scheduler()
    if job_name not in scheduler.registry:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(scheduler.run_job(job_name, force=True))


@scheduler_bp.route("/jobs/<job_name>/toggle", methods=["PATCH"])
@require_role("admin")
def toggle_job_status(job_name):
    data = request.get_json(silent=True) or {}
    enabled = data.get("enabled")
    if enabled is None:
        return api_error(E.VALIDATION_REQUIRED, "'enabled' field is required (true/false)")

    scheduler = get_scheduler()
    if job_name in scheduler.registry:
        scheduler.ensure_jobs_registered()
    result = scheduler.toggle_job(job_name, bool(enabled))
    if not result:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(result)
