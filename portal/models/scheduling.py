"""
Client Portal
Scheduling models.

Models:
    - ScheduledJob: one row per registered background job (pause switch + last run)
"""

from datetime import datetime, timezone

from portal.models import db


# ── Constants ────────────────────────────────────────────────────────────────

JOB_STATUSES = {"active", "paused"}
RUN_STATUSES = {"success", "failed", "skipped"}


class ScheduledJob(db.Model):
    """
    Registry row for one background job.

    Rows are created lazily the first time the scheduler sees a registered
    job; ``is_enabled`` lets an admin pause a job (e.g. the automation sweep
    during a data fix) without a deploy.  ``consecutive_failures`` resets on
    the next successful run and feeds the liveness probe.
    """

    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False,
                         comment="phase_automation_sweep, stale_notification_cleanup")
    description = db.Column(db.String(500), default="")
    interval_seconds = db.Column(db.Integer, nullable=False, default=300)
    status = db.Column(db.String(20), default="active", comment="active, paused")
    is_enabled = db.Column(db.Boolean, default=True)

    # Execution tracking
    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_success_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True,
                                comment="success, failed, skipped")
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True,
                                comment="SweepReport or cleanup summary")
    run_count = db.Column(db.Integer, default=0)
    error_count = db.Column(db.Integer, default=0)
    consecutive_failures = db.Column(db.Integer, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def record_run(self, *, status="success", duration_ms=0, result=None, error=None):
        """Record a job execution."""
        now = datetime.now(timezone.utc)
        self.last_run_at = now
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.consecutive_failures = (self.consecutive_failures or 0) + 1
            self.last_error = str(error) if error else None
        else:
            self.last_success_at = now
            self.consecutive_failures = 0

    def set_enabled(self, enabled: bool):
        self.is_enabled = bool(enabled)
        self.status = "active" if self.is_enabled else "paused"

    def to_dict(self):
        return {
            "id": self.id,
            "job_name": self.job_name,
            "description": self.description,
            "interval_seconds": self.interval_seconds,
            "status": self.status,
            "is_enabled": self.is_enabled,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_run_status": self.last_run_status,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_run_result": self.last_run_result,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} [{self.status}] every {self.interval_seconds}s>"
