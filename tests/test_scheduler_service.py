"""
Scheduler tests.

Covers:
    1. JobRegistry (explicit registration, duplicates, decorator)
    2. SchedulerService wiring on app.extensions
    3. run_job: success, failure, disabled/forced, unknown job, run records
    4. Scheduled jobs: phase automation sweep, stale notification cleanup
    5. Scheduler admin API + CLI command
    6. ScheduledJob failure streaks and pause switch
"""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from portal.models import db
from portal.models.notification import Notification
from portal.models.scheduling import ScheduledJob
from portal.services.scheduled_jobs import cleanup_stale_notifications
from portal.services.scheduler_service import JobRegistry, SchedulerService, get_scheduler
from portal.workflow.events import StuckProject

ADMIN = {"X-Portal-Role": "admin"}
CLIENT = {"X-Portal-Role": "client"}


def _noop_job(app, should_stop):
    """Does nothing."""
    return {"ok": True}


def _broken_job(app, should_stop):
    """Always fails."""
    raise RuntimeError("boom")


@pytest.fixture()
def isolated_scheduler(app):
    """A scheduler with its own registry that does not replace the app's."""
    registry = JobRegistry()
    registry.register("noop", _noop_job)
    registry.register("broken", _broken_job)
    with patch.dict(app.extensions):
        yield SchedulerService(app, registry)


# ═══════════════════════════════════════════════════════════════════════════
#  Registry
# ═══════════════════════════════════════════════════════════════════════════

class TestJobRegistry:

    def test_register_and_lookup(self):
        registry = JobRegistry()
        registry.register("noop", _noop_job)
        assert "noop" in registry
        assert registry.get("noop") is _noop_job
        assert registry.get("missing") is None
        assert registry.names() == ["noop"]
        assert len(registry) == 1

    def test_duplicate_name_rejected(self):
        registry = JobRegistry()
        registry.register("noop", _noop_job)
        registry.register("noop", _noop_job)
        with pytest.raises(ValueError):
            registry.register("noop", _broken_job)

    def test_decorator(self):
        registry = JobRegistry()

        @registry.job("decorated")
        def decorated(app, should_stop):
            return {}

        assert registry.get("decorated") is decorated

    def test_app_registry_has_workflow_jobs(self, app):
        registry = app.extensions["job_registry"]
        assert set(registry.names()) == {"phase_automation_sweep", "stale_notification_cleanup"}
        assert get_scheduler() is app.extensions["scheduler"]
        assert get_scheduler().running is False


# ═══════════════════════════════════════════════════════════════════════════
#  Execution
# ═══════════════════════════════════════════════════════════════════════════

class TestRunJob:

    def test_success_records_run(self, isolated_scheduler):
        result = isolated_scheduler.run_job("noop")
        assert result["status"] == "success"
        assert result["result"] == {"ok": True}

        db.session.expire_all()
        record = ScheduledJob.query.filter_by(job_name="noop").one()
        assert record.run_count == 1
        assert record.last_run_status == "success"
        assert record.description == "Does nothing."

    def test_failure_is_recorded_not_raised(self, isolated_scheduler):
        result = isolated_scheduler.run_job("broken")
        assert result["status"] == "failed"
        assert result["error"] == "boom"

        db.session.expire_all()
        record = ScheduledJob.query.filter_by(job_name="broken").one()
        assert record.error_count == 1
        assert record.last_error == "boom"

    def test_unknown_job(self, isolated_scheduler):
        result = isolated_scheduler.run_job("nope")
        assert result["status"] == "error"

    def test_disabled_job_skipped_unless_forced(self, isolated_scheduler):
        isolated_scheduler.ensure_jobs_registered()
        isolated_scheduler.toggle_job("noop", False)

        assert isolated_scheduler.run_job("noop")["status"] == "skipped"
        assert isolated_scheduler.run_job("noop", force=True)["status"] == "success"

    def test_run_due_jobs_runs_everything(self, isolated_scheduler):
        results = isolated_scheduler.run_due_jobs()
        assert [r["job_name"] for r in results] == ["noop", "broken"]

    def test_stop_without_start(self, isolated_scheduler):
        isolated_scheduler.stop()
        assert isolated_scheduler.should_stop() is True
        assert isolated_scheduler.running is False
        assert isolated_scheduler.run_due_jobs() == []

    def test_start_requires_app(self):
        assert SchedulerService().start() is False


# ═══════════════════════════════════════════════════════════════════════════
#  Concrete jobs
# ═══════════════════════════════════════════════════════════════════════════

class TestWorkflowJobs:

    def test_phase_automation_sweep_job(self, app, project, events):
        result = get_scheduler().run_job("phase_automation_sweep")

        assert result["status"] == "success"
        assert result["result"]["projects_checked"] == 1
        # the fixture project has been sitting in Onboarding since T0
        assert result["result"]["stuck_notified"] == 1
        assert [e.project_id for e in events.of(StuckProject)] == [project]

    def test_stale_notification_cleanup(self, app):
        old = datetime.now(timezone.utc) - timedelta(days=45)
        db.session.add_all([
            Notification(title="old read", is_read=True, read_at=old),
            Notification(title="recent read", is_read=True, read_at=datetime.now(timezone.utc)),
            Notification(title="unread"),
        ])
        db.session.commit()

        result = cleanup_stale_notifications(app, lambda: False)

        assert result["deleted"] == 1
        assert sorted(n.title for n in Notification.query.all()) == ["recent read", "unread"]


# ═══════════════════════════════════════════════════════════════════════════
#  API + CLI
# ═══════════════════════════════════════════════════════════════════════════

class TestSchedulerApi:

    def test_list_jobs(self, client):
        res = client.get("/api/v1/scheduler/jobs", headers=ADMIN)
        assert res.status_code == 200
        names = {j["job_name"] for j in res.get_json()["jobs"]}
        assert names == {"phase_automation_sweep", "stale_notification_cleanup"}

    def test_client_forbidden(self, client):
        res = client.get("/api/v1/scheduler/jobs", headers=CLIENT)
        assert res.status_code == 403

    def test_trigger_job(self, client):
        res = client.post("/api/v1/scheduler/jobs/stale_notification_cleanup/trigger", headers=ADMIN)
        assert res.status_code == 200
        assert res.get_json()["status"] == "success"

    def test_trigger_unknown_job(self, client):
        res = client.post("/api/v1/scheduler/jobs/nope/trigger", headers=ADMIN)
        assert res.status_code == 404

    def test_toggle_job(self, client):
        res = client.patch("/api/v1/scheduler/jobs/phase_automation_sweep/toggle",
                           json={"enabled": False}, headers=ADMIN)
        assert res.status_code == 200
        data = res.get_json()
        assert data["is_enabled"] is False
        assert data["status"] == "paused"

        res = client.get("/api/v1/scheduler/jobs/phase_automation_sweep", headers=ADMIN)
        assert res.get_json()["is_enabled"] is False

    def test_toggle_requires_enabled(self, client):
        res = client.patch("/api/v1/scheduler/jobs/phase_automation_sweep/toggle",
                           json={}, headers=ADMIN)
        assert res.status_code == 400

    def test_cli_runs_sweep(self, app, project):
        runner = app.test_cli_runner()
        result = runner.invoke(args=["run-automation-sweep"])
        assert result.exit_code == 0
        payload = json.loads(result.stdout)
        assert payload["job_name"] == "phase_automation_sweep"
        assert payload["status"] == "success"


class TestScheduledJobModel:

    def test_record_run_tracks_failure_streak(self):
        job = ScheduledJob(job_name="streak")
        job.record_run(status="failed", error="first")
        job.record_run(status="failed", error="second")
        assert job.consecutive_failures == 2
        assert job.error_count == 2
        assert job.last_error == "second"

        job.record_run(status="success", result={"ok": True})
        assert job.consecutive_failures == 0
        assert job.last_success_at is not None
        assert job.run_count == 3

    def test_set_enabled_updates_status(self):
        job = ScheduledJob(job_name="pause-me")
        job.set_enabled(False)
        assert (job.is_enabled, job.status) == (False, "paused")
        job.set_enabled(True)
        assert (job.is_enabled, job.status) == (True, "active")
