"""
Client Portal
Scheduled Jobs.

Concrete job implementations registered on the app's JobRegistry.

Jobs:
    - phase_automation_sweep: auto-advance, stuck alerts and action reminders
    - stale_notification_cleanup: deletes read notifications older than 30 days
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from portal.models import db
from portal.models.notification import Notification
from portal.services import automation

logger = logging.getLogger(__name__)

STALE_NOTIFICATION_DAYS = 30


def run_phase_automation(app, should_stop) -> dict[str, Any]:
    """Evaluate every active project for auto-advance, stuck alerts and reminders."""
    report = automation.run_sweep(should_stop=should_stop)
    return report.to_dict()


def cleanup_stale_notifications(app, should_stop) -> dict[str, Any]:
    """Delete read notifications older than 30 days."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=STALE_NOTIFICATION_DAYS)

    deleted = Notification.query.filter(
        Notification.is_read.is_(True),
        Notification.read_at < cutoff,
    ).delete(synchronize_session="fetch")

    db.session.commit()
    logger.info("Stale notification cleanup: deleted %d old read notifications", deleted)
    return {"deleted": deleted, "cutoff": cutoff.isoformat()}


def register_workflow_jobs(registry) -> None:
    registry.register("phase_automation_sweep", run_phase_automation)
    registry.register("stale_notification_cleanup", cleanup_stale_notifications)
