"""
Client Portal
Notification Service.

Central service for creating and querying in-app notifications, plus the
workflow event subscribers that turn phase events into notifications.  Email
and chat delivery are handled by other services reading these rows.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError

from portal.models import db
from portal.models.notification import Notification
from portal.workflow.events import (
    WORKFLOW_EVENT_TYPES,
    ActionReminder,
    GateSatisfied,
    StuckProject,
    TransitionOccurred,
)
from portal.workflow.phases import TERMINAL_PHASE, phase_at

logger = logging.getLogger(__name__)


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, title, message="", category="system", severity="info",
               recipient="all", project_id=None, entity_type="", entity_id=None,
               event_type=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (already committed).
        """
        notif = Notification(
            project_id=project_id,
            recipient=recipient,
            title=title,
            message=message,
            category=category,
            severity=severity,
            entity_type=entity_type,
            entity_id=entity_id,
            event_type=event_type,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    @staticmethod
    def broadcast(*, title, message="", category="system", severity="info",
                  project_id=None, entity_type="", entity_id=None, event_type=None,
                  recipients=None):
        """
        Send a notification to multiple recipients (or 'all' if none given).

        Returns:
            List of created Notification instances.
        """
        targets = recipients or ["all"]
        notifications = []
        for r in targets:
            notif = Notification(
                project_id=project_id,
                recipient=r,
                title=title,
                message=message,
                category=category,
                severity=severity,
                entity_type=entity_type,
                entity_id=entity_id,
                event_type=event_type,
            )
            db.session.add(notif)
            notifications.append(notif)
        db.session.commit()
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_recipient(recipient="all", project_id=None, unread_only=False,
                           limit=50, offset=0):
        """Retrieve notifications for a recipient, newest first."""
        q = Notification.visible_to(recipient, project_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        total = q.count()
        items = q.order_by(Notification.created_at.desc()).offset(offset).limit(limit).all()
        return items, total

    @staticmethod
    def mark_read(notification_id):
        notif = db.session.get(Notification, notification_id)
        if notif:
            notif.mark_read()
            db.session.commit()
        return notif

    @staticmethod
    def mark_all_read(recipient="all", project_id=None):
        q = Notification.visible_to(recipient, project_id).filter_by(is_read=False)
        now = datetime.now(timezone.utc)
        count = q.update({"is_read": True, "read_at": now}, synchronize_session="fetch")
        db.session.commit()
        return count


# ═════════════════════════════════════════════════════════════════════════════
# Workflow event subscribers
# ═════════════════════════════════════════════════════════════════════════════


def _render_transition(event: TransitionOccurred) -> list[dict]:
    to_phase = phase_at(event.to_phase)
    if event.to_phase == TERMINAL_PHASE:
        title = f"Project complete: {to_phase.icon} {to_phase.display_name}"
        severity = "success"
    else:
        title = f"Project moved to {to_phase.icon} {to_phase.display_name}"
        severity = "info"
    message = (
        f"{phase_at(event.from_phase).display_name} → {to_phase.display_name} "
        f"({event.trigger.value})"
    )
    return [
        {"recipients": ["client", "admins"], "title": title, "message": message,
         "category": "phase", "severity": severity},
    ]


def _render_stuck(event: StuckProject) -> list[dict]:
    phase = phase_at(event.phase_index)
    return [
        {"recipients": ["admins"],
         "title": f"Project stuck in {phase.display_name}",
         "message": f"No movement for {event.days_stuck} days. Check whether anything is blocking it.",
         "category": "phase", "severity": "warning"},
    ]


def _render_gate(event: GateSatisfied) -> list[dict]:
    phase = phase_at(event.phase_index)
    return [
        {"recipients": ["admins"],
         "title": f"{phase.display_name} requirements complete",
         "message": "All required actions are done; the project can move to the next phase.",
         "category": "action", "severity": "success"},
    ]


def _render_reminder(event: ActionReminder) -> list[dict]:
    phase = phase_at(event.phase_index)
    count = len(event.pending_actions)
    return [
        {"recipients": ["client"],
         "title": f"{count} action(s) waiting in {phase.display_name}",
         "message": "Pending: " + "; ".join(event.pending_actions),
         "category": "action", "severity": "warning"},
    ]


_EVENT_RENDERERS = {
    TransitionOccurred: _render_transition,
    StuckProject: _render_stuck,
    GateSatisfied: _render_gate,
    ActionReminder: _render_reminder,
}

if set(_EVENT_RENDERERS) != set(WORKFLOW_EVENT_TYPES):
    raise RuntimeError("Notification renderers out of sync with workflow event types")


def notify_workflow_event(event) -> list[Notification]:
    """Persist in-app notifications for a workflow event."""
    created = []
    try:
        for spec in _EVENT_RENDERERS[type(event)](event):
            created.extend(NotificationService.broadcast(
                title=spec["title"],
                message=spec["message"],
                category=spec["category"],
                severity=spec["severity"],
                project_id=event.project_id,
                entity_type="phase",
                entity_id=str(getattr(event, "to_phase", getattr(event, "phase_index", ""))),
                event_type=event.event_type,
                recipients=spec["recipients"],
            ))
    except SQLAlchemyError:
        db.session.rollback()
        raise
    return created


def register_workflow_subscribers(bus) -> None:
    for event_type in WORKFLOW_EVENT_TYPES:
        bus.subscribe(event_type, notify_workflow_event)
