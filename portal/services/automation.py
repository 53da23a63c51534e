"""
Automation Scheduler — periodic evaluation of every active project.

For each project with an open, non-terminal ledger entry, in order:

    1. auto-advance   rules.auto_advance_enabled and the action gate is satisfied
    2. stuck alert    rules.stuck_notifications_enabled and days in phase > threshold,
                      at most once per phase occurrence
    3. reminder       required client-facing actions still open after
                      WORKFLOW_ACTION_REMINDER_DAYS, repeated every
                      WORKFLOW_ACTION_REMINDER_REPEAT_DAYS

"Already notified" markers live in ``AutomationNotice`` and are committed
before the event is published, so a crash can lose a notice but never repeat
one.  A failure on one project is logged and recorded in the report; the sweep
carries on with the next project.
"""

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from flask import current_app
from sqlalchemy import select

from portal.core.exceptions import ConcurrentModificationError
from portal.models import db
from portal.models.workflow import AutomationNotice, PhaseLedgerEntry
from portal.services import action_gate, phase_ledger, transition_engine
from portal.utils.helpers import as_utc, project_transaction, utcnow
from portal.workflow.events import ActionReminder, StuckProject, TransitionTrigger, get_event_bus
from portal.workflow.phases import TERMINAL_PHASE

logger = logging.getLogger(__name__)


@dataclass
class ProjectEvaluation:
    project_id: str
    advanced: bool = False
    stuck_notified: bool = False
    reminder_sent: bool = False


@dataclass
class SweepReport:
    projects_checked: int = 0
    advanced: int = 0
    stuck_notified: int = 0
    reminders_sent: int = 0
    failures: list[dict] = field(default_factory=list)
    stopped: bool = False

    def add(self, evaluation: ProjectEvaluation) -> None:
        self.advanced += int(evaluation.advanced)
        self.stuck_notified += int(evaluation.stuck_notified)
        self.reminders_sent += int(evaluation.reminder_sent)

    def to_dict(self) -> dict:
        return {
            "projects_checked": self.projects_checked,
            "advanced": self.advanced,
            "stuck_notified": self.stuck_notified,
            "reminders_sent": self.reminders_sent,
            "failures": self.failures,
            "stopped": self.stopped,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Sweep
# ═════════════════════════════════════════════════════════════════════════════


def run_sweep(now=None, should_stop=None) -> SweepReport:
    """Evaluate every active project once.

    ``should_stop`` is polled between projects; a project already being
    evaluated always finishes.
    """
    now = as_utc(now) or utcnow()
    report = SweepReport()
    project_ids = [e.project_id for e in phase_ledger.active_entries()]

    for project_id in project_ids:
        if should_stop is not None and should_stop():
            report.stopped = True
            logger.info("Automation sweep stopped after %d project(s)", report.projects_checked)
            break
        report.projects_checked += 1
        try:
            report.add(evaluate_project(project_id, now=now))
        except Exception as exc:
            db.session.rollback()
            logger.exception("Automation failed for project %s", project_id,
                             extra={"project_id": project_id})
            report.failures.append({
                "project_id": project_id,
                "error_type": type(exc).__name__,
                "error": str(exc),
            })

    logger.info(
        "Automation sweep: checked=%d advanced=%d stuck=%d reminders=%d failures=%d",
        report.projects_checked, report.advanced, report.stuck_notified,
        report.reminders_sent, len(report.failures),
    )
    return report


def evaluate_project(project_id: str, now=None) -> ProjectEvaluation:
    now = as_utc(now) or utcnow()
    result = ProjectEvaluation(project_id)
    entry = phase_ledger.find_current_entry(project_id)
    if entry is None or entry.phase_index >= TERMINAL_PHASE:
        return result

    days = phase_ledger.days_in_entry(entry, now=now)

    if entry.auto_advance_enabled and action_gate.gate_state(project_id, entry).satisfied:
        trigger = (
            TransitionTrigger.AUTOMATIC_STUCK if days > entry.stuck_threshold_days
            else TransitionTrigger.AUTOMATIC_GATE
        )
        outcome = transition_engine.auto_advance(
            project_id, trigger, expected_from=entry.phase_index, now=now,
        )
        if outcome.changed:
            # new occurrence, nothing can be stuck or overdue yet
            result.advanced = True
            return result
        # someone else moved the project first; judge the occurrence it is in now
        entry = phase_ledger.get_current_entry(project_id)
        if entry.phase_index >= TERMINAL_PHASE:
            return result
        days = phase_ledger.days_in_entry(entry, now=now)

    if entry.stuck_notifications_enabled and days > entry.stuck_threshold_days:
        result.stuck_notified = _notify_stuck(entry, days, now)

    result.reminder_sent = _maybe_remind(entry, now)
    return result


# ── Notices ──────────────────────────────────────────────────────────────────


def _claim_notice(entry: PhaseLedgerEntry, kind: str, now, repeat_after=None) -> bool:
    """Record that ``kind`` is being sent for this occurrence.

    Returns False when it was already sent (and ``repeat_after`` has not yet
    elapsed) or another worker claimed it first.
    """
    project_id = entry.project_id
    notice = db.session.execute(
        select(AutomationNotice).where(
            AutomationNotice.ledger_entry_id == entry.id,
            AutomationNotice.kind == kind,
        )
    ).scalar_one_or_none()

    if notice is not None:
        if repeat_after is None or now - as_utc(notice.last_notified_at) < repeat_after:
            return False

    try:
        with project_transaction(project_id):
            if notice is None:
                db.session.add(AutomationNotice(
                    ledger_entry_id=entry.id,
                    project_id=project_id,
                    phase_index=entry.phase_index,
                    kind=kind,
                    first_notified_at=now,
                    last_notified_at=now,
                    notify_count=1,
                ))
            else:
                notice.last_notified_at = now
                notice.notify_count = (notice.notify_count or 0) + 1
    except ConcurrentModificationError:
        return False
    return True


def _notify_stuck(entry: PhaseLedgerEntry, days: int, now) -> bool:
    project_id, phase_index = entry.project_id, entry.phase_index
    if not _claim_notice(entry, "stuck", now):
        return False
    logger.warning(
        "Project %s stuck in phase %s for %d days", project_id, phase_index, days,
        extra={"project_id": project_id, "phase_index": phase_index,
               "event_type": StuckProject.event_type},
    )
    get_event_bus().publish(StuckProject(project_id=project_id, phase_index=phase_index,
                                         days_stuck=days))
    return True


def _maybe_remind(entry: PhaseLedgerEntry, now) -> bool:
    cfg = current_app.config
    reminder_days = int(cfg.get("WORKFLOW_ACTION_REMINDER_DAYS", 3))
    repeat_days = int(cfg.get("WORKFLOW_ACTION_REMINDER_REPEAT_DAYS", 2))
    if reminder_days <= 0:
        return False

    elapsed = now - as_utc(entry.entered_at)
    if elapsed <= timedelta(days=reminder_days):
        return False

    pending = [
        a for a in action_gate.actions_for_entry(entry)
        if a.is_required and a.is_client_facing and not a.is_completed
    ]
    if not pending:
        return False

    project_id, phase_index = entry.project_id, entry.phase_index
    descriptions = tuple(a.description for a in pending)
    if not _claim_notice(entry, "action_reminder", now, repeat_after=timedelta(days=repeat_days)):
        return False

    get_event_bus().publish(ActionReminder(
        project_id=project_id,
        phase_index=phase_index,
        days_in_phase=elapsed // timedelta(days=1),
        pending_actions=descriptions,
    ))
    return True


# ── Event subscriber ─────────────────────────────────────────────────────────


def handle_gate_satisfied(event) -> None:
    """Evaluate a project as soon as its gate opens instead of waiting for the sweep."""
    entry = phase_ledger.find_current_entry(event.project_id)
    if entry is None or entry.phase_index != event.phase_index:
        return
    if not entry.auto_advance_enabled:
        return
    evaluate_project(event.project_id)
