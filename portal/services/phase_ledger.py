"""
Phase Ledger — authoritative "where is this project" storage.

Business logic for:
    - Current entry lookup:   the single open PhaseLedgerEntry per project
    - Dwell arithmetic:       whole days in the current phase, seconds per phase
    - Entry open/close:       used only by the transition engine and project init
    - Automation rules:       auto-advance / stuck-notification toggles + threshold
    - Optimistic versioning:  expected_version checks against the project revision

``open_entry`` and ``close_entry`` only flush; the caller owns the
transaction (see ``portal.utils.helpers.project_transaction``).
"""

import logging
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app
from sqlalchemy import select

from portal.core.exceptions import ConcurrentModificationError, NotFoundError, ValidationError
from portal.models import db
from portal.models.workflow import PhaseLedgerEntry
from portal.utils.helpers import as_utc, project_transaction, utcnow
from portal.workflow.actors import Actor, require_admin
from portal.workflow.phases import TERMINAL_PHASE

logger = logging.getLogger(__name__)

_DAY = timedelta(days=1)


@dataclass(frozen=True)
class AutomationRules:
    auto_advance_enabled: bool
    stuck_notifications_enabled: bool
    stuck_threshold_days: int

    @classmethod
    def from_entry(cls, entry: PhaseLedgerEntry) -> "AutomationRules":
        return cls(
            auto_advance_enabled=bool(entry.auto_advance_enabled),
            stuck_notifications_enabled=bool(entry.stuck_notifications_enabled),
            stuck_threshold_days=entry.stuck_threshold_days,
        )

    @classmethod
    def defaults(cls) -> "AutomationRules":
        cfg = current_app.config
        return cls(
            auto_advance_enabled=bool(cfg.get("WORKFLOW_AUTO_ADVANCE_DEFAULT", False)),
            stuck_notifications_enabled=bool(cfg.get("WORKFLOW_STUCK_NOTIFICATIONS_DEFAULT", True)),
            stuck_threshold_days=int(cfg.get("WORKFLOW_STUCK_THRESHOLD_DAYS", 7)),
        )


# ── Lookups ──────────────────────────────────────────────────────────────────


def find_current_entry(project_id: str) -> PhaseLedgerEntry | None:
    return db.session.execute(
        select(PhaseLedgerEntry).where(
            PhaseLedgerEntry.project_id == project_id,
            PhaseLedgerEntry.exited_at.is_(None),
        )
    ).scalar_one_or_none()


def get_current_entry(project_id: str) -> PhaseLedgerEntry:
    """Return the open entry or raise ``NotFoundError("Project", project_id)``."""
    entry = find_current_entry(project_id)
    if entry is None:
        raise NotFoundError("Project", project_id)
    return entry


def days_in_entry(entry: PhaseLedgerEntry, now=None) -> int:
    """Whole days the entry has lasted (up to its exit, or ``now`` if open)."""
    end = as_utc(entry.exited_at) or as_utc(now) or utcnow()
    elapsed = end - as_utc(entry.entered_at)
    if elapsed.total_seconds() <= 0:
        return 0
    return elapsed // _DAY


def days_in_current_phase(project_id: str, now=None) -> int:
    return days_in_entry(get_current_entry(project_id), now=now)


def timeline(project_id: str) -> list[PhaseLedgerEntry]:
    """Every entry for the project, oldest first.  Empty for unknown projects."""
    return list(
        db.session.execute(
            select(PhaseLedgerEntry)
            .where(PhaseLedgerEntry.project_id == project_id)
            .order_by(PhaseLedgerEntry.entered_at, PhaseLedgerEntry.id)
        ).scalars()
    )


def dwell_times(project_id: str, now=None) -> dict[int, float]:
    """Seconds spent per phase index, summed over every occurrence."""
    now = as_utc(now) or utcnow()
    totals: dict[int, float] = {}
    for entry in timeline(project_id):
        end = as_utc(entry.exited_at) or now
        seconds = max((end - as_utc(entry.entered_at)).total_seconds(), 0.0)
        totals[entry.phase_index] = totals.get(entry.phase_index, 0.0) + seconds
    return totals


def active_entries() -> list[PhaseLedgerEntry]:
    """Open entries the automation sweep should look at (Launch excluded)."""
    return list(
        db.session.execute(
            select(PhaseLedgerEntry)
            .where(
                PhaseLedgerEntry.exited_at.is_(None),
                PhaseLedgerEntry.phase_index < TERMINAL_PHASE,
            )
            .order_by(PhaseLedgerEntry.project_id)
        ).scalars()
    )


def check_version(entry: PhaseLedgerEntry, expected_version) -> None:
    """Raise ``ConcurrentModificationError`` if the caller saw an older version."""
    if expected_version is None:
        return
    try:
        expected = int(expected_version)
    except (TypeError, ValueError) as exc:
        raise ValidationError(
            "expected_version must be an integer",
            details={"expected_version": expected_version},
        ) from exc
    if expected != entry.revision:
        raise ConcurrentModificationError(
            entry.project_id,
            f"Project {entry.project_id} changed since version {expected} "
            f"(now {entry.revision}); reload and retry",
        )


# ── Writers (flush only) ─────────────────────────────────────────────────────


def open_entry(project_id: str, phase_index: int, *, now, entered_by=None,
               rules: AutomationRules | None = None, revision: int = 1) -> PhaseLedgerEntry:
    rules = rules or AutomationRules.defaults()
    entry = PhaseLedgerEntry(
        project_id=project_id,
        phase_index=phase_index,
        entered_at=now,
        entered_by=entered_by,
        auto_advance_enabled=rules.auto_advance_enabled,
        stuck_notifications_enabled=rules.stuck_notifications_enabled,
        stuck_threshold_days=rules.stuck_threshold_days,
        revision=revision,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def close_entry(entry: PhaseLedgerEntry, *, now) -> PhaseLedgerEntry:
    """Stamp ``exited_at`` and flush so the open-entry slot is free."""
    entry.exited_at = now
    db.session.flush()
    return entry


# ── Automation rules ─────────────────────────────────────────────────────────


def update_rules(project_id: str, actor: Actor, *, auto_advance=None,
                 stuck_notifications=None, stuck_threshold_days=None,
                 expected_version=None) -> PhaseLedgerEntry:
    """Toggle automation flags / threshold on the project's open entry.

    Only the supplied fields change.  Bumps the project revision.
    """
    require_admin(actor, "change automation rules")

    if stuck_threshold_days is not None:
        if isinstance(stuck_threshold_days, bool) or not isinstance(stuck_threshold_days, int) \
                or stuck_threshold_days < 1:
            raise ValidationError(
                "stuck_threshold_days must be a positive integer",
                details={"stuck_threshold_days": stuck_threshold_days},
            )

    with project_transaction(project_id):
        entry = get_current_entry(project_id)
        check_version(entry, expected_version)
        if auto_advance is not None:
            entry.auto_advance_enabled = bool(auto_advance)
        if stuck_notifications is not None:
            entry.stuck_notifications_enabled = bool(stuck_notifications)
        if stuck_threshold_days is not None:
            entry.stuck_threshold_days = stuck_threshold_days
        entry.revision += 1
        db.session.flush()

    logger.info(
        "Automation rules updated for project %s: auto_advance=%s stuck_notifications=%s threshold=%s",
        project_id, entry.auto_advance_enabled, entry.stuck_notifications_enabled,
        entry.stuck_threshold_days,
        extra={"project_id": project_id, "phase_index": entry.phase_index},
    )
    return entry
