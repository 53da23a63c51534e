"""
Phase history — append-only audit log of transitions.

``append`` only flushes so the row lands in the same transaction as the
ledger change it describes.  Timestamps are forced strictly increasing per
project: a transition that would tie with (or precede) the previous one is
nudged forward by one microsecond.
"""

import logging
from datetime import timedelta

from sqlalchemy import func, select

from portal.models import db
from portal.models.workflow import PhaseTransition
from portal.services import phase_ledger
from portal.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)

_TICK = timedelta(microseconds=1)


def last_timestamp(project_id: str):
    value = db.session.execute(
        select(func.max(PhaseTransition.timestamp)).where(PhaseTransition.project_id == project_id)
    ).scalar()
    return as_utc(value)


def next_timestamp(project_id: str, now=None, *, after=None):
    """Return ``now`` unless it would not sort after the project's last event.

    ``after`` is an extra floor (typically the current entry's ``entered_at``).
    """
    now = as_utc(now) or utcnow()
    floors = [t for t in (last_timestamp(project_id), as_utc(after)) if t is not None]
    if floors:
        floor = max(floors)
        if now <= floor:
            return floor + _TICK
    return now


def append(*, project_id: str, from_phase_index: int, to_phase_index: int, trigger: str,
           timestamp, actor_id=None, notes="", to_entry_id=None) -> PhaseTransition:
    row = PhaseTransition(
        project_id=project_id,
        from_phase_index=from_phase_index,
        to_phase_index=to_phase_index,
        trigger=trigger,
        actor_id=actor_id,
        notes=notes or "",
        timestamp=timestamp,
        to_entry_id=to_entry_id,
    )
    db.session.add(row)
    db.session.flush()
    return row


def list_for(project_id: str, *, limit: int | None = None, offset: int = 0) -> list[PhaseTransition]:
    """Transitions for a project, oldest first."""
    stmt = (
        select(PhaseTransition)
        .where(PhaseTransition.project_id == project_id)
        .order_by(PhaseTransition.timestamp, PhaseTransition.id)
    )
    if offset:
        stmt = stmt.offset(offset)
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.session.execute(stmt).scalars())


def count_for(project_id: str) -> int:
    return db.session.execute(
        select(func.count(PhaseTransition.id)).where(PhaseTransition.project_id == project_id)
    ).scalar() or 0


def phase_durations(project_id: str, now=None) -> list[dict]:
    """Reconstruct phase segments from consecutive history entries.

    The first segment starts at the project's first ledger entry; the last
    one is still running and measured up to ``now``.
    """
    now = as_utc(now) or utcnow()
    transitions = list_for(project_id)
    entries = phase_ledger.timeline(project_id)
    if not entries:
        return []

    segments = []
    start = as_utc(entries[0].entered_at)
    phase = entries[0].phase_index
    for t in transitions:
        ts = as_utc(t.timestamp)
        segments.append(_segment(phase, start, ts))
        start, phase = ts, t.to_phase_index
    segments.append(_segment(phase, start, None, now=now))
    return segments


def _segment(phase_index, start, end, now=None):
    stop = end or now
    return {
        "phase_index": phase_index,
        "entered_at": start.isoformat(),
        "exited_at": end.isoformat() if end else None,
        "duration_seconds": max((stop - start).total_seconds(), 0.0),
    }
