"""
Read models for the workflow UI.  No side effects.

    - current_phase:  where the project is, how long, gate + automation state
    - overview:       all 8 phases with completed / current / upcoming status
    - history:        paginated transition log plus reconstructed phase durations
    - actions:        open (or all) actions of the current phase occurrence
"""

from portal.services import action_gate, phase_history, phase_ledger
from portal.utils.helpers import as_utc, utcnow
from portal.workflow.phases import PHASES, TERMINAL_PHASE, phase_at, progress_percent


def current_phase(project_id: str, now=None) -> dict:
    now = as_utc(now) or utcnow()
    entry = phase_ledger.get_current_entry(project_id)
    phase = phase_at(entry.phase_index)
    gate = action_gate.gate_state(project_id, entry)
    return {
        "project_id": project_id,
        "phase_index": entry.phase_index,
        "phase": phase.to_dict(),
        "entered_at": entry.to_dict()["entered_at"],
        "days_in_phase": phase_ledger.days_in_entry(entry, now=now),
        "progress_percent": progress_percent(entry.phase_index),
        "is_complete": entry.phase_index == TERMINAL_PHASE,
        "gate": gate.to_dict(),
        "automation": {
            "auto_advance_enabled": entry.auto_advance_enabled,
            "stuck_notifications_enabled": entry.stuck_notifications_enabled,
            "stuck_threshold_days": entry.stuck_threshold_days,
        },
        "version": entry.revision,
    }


def overview(project_id: str, now=None) -> dict:
    now = as_utc(now) or utcnow()
    current = phase_ledger.get_current_entry(project_id)
    dwell = phase_ledger.dwell_times(project_id, now=now)

    last_exit = {}
    visited = set()
    for entry in phase_ledger.timeline(project_id):
        visited.add(entry.phase_index)
        if entry.exited_at is not None:
            last_exit[entry.phase_index] = as_utc(entry.exited_at)

    phases = []
    for phase in PHASES:
        if phase.index < current.phase_index:
            # jumped over without ever being entered
            status = "completed" if phase.index in visited else "skipped"
        elif phase.index == current.phase_index:
            status = "current"
        else:
            status = "upcoming"
        completed_at = last_exit.get(phase.index) if status == "completed" else None
        phases.append({
            "index": phase.index,
            "key": phase.key,
            "display_name": phase.display_name,
            "icon": phase.icon,
            "status": status,
            "completed_at": completed_at.isoformat() if completed_at else None,
            "dwell_seconds": dwell.get(phase.index, 0.0),
        })

    return {
        "project_id": project_id,
        "current_phase_index": current.phase_index,
        "progress_percent": progress_percent(current.phase_index),
        "is_complete": current.phase_index == TERMINAL_PHASE,
        "phases": phases,
    }


def history(project_id: str, *, limit: int | None = None, offset: int = 0, now=None) -> dict:
    phase_ledger.get_current_entry(project_id)
    items = phase_history.list_for(project_id, limit=limit, offset=offset)
    return {
        "project_id": project_id,
        "items": [t.to_dict() for t in items],
        "total": phase_history.count_for(project_id),
        "limit": limit,
        "offset": offset,
        "phase_durations": phase_history.phase_durations(project_id, now=now),
    }


def actions(project_id: str, *, include_completed: bool = False) -> dict:
    entry = phase_ledger.get_current_entry(project_id)
    items = action_gate.pending_actions(project_id, include_completed=include_completed)
    return {
        "project_id": project_id,
        "phase_index": entry.phase_index,
        "items": [a.to_dict() for a in items],
        "gate": action_gate.gate_state(project_id, entry).to_dict(),
    }
