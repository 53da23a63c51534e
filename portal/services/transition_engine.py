"""
Transition Engine — the phase state machine.

Entry points:
    - advance(project_id, actor, override_gate=...)   current → current+1, gate-checked
    - rewind(project_id, actor)                        current → current-1, admin only
    - jump_to(project_id, actor, target_index)         current → any other phase, admin only
    - auto_advance(project_id, trigger, expected_from) scheduler / payment entry point

Every transition runs the same pipeline:

    plan     validate against ledger + gate into a _Plan, no writes
    _apply   close entry → open entry (rules copied) → seed actions → append history
    commit   one transaction per project (version-checked ledger row)
    publish  TransitionOccurred, only after the commit succeeded

A second writer racing on the same project loses at the ledger's version
check and gets ``ConcurrentModificationError``; nothing it did survives.
"""

import logging
from dataclasses import dataclass

from portal.core.exceptions import (
    AtInitialPhaseError,
    AtTerminalPhaseError,
    ConcurrentModificationError,
    ForbiddenError,
    GateNotSatisfiedError,
    InvalidPhaseIndexError,
    NotFoundError,
)
from portal.models.workflow import PhaseLedgerEntry, PhaseTransition
from portal.services import action_gate, phase_history, phase_ledger
from portal.utils.helpers import MAX_NOTES_LENGTH, clean_text, project_transaction
from portal.workflow.actors import SYSTEM_ACTOR, Actor, require_admin
from portal.workflow.events import TransitionOccurred, TransitionTrigger, get_event_bus
from portal.workflow.phases import INITIAL_PHASE, TERMINAL_PHASE, is_valid_index

logger = logging.getLogger(__name__)


@dataclass
class TransitionResult:
    project_id: str
    from_index: int
    to_index: int
    trigger: TransitionTrigger
    changed: bool
    entry: PhaseLedgerEntry
    transition: PhaseTransition | None = None

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "from_index": self.from_index,
            "to_index": self.to_index,
            "trigger": self.trigger.value,
            "changed": self.changed,
            "entry": self.entry.to_dict() if self.entry is not None else None,
            "transition": self.transition.to_dict() if self.transition is not None else None,
        }


@dataclass(frozen=True)
class _Plan:
    entry: PhaseLedgerEntry
    from_index: int
    to_index: int
    trigger: TransitionTrigger
    actor: Actor
    notes: str


# ═════════════════════════════════════════════════════════════════════════════
# Public entry points
# ═════════════════════════════════════════════════════════════════════════════


def advance(project_id: str, actor: Actor, *, override_gate: bool = False, notes: str = "",
            expected_version=None, now=None) -> TransitionResult:
    """Move to the next phase.  Only an admin may bypass the action gate."""
    notes = clean_text(notes, "notes", max_length=MAX_NOTES_LENGTH)
    if actor.is_system:
        raise ForbiddenError("Automated callers must use auto_advance",
                             details={"operation": "advance"})
    if override_gate:
        require_admin(actor, "override the action gate")

    entry = phase_ledger.get_current_entry(project_id)
    phase_ledger.check_version(entry, expected_version)
    if entry.phase_index >= TERMINAL_PHASE:
        raise AtTerminalPhaseError(project_id)
    if not override_gate:
        _require_gate(project_id, entry)

    trigger = TransitionTrigger.MANUAL_ADMIN if actor.is_admin else TransitionTrigger.MANUAL_CLIENT
    plan = _Plan(entry, entry.phase_index, entry.phase_index + 1, trigger, actor, notes)
    return _execute(plan, now)


def rewind(project_id: str, actor: Actor, *, notes: str = "", expected_version=None,
           now=None) -> TransitionResult:
    """Step back one phase.  No gate check; admins only."""
    notes = clean_text(notes, "notes", max_length=MAX_NOTES_LENGTH)
    require_admin(actor, "rewind a project")
    entry = phase_ledger.get_current_entry(project_id)
    phase_ledger.check_version(entry, expected_version)
    if entry.phase_index <= INITIAL_PHASE:
        raise AtInitialPhaseError(project_id)

    plan = _Plan(entry, entry.phase_index, entry.phase_index - 1,
                 TransitionTrigger.MANUAL_ADMIN, actor, notes)
    return _execute(plan, now)


def jump_to(project_id: str, actor: Actor, target_index, *, notes: str = "",
            expected_version=None, now=None) -> TransitionResult:
    """Move straight to ``target_index``.  No gate check; admins only.

    Also used to reopen a launched project.
    """
    notes = clean_text(notes, "notes", max_length=MAX_NOTES_LENGTH)
    require_admin(actor, "jump a project to another phase")
    if not is_valid_index(target_index):
        raise InvalidPhaseIndexError(target_index, "must be an integer between 0 and 7")

    entry = phase_ledger.get_current_entry(project_id)
    phase_ledger.check_version(entry, expected_version)
    if target_index == entry.phase_index:
        raise InvalidPhaseIndexError(target_index, "the project is already in this phase")

    plan = _Plan(entry, entry.phase_index, target_index,
                 TransitionTrigger.MANUAL_ADMIN, actor, notes)
    return _execute(plan, now)


def auto_advance(project_id: str, trigger: TransitionTrigger, *, expected_from: int | None = None,
                 notes: str = "", now=None) -> TransitionResult:
    """Advance on behalf of automation; the gate is never overridden.

    If the project is no longer at ``expected_from`` (someone moved it first)
    the call is a successful no-op with ``changed=False``.
    """
    if not isinstance(trigger, TransitionTrigger) or not trigger.is_automatic:
        raise ValueError(f"auto_advance requires an automatic trigger, got {trigger!r}")

    entry = phase_ledger.find_current_entry(project_id)
    if entry is None:
        raise NotFoundError("Project", project_id)
    if expected_from is not None and entry.phase_index != expected_from:
        return _unchanged(entry, trigger)
    if entry.phase_index >= TERMINAL_PHASE:
        raise AtTerminalPhaseError(project_id)
    _require_gate(project_id, entry)

    from_index = entry.phase_index
    plan = _Plan(entry, from_index, from_index + 1, trigger, SYSTEM_ACTOR, notes)
    try:
        return _execute(plan, now)
    except ConcurrentModificationError:
        current = phase_ledger.find_current_entry(project_id)
        if current is not None and current.phase_index != from_index:
            logger.info(
                "Auto-advance of project %s skipped: already moved to phase %s",
                project_id, current.phase_index,
                extra={"project_id": project_id, "phase_index": current.phase_index,
                       "trigger": trigger.value},
            )
            return _unchanged(current, trigger)
        raise


# ═════════════════════════════════════════════════════════════════════════════
# Pipeline
# ═════════════════════════════════════════════════════════════════════════════


def _require_gate(project_id: str, entry: PhaseLedgerEntry) -> None:
    state = action_gate.gate_state(project_id, entry)
    if not state.satisfied:
        raise GateNotSatisfiedError(project_id, entry.phase_index, state.pending)


def _unchanged(entry: PhaseLedgerEntry, trigger: TransitionTrigger) -> TransitionResult:
    return TransitionResult(
        project_id=entry.project_id,
        from_index=entry.phase_index,
        to_index=entry.phase_index,
        trigger=trigger,
        changed=False,
        entry=entry,
    )


def _apply(plan: _Plan, now):
    """Mutate ledger, actions and history.  Flush only; caller commits."""
    project_id = plan.entry.project_id
    rules = phase_ledger.AutomationRules.from_entry(plan.entry)
    timestamp = phase_history.next_timestamp(project_id, now, after=plan.entry.entered_at)

    phase_ledger.close_entry(plan.entry, now=timestamp)
    new_entry = phase_ledger.open_entry(
        project_id, plan.to_index, now=timestamp, entered_by=plan.actor.actor_id, rules=rules,
        revision=plan.entry.revision + 1,
    )
    action_gate.seed_for_entry(new_entry)
    transition = phase_history.append(
        project_id=project_id,
        from_phase_index=plan.from_index,
        to_phase_index=plan.to_index,
        trigger=plan.trigger.value,
        actor_id=plan.actor.actor_id,
        notes=plan.notes,
        timestamp=timestamp,
        to_entry_id=new_entry.id,
    )
    return new_entry, transition, timestamp


def _execute(plan: _Plan, now) -> TransitionResult:
    project_id = plan.entry.project_id
    with project_transaction(project_id):
        new_entry, transition, timestamp = _apply(plan, now)

    logger.info(
        "Project %s moved %s → %s (%s)", project_id, plan.from_index, plan.to_index,
        plan.trigger.value,
        extra={"project_id": project_id, "phase_index": plan.to_index,
               "trigger": plan.trigger.value},
    )
    get_event_bus().publish(TransitionOccurred(
        project_id=project_id,
        from_phase=plan.from_index,
        to_phase=plan.to_index,
        trigger=plan.trigger,
        timestamp=timestamp,
        actor_id=plan.actor.actor_id,
    ))
    return TransitionResult(
        project_id=project_id,
        from_index=plan.from_index,
        to_index=plan.to_index,
        trigger=plan.trigger,
        changed=True,
        entry=new_entry,
        transition=transition,
    )
