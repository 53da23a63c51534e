"""
Inbound events from the surrounding business domain.

    - project created    → open the first ledger entry at Onboarding, seed its actions
    - payment confirmed  → close payment actions; in the Payment phase, auto-advance

Both handlers tolerate redelivery: a second "project created" for the same id
returns the existing entry, and a payment for a project that already left the
Payment phase changes nothing.
"""

import logging

from portal.core.exceptions import ConcurrentModificationError, GateNotSatisfiedError, ValidationError
from portal.services import action_gate, phase_ledger, transition_engine
from portal.utils.helpers import project_transaction, utcnow
from portal.workflow.actors import SYSTEM_ACTOR, Actor
from portal.workflow.events import TransitionTrigger
from portal.workflow.phases import INITIAL_PHASE, PAYMENT_PHASE

logger = logging.getLogger(__name__)


def _validate_project_id(project_id) -> str:
    if not isinstance(project_id, str) or not project_id.strip():
        raise ValidationError("project_id is required", details={"project_id": project_id})
    project_id = project_id.strip()
    if len(project_id) > 64:
        raise ValidationError("project_id must be at most 64 characters",
                              details={"project_id": project_id})
    return project_id


def handle_project_created(project_id, *, actor: Actor = SYSTEM_ACTOR, auto_advance=None,
                           stuck_notifications=None, stuck_threshold_days=None, now=None):
    """Create the project's ledger at Onboarding.

    Returns ``(entry, created)``; ``created`` is False on redelivery.
    """
    project_id = _validate_project_id(project_id)
    existing = phase_ledger.find_current_entry(project_id)
    if existing is not None:
        return existing, False

    defaults = phase_ledger.AutomationRules.defaults()
    if stuck_threshold_days is not None and (
        isinstance(stuck_threshold_days, bool)
        or not isinstance(stuck_threshold_days, int)
        or stuck_threshold_days < 1
    ):
        raise ValidationError("stuck_threshold_days must be a positive integer",
                              details={"stuck_threshold_days": stuck_threshold_days})
    rules = phase_ledger.AutomationRules(
        auto_advance_enabled=defaults.auto_advance_enabled if auto_advance is None else bool(auto_advance),
        stuck_notifications_enabled=(
            defaults.stuck_notifications_enabled if stuck_notifications is None
            else bool(stuck_notifications)
        ),
        stuck_threshold_days=stuck_threshold_days or defaults.stuck_threshold_days,
    )

    try:
        with project_transaction(project_id):
            entry = phase_ledger.open_entry(
                project_id, INITIAL_PHASE, now=now or utcnow(), entered_by=actor.actor_id,
                rules=rules,
            )
            action_gate.seed_for_entry(entry)
    except ConcurrentModificationError:
        existing = phase_ledger.find_current_entry(project_id)
        if existing is not None:
            return existing, False
        raise

    logger.info("Project %s entered the workflow", project_id,
                extra={"project_id": project_id, "phase_index": INITIAL_PHASE})
    return entry, True


def handle_payment_confirmed(project_id, amount, reference, *, now=None) -> dict:
    """Apply a confirmed payment to the project's workflow.

    Outcome ``status``:
        advanced              Payment phase gate opened and the project moved on
        already_moved         someone else advanced it first (no-op)
        blocked               other required Payment actions still open
        recorded              payment actions closed outside the Payment phase
        already_past_payment  nothing left to do
    """
    project_id = _validate_project_id(project_id)
    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount <= 0:
        raise ValidationError("amount must be a positive number", details={"amount": amount})
    if not isinstance(reference, str) or not reference.strip():
        raise ValidationError("reference is required", details={"reference": reference})
    reference = reference.strip()

    entry = phase_ledger.get_current_entry(project_id)
    phase_index = entry.phase_index
    # in Payment the auto-advance below is the reaction; no separate gate signal
    completed = action_gate.complete_payment_actions(
        project_id, reference, now=now, notify=phase_index != PAYMENT_PHASE,
    )
    outcome = {
        "project_id": project_id,
        "reference": reference,
        "phase_index": phase_index,
        "completed_actions": [a.id for a in completed],
        "transition": None,
    }

    if phase_index == PAYMENT_PHASE:
        try:
            result = transition_engine.auto_advance(
                project_id, TransitionTrigger.AUTOMATIC_PAYMENT, expected_from=PAYMENT_PHASE,
                notes=f"Payment confirmed (ref {reference})", now=now,
            )
        except GateNotSatisfiedError as exc:
            logger.info("Payment %s recorded; project %s still blocked by %d action(s)",
                        reference, project_id, len(exc.pending),
                        extra={"project_id": project_id, "phase_index": phase_index})
            outcome["status"] = "blocked"
            outcome["pending_actions"] = exc.pending
            return outcome
        outcome["status"] = "advanced" if result.changed else "already_moved"
        outcome["phase_index"] = result.to_index
        if result.transition is not None:
            outcome["transition"] = result.transition.to_dict()
    elif phase_index > PAYMENT_PHASE:
        outcome["status"] = "already_past_payment"
    else:
        outcome["status"] = "recorded"

    logger.info("Payment %s for project %s: %s", reference, project_id, outcome["status"],
                extra={"project_id": project_id, "phase_index": outcome["phase_index"]})
    return outcome
