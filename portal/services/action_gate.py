"""
Action Gate — may a project leave its current phase?

Business logic for:
    - Gate evaluation:     every required action of the current phase occurrence completed
    - Action seeding:      templates + adopted ad hoc actions when a phase is entered
    - Completion:          idempotent mark / admin reopen
    - Requirement editing: add one action, or replace a phase's requirement list
    - Payment completion:  payment-type actions closed by an inbound payment event

Completing the last open required action publishes ``GateSatisfied`` after
the commit; the automation service listens for it.  Nothing here calls the
transition engine directly.
"""

import logging
from dataclasses import dataclass, field

from sqlalchemy import func, select

from portal.core.exceptions import (
    ForbiddenError,
    InvalidPhaseIndexError,
    NotFoundError,
    ValidationError,
)
from portal.models import db
from portal.models.workflow import ClientAction, PhaseLedgerEntry
from portal.services import phase_ledger
from portal.utils.helpers import MAX_NOTES_LENGTH, clean_text, project_transaction, utcnow
from portal.workflow.actors import SYSTEM_ACTOR, Actor, require_admin
from portal.workflow.events import GateSatisfied, get_event_bus
from portal.workflow.phases import is_valid_index, templates_for

logger = logging.getLogger(__name__)

# ClientAction.requirement_type column width
REQUIREMENT_TYPE_MAX = 30


@dataclass
class GateState:
    project_id: str
    phase_index: int
    ledger_entry_id: int
    required_total: int
    required_completed: int
    pending: list[dict] = field(default_factory=list)

    @property
    def satisfied(self) -> bool:
        return self.required_completed >= self.required_total

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "phase_index": self.phase_index,
            "ledger_entry_id": self.ledger_entry_id,
            "satisfied": self.satisfied,
            "required_total": self.required_total,
            "required_completed": self.required_completed,
            "pending": self.pending,
        }


# ── Queries ──────────────────────────────────────────────────────────────────


def actions_for_entry(entry: PhaseLedgerEntry) -> list[ClientAction]:
    return list(
        db.session.execute(
            select(ClientAction)
            .where(ClientAction.ledger_entry_id == entry.id)
            .order_by(ClientAction.sort_order, ClientAction.id)
        ).scalars()
    )


def _unattached_actions(project_id: str, phase_index: int) -> list[ClientAction]:
    return list(
        db.session.execute(
            select(ClientAction)
            .where(
                ClientAction.project_id == project_id,
                ClientAction.phase_index == phase_index,
                ClientAction.ledger_entry_id.is_(None),
            )
            .order_by(ClientAction.sort_order, ClientAction.id)
        ).scalars()
    )


def gate_state(project_id: str, entry: PhaseLedgerEntry | None = None) -> GateState:
    entry = entry or phase_ledger.get_current_entry(project_id)
    required = [a for a in actions_for_entry(entry) if a.is_required]
    pending = [a.to_dict() for a in required if not a.is_completed]
    return GateState(
        project_id=project_id,
        phase_index=entry.phase_index,
        ledger_entry_id=entry.id,
        required_total=len(required),
        required_completed=len(required) - len(pending),
        pending=pending,
    )


def is_satisfied(project_id: str) -> bool:
    """True iff every required action of the current phase occurrence is done."""
    return gate_state(project_id).satisfied


def pending_actions(project_id: str, *, include_completed: bool = False) -> list[ClientAction]:
    entry = phase_ledger.get_current_entry(project_id)
    actions = actions_for_entry(entry)
    if include_completed:
        return actions
    return [a for a in actions if not a.is_completed]


# ── Seeding ──────────────────────────────────────────────────────────────────


def seed_for_entry(entry: PhaseLedgerEntry) -> list[ClientAction]:
    """Create the action set for a freshly opened phase occurrence.

    Ad hoc actions added earlier for this phase are adopted.  If any of them
    came from a requirements override, the default templates are skipped.
    Flush only.
    """
    adopted = _unattached_actions(entry.project_id, entry.phase_index)
    overridden = any(a.source == "override" for a in adopted)

    created = []
    if not overridden:
        for order, tpl in enumerate(templates_for(entry.phase_index)):
            action = ClientAction(
                project_id=entry.project_id,
                phase_index=entry.phase_index,
                ledger_entry_id=entry.id,
                action_key=tpl.key,
                description=tpl.description,
                requirement_type=tpl.requirement_type,
                is_required=tpl.is_required,
                is_client_facing=tpl.is_client_facing,
                source="template",
                sort_order=order,
            )
            db.session.add(action)
            created.append(action)

    offset = len(created)
    for order, action in enumerate(adopted):
        action.ledger_entry_id = entry.id
        action.sort_order = offset + order

    db.session.flush()
    return created + adopted


# ── Completion ───────────────────────────────────────────────────────────────


def _get_action(action_id: int) -> ClientAction:
    action = db.session.get(ClientAction, action_id)
    if action is None:
        raise NotFoundError("ClientAction", action_id)
    return action


def _publish_if_opened_gate(project_id: str, was_satisfied: bool) -> None:
    """Emit ``GateSatisfied`` when the current gate just flipped to satisfied."""
    if was_satisfied:
        return
    state = gate_state(project_id)
    if state.satisfied:
        logger.info(
            "Gate satisfied for project %s phase %s", project_id, state.phase_index,
            extra={"project_id": project_id, "phase_index": state.phase_index,
                   "event_type": GateSatisfied.event_type},
        )
        get_event_bus().publish(GateSatisfied(project_id=project_id, phase_index=state.phase_index))


def mark_completed(action_id: int, actor: Actor, *, notes: str | None = None,
                   now=None) -> GateState:
    """Complete an action.  Completing an already-completed action is a no-op.

    Clients may only complete client-facing actions.
    """
    notes = clean_text(notes, "notes", max_length=MAX_NOTES_LENGTH)
    action = _get_action(action_id)
    project_id = action.project_id

    if actor.is_client and not action.is_client_facing:
        raise ForbiddenError(
            "This action can only be completed by the studio",
            details={"action_id": action_id},
        )

    if action.is_completed:
        return gate_state(project_id)

    was_satisfied = gate_state(project_id).satisfied
    with project_transaction(project_id):
        action.is_completed = True
        action.completed_at = now or utcnow()
        action.completed_by = actor.actor_id
        if notes:
            action.notes = notes

    logger.info(
        "Action %s completed on project %s by %s", action_id, project_id, actor.role.value,
        extra={"project_id": project_id, "phase_index": action.phase_index},
    )
    _publish_if_opened_gate(project_id, was_satisfied)
    return gate_state(project_id)


def uncomplete_action(action_id: int, actor: Actor) -> ClientAction:
    """Reopen a completed action (admin).  Closed phase occurrences are read-only."""
    require_admin(actor, "reopen an action")
    action = _get_action(action_id)
    if not action.is_completed:
        return action

    if action.ledger_entry_id is not None:
        entry = db.session.get(PhaseLedgerEntry, action.ledger_entry_id)
        if entry is not None and not entry.is_open:
            raise InvalidPhaseIndexError(
                action.phase_index, "action belongs to a phase the project has already left",
            )

    with project_transaction(action.project_id):
        action.is_completed = False
        action.completed_at = None
        action.completed_by = None
    logger.info("Action %s reopened on project %s", action_id, action.project_id,
                extra={"project_id": action.project_id, "phase_index": action.phase_index})
    return action


def complete_payment_actions(project_id: str, reference: str, *, actor: Actor = SYSTEM_ACTOR,
                             now=None, notify: bool = True) -> list[ClientAction]:
    """Close every open payment-type action of the current phase occurrence."""
    entry = phase_ledger.get_current_entry(project_id)
    targets = [
        a for a in actions_for_entry(entry)
        if a.requirement_type == "payment" and not a.is_completed
    ]
    if not targets:
        return []

    was_satisfied = gate_state(project_id, entry).satisfied
    now = now or utcnow()
    with project_transaction(project_id):
        for action in targets:
            action.is_completed = True
            action.completed_at = now
            action.completed_by = actor.actor_id or "system"
            action.notes = f"Payment confirmed (ref {reference})"

    logger.info(
        "Payment %s completed %d action(s) on project %s", reference, len(targets), project_id,
        extra={"project_id": project_id, "phase_index": entry.phase_index},
    )
    if notify:
        _publish_if_opened_gate(project_id, was_satisfied)
    return targets


# ── Requirement editing (admin) ──────────────────────────────────────────────


def _editable_scope(project_id: str, phase_index) -> tuple[PhaseLedgerEntry, bool]:
    """Validate ``phase_index`` for editing; return (current entry, is_current)."""
    if not is_valid_index(phase_index):
        raise InvalidPhaseIndexError(phase_index, "must be an integer between 0 and 7")
    entry = phase_ledger.get_current_entry(project_id)
    if phase_index < entry.phase_index:
        raise InvalidPhaseIndexError(phase_index, "the project has already left this phase")
    return entry, phase_index == entry.phase_index


def _next_sort_order(project_id: str, phase_index: int) -> int:
    current = db.session.execute(
        select(func.max(ClientAction.sort_order)).where(
            ClientAction.project_id == project_id,
            ClientAction.phase_index == phase_index,
        )
    ).scalar()
    return 0 if current is None else current + 1


def _clean_description(value) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("description is required", details={"description": value})
    return value.strip()[:500]


def _clean_requirement_type(value, default="custom") -> str:
    return clean_text(value, "requirement_type", max_length=REQUIREMENT_TYPE_MAX, default=default)


def add_action(project_id: str, phase_index: int, description: str, *, actor: Actor,
               is_required: bool = True, is_client_facing: bool = True,
               requirement_type: str = "custom", notes: str = "") -> ClientAction:
    """Admin-authored requirement on the current or a future phase."""
    require_admin(actor, "add a phase requirement")
    description = _clean_description(description)
    requirement_type = _clean_requirement_type(requirement_type)
    notes = clean_text(notes, "notes", max_length=MAX_NOTES_LENGTH)
    entry, is_current = _editable_scope(project_id, phase_index)
    was_satisfied = gate_state(project_id, entry).satisfied

    with project_transaction(project_id):
        action = ClientAction(
            project_id=project_id,
            phase_index=phase_index,
            ledger_entry_id=entry.id if is_current else None,
            description=description,
            requirement_type=requirement_type,
            is_required=bool(is_required),
            is_client_facing=bool(is_client_facing),
            source="admin",
            sort_order=_next_sort_order(project_id, phase_index),
            notes=notes,
        )
        db.session.add(action)

    logger.info("Action added to project %s phase %s", project_id, phase_index,
                extra={"project_id": project_id, "phase_index": phase_index})
    if is_current:
        _publish_if_opened_gate(project_id, was_satisfied)
    return action


def replace_requirements(project_id: str, phase_index: int, actions: list[dict], *,
                         actor: Actor) -> list[ClientAction]:
    """Set the requirement list of the current or a future phase.

    Completed actions always survive.  Listed actions with an ``id`` are
    updated, the rest created, and incomplete actions not listed are removed.
    For a future phase the list replaces the default templates.
    """
    require_admin(actor, "edit phase requirements")
    if not isinstance(actions, list):
        raise ValidationError("actions must be a list")
    entry, is_current = _editable_scope(project_id, phase_index)
    scope = actions_for_entry(entry) if is_current else _unattached_actions(project_id, phase_index)
    by_id = {a.id: a for a in scope}
    source = "admin" if is_current else "override"
    was_satisfied = gate_state(project_id, entry).satisfied if is_current else True

    with project_transaction(project_id):
        keep_ids = set()
        for order, spec in enumerate(actions):
            if not isinstance(spec, dict):
                raise ValidationError("each action must be an object", details={"index": order})
            description = _clean_description(spec.get("description"))
            requirement_type = _clean_requirement_type(spec.get("requirement_type"), default=None)
            notes = (clean_text(spec["notes"], "notes", max_length=MAX_NOTES_LENGTH)
                     if "notes" in spec else None)
            action_id = spec.get("id")
            if action_id is not None:
                action = by_id.get(action_id)
                if action is None:
                    raise NotFoundError("ClientAction", action_id)
            else:
                action = ClientAction(
                    project_id=project_id,
                    phase_index=phase_index,
                    ledger_entry_id=entry.id if is_current else None,
                )
                db.session.add(action)
            action.description = description
            action.is_required = bool(spec.get("is_required", True))
            action.is_client_facing = bool(spec.get("is_client_facing", True))
            action.requirement_type = requirement_type or action.requirement_type or "custom"
            action.notes = (action.notes or "") if notes is None else notes
            action.sort_order = order
            if action.source != "template" or not is_current:
                action.source = source
            db.session.flush()
            keep_ids.add(action.id)

        for action in scope:
            if action.id not in keep_ids and not action.is_completed:
                db.session.delete(action)

    logger.info(
        "Requirements replaced for project %s phase %s (%d listed)", project_id, phase_index,
        len(actions), extra={"project_id": project_id, "phase_index": phase_index},
    )
    if is_current:
        _publish_if_opened_gate(project_id, was_satisfied)
        return actions_for_entry(phase_ledger.get_current_entry(project_id))
    return _unattached_actions(project_id, phase_index)
