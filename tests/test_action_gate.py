"""
Action gate tests.

Covers:
    1. Gate evaluation against required actions of the current occurrence
    2. Completion (idempotent, client-facing restriction, GateSatisfied signal)
    3. Admin reopen, and closed occurrences being read-only
    4. Payment completion
    5. Ad hoc actions and requirement replacement (current + future phase)
    6. Seeding a fresh phase occurrence from templates
    7. Free-text fields: type and length checks, notes kept unless given
"""

from datetime import datetime, timedelta, timezone

import pytest

from portal.core.exceptions import (
    ForbiddenError,
    InvalidPhaseIndexError,
    NotFoundError,
    ValidationError,
)
from portal.models import db
from portal.models.workflow import ClientAction
from portal.services import action_gate, phase_ledger, transition_engine
from portal.workflow.actors import Actor
from portal.workflow.events import GateSatisfied
from portal.workflow.phases import templates_for

T0 = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)
ADMIN = Actor.admin("admin-1")
CLIENT = Actor.client("client-1")


def _action(project_id, key):
    entry = phase_ledger.get_current_entry(project_id)
    return ClientAction.query.filter_by(ledger_entry_id=entry.id, action_key=key).one()


def _complete_all_required(project_id, actor=ADMIN):
    for action in action_gate.pending_actions(project_id):
        if action.is_required:
            action_gate.mark_completed(action.id, actor)


class TestGateEvaluation:

    def test_fresh_onboarding_is_closed(self, project):
        state = action_gate.gate_state(project)
        assert state.satisfied is False
        assert state.required_total == 3
        assert state.required_completed == 0
        assert {a["action_key"] for a in state.pending} == {
            "intake_form", "service_agreement", "deposit_payment",
        }

    def test_all_required_done_opens_gate(self, project):
        _complete_all_required(project)
        assert action_gate.is_satisfied(project) is True

    def test_phase_without_required_actions_is_open(self, project):
        transition_engine.jump_to(project, ADMIN, 4, now=T0 + timedelta(hours=1))
        state = action_gate.gate_state(project)
        assert state.required_total == 0
        assert state.satisfied is True

    def test_optional_actions_do_not_block(self, project):
        transition_engine.jump_to(project, ADMIN, 1, now=T0 + timedelta(hours=1))
        action_gate.mark_completed(_action(project, "review_brief").id, CLIENT)
        action_gate.mark_completed(_action(project, "approve_direction").id, CLIENT)
        assert action_gate.is_satisfied(project) is True
        assert not _action(project, "initial_feedback").is_completed

    def test_previous_occurrence_does_not_count(self, project):
        _complete_all_required(project)
        transition_engine.advance(project, ADMIN, now=T0 + timedelta(days=1))
        transition_engine.rewind(project, ADMIN, now=T0 + timedelta(days=2))
        # back in Onboarding with a fresh set of actions
        assert action_gate.is_satisfied(project) is False
        assert action_gate.gate_state(project).required_total == 3

    def test_unknown_project(self):
        with pytest.raises(NotFoundError):
            action_gate.is_satisfied("missing")

    def test_pending_actions_listing(self, project):
        action_gate.mark_completed(_action(project, "intake_form").id, CLIENT)
        pending = [a.action_key for a in action_gate.pending_actions(project)]
        everything = [a.action_key for a in action_gate.pending_actions(project, include_completed=True)]
        assert pending == ["service_agreement", "deposit_payment"]
        assert everything == ["intake_form", "service_agreement", "deposit_payment"]


class TestCompletion:

    def test_mark_completed_stamps_action(self, project):
        action = _action(project, "intake_form")
        action_gate.mark_completed(action.id, CLIENT, notes="done", now=T0 + timedelta(hours=2))
        action = _action(project, "intake_form")
        assert action.is_completed is True
        assert action.completed_by == "client-1"
        assert action.notes == "done"
        assert action.completed_at is not None

    def test_completing_twice_is_noop(self, project, events):
        action = _action(project, "intake_form")
        first = action_gate.mark_completed(action.id, CLIENT)
        second = action_gate.mark_completed(action.id, ADMIN)
        assert first.required_completed == second.required_completed == 1
        assert _action(project, "intake_form").completed_by == "client-1"

    def test_client_cannot_complete_studio_action(self, project):
        deposit = _action(project, "deposit_payment")
        with pytest.raises(ForbiddenError):
            action_gate.mark_completed(deposit.id, CLIENT)
        assert _action(project, "deposit_payment").is_completed is False

    def test_admin_can_complete_studio_action(self, project):
        state = action_gate.mark_completed(_action(project, "deposit_payment").id, ADMIN)
        assert state.required_completed == 1

    def test_unknown_action(self, project):
        with pytest.raises(NotFoundError):
            action_gate.mark_completed(9999, ADMIN)

    def test_last_required_completion_emits_gate_satisfied(self, project, events):
        action_gate.mark_completed(_action(project, "intake_form").id, CLIENT)
        action_gate.mark_completed(_action(project, "service_agreement").id, CLIENT)
        assert events.of(GateSatisfied) == []

        action_gate.mark_completed(_action(project, "deposit_payment").id, ADMIN)
        assert events.of(GateSatisfied) == [GateSatisfied(project_id=project, phase_index=0)]

    def test_gate_satisfied_emitted_once(self, project, events):
        _complete_all_required(project)
        transition_engine.jump_to(project, ADMIN, 1, now=T0 + timedelta(hours=1))
        transition_engine.jump_to(project, ADMIN, 0, now=T0 + timedelta(hours=2))
        # entering a phase never emits GateSatisfied on its own
        assert len(events.of(GateSatisfied)) == 1


class TestReopen:

    def test_admin_reopens_action(self, project):
        action = _action(project, "intake_form")
        action_gate.mark_completed(action.id, CLIENT)
        reopened = action_gate.uncomplete_action(action.id, ADMIN)
        assert reopened.is_completed is False
        assert reopened.completed_at is None
        assert reopened.completed_by is None

    def test_client_cannot_reopen(self, project):
        action = _action(project, "intake_form")
        action_gate.mark_completed(action.id, CLIENT)
        with pytest.raises(ForbiddenError):
            action_gate.uncomplete_action(action.id, CLIENT)

    def test_closed_occurrence_is_read_only(self, project):
        action = _action(project, "intake_form")
        action_gate.mark_completed(action.id, CLIENT)
        transition_engine.advance(project, ADMIN, override_gate=True, now=T0 + timedelta(days=1))
        with pytest.raises(InvalidPhaseIndexError):
            action_gate.uncomplete_action(action.id, ADMIN)


class TestPaymentCompletion:

    def test_completes_payment_actions_only(self, project):
        completed = action_gate.complete_payment_actions(project, "INV-1")
        assert [a.action_key for a in completed] == ["deposit_payment"]
        deposit = _action(project, "deposit_payment")
        assert deposit.is_completed is True
        assert "INV-1" in deposit.notes
        assert _action(project, "intake_form").is_completed is False

    def test_nothing_to_complete(self, project):
        action_gate.complete_payment_actions(project, "INV-1")
        assert action_gate.complete_payment_actions(project, "INV-2") == []

    def test_notify_flag_suppresses_gate_signal(self, project, events):
        action_gate.mark_completed(_action(project, "intake_form").id, CLIENT)
        action_gate.mark_completed(_action(project, "service_agreement").id, CLIENT)
        action_gate.complete_payment_actions(project, "INV-1", notify=False)
        assert action_gate.is_satisfied(project)
        assert events.of(GateSatisfied) == []


class TestAddAction:

    def test_add_to_current_phase_blocks_gate(self, project):
        _complete_all_required(project)
        action = action_gate.add_action(project, 0, "Upload brand guide", actor=ADMIN)
        assert action.ledger_entry_id == phase_ledger.get_current_entry(project).id
        assert action.source == "admin"
        assert action_gate.is_satisfied(project) is False

    def test_add_to_future_phase_is_adopted_on_entry(self, project):
        action = action_gate.add_action(project, 2, "Share moodboard", actor=ADMIN,
                                        is_required=False)
        assert action.ledger_entry_id is None

        transition_engine.jump_to(project, ADMIN, 2, now=T0 + timedelta(hours=1))
        descriptions = [a.description for a in action_gate.pending_actions(project)]
        assert "Share moodboard" in descriptions
        assert "Approve final designs" in descriptions

    def test_past_phase_rejected(self, project):
        transition_engine.jump_to(project, ADMIN, 3, now=T0 + timedelta(hours=1))
        with pytest.raises(InvalidPhaseIndexError):
            action_gate.add_action(project, 1, "Too late", actor=ADMIN)

    @pytest.mark.parametrize("phase_index", [-1, 8, "2"])
    def test_invalid_phase_index(self, project, phase_index):
        with pytest.raises(InvalidPhaseIndexError):
            action_gate.add_action(project, phase_index, "Something", actor=ADMIN)

    def test_description_required(self, project):
        with pytest.raises(ValidationError):
            action_gate.add_action(project, 0, "  ", actor=ADMIN)

    def test_client_forbidden(self, project):
        with pytest.raises(ForbiddenError):
            action_gate.add_action(project, 0, "Sneaky", actor=CLIENT)


class TestReplaceRequirements:

    def test_future_phase_override_replaces_templates(self, project):
        action_gate.replace_requirements(project, 3, [
            {"description": "Sign off the print proof"},
            {"description": "Optional walkthrough", "is_required": False},
        ], actor=ADMIN)

        transition_engine.jump_to(project, ADMIN, 3, now=T0 + timedelta(hours=1))
        actions = action_gate.pending_actions(project, include_completed=True)
        assert [a.description for a in actions] == ["Sign off the print proof", "Optional walkthrough"]
        assert all(a.source == "override" for a in actions)
        assert action_gate.gate_state(project).required_total == 1

    def test_current_phase_keeps_completed_and_updates_listed(self, project):
        intake = _action(project, "intake_form")
        agreement = _action(project, "service_agreement")
        action_gate.mark_completed(intake.id, CLIENT)

        result = action_gate.replace_requirements(project, 0, [
            {"id": agreement.id, "description": "Sign the revised agreement"},
            {"description": "Share logo files", "is_required": False},
        ], actor=ADMIN)

        by_desc = {a.description: a for a in result}
        assert set(by_desc) == {
            "Complete intake form", "Sign the revised agreement", "Share logo files",
        }
        # deposit was incomplete and not listed
        assert ClientAction.query.filter_by(action_key="deposit_payment").count() == 0
        assert by_desc["Complete intake form"].is_completed is True

    def test_unknown_action_id(self, project):
        with pytest.raises(NotFoundError):
            action_gate.replace_requirements(project, 0, [{"id": 9999, "description": "x"}],
                                             actor=ADMIN)

    def test_actions_must_be_list(self, project):
        with pytest.raises(ValidationError):
            action_gate.replace_requirements(project, 0, {"description": "x"}, actor=ADMIN)

    def test_removing_last_open_requirement_emits_gate_satisfied(self, project, events):
        intake = _action(project, "intake_form")
        action_gate.mark_completed(intake.id, CLIENT)
        action_gate.replace_requirements(project, 0, [], actor=ADMIN)
        assert action_gate.is_satisfied(project)
        assert events.of(GateSatisfied) == [GateSatisfied(project_id=project, phase_index=0)]


class TestSeeding:

    def test_seed_for_fresh_occurrence(self, project):
        entry = phase_ledger.get_current_entry(project)
        phase_ledger.close_entry(entry, now=T0 + timedelta(hours=1))
        nxt = phase_ledger.open_entry(project, 2, now=T0 + timedelta(hours=1))

        created = action_gate.seed_for_entry(nxt)
        assert [a.action_key for a in created] == [t.key for t in templates_for(2)]
        assert all(a.ledger_entry_id == nxt.id and a.source == "template" for a in created)
        assert [a.sort_order for a in created] == list(range(len(created)))

    def test_previous_occurrence_actions_stay_behind(self, project):
        first = phase_ledger.get_current_entry(project)
        old_ids = {a.id for a in action_gate.actions_for_entry(first)}
        phase_ledger.close_entry(first, now=T0 + timedelta(hours=1))
        again = phase_ledger.open_entry(project, 0, now=T0 + timedelta(hours=1))

        seeded = action_gate.seed_for_entry(again)
        assert old_ids.isdisjoint(a.id for a in seeded)
        assert len(seeded) == len(templates_for(0))


class TestTextFields:

    def test_add_action_defaults_and_trims(self, project):
        action = action_gate.add_action(project, 0, "Send logo", actor=ADMIN,
                                        requirement_type=None, notes="  vector please ")
        assert action.requirement_type == "custom"
        assert action.notes == "vector please"

    @pytest.mark.parametrize("kwargs", [
        {"requirement_type": {"x": 1}},
        {"requirement_type": "t" * 31},
        {"notes": ["a"]},
        {"notes": "n" * 2001},
    ])
    def test_add_action_rejects_bad_text(self, project, kwargs):
        with pytest.raises(ValidationError):
            action_gate.add_action(project, 0, "Send logo", actor=ADMIN, **kwargs)
        assert ClientAction.query.filter_by(project_id=project, source="admin").count() == 0

    def test_replace_keeps_notes_unless_given(self, project):
        agreement = _action(project, "service_agreement")
        action_gate.replace_requirements(project, 0, [
            {"id": agreement.id, "description": "Sign agreement", "notes": "v2 attached"},
        ], actor=ADMIN)
        action_gate.replace_requirements(project, 0, [
            {"id": agreement.id, "description": "Sign agreement"},
        ], actor=ADMIN)
        assert db.session.get(ClientAction, agreement.id).notes == "v2 attached"

        action_gate.replace_requirements(project, 0, [
            {"id": agreement.id, "description": "Sign agreement", "notes": ""},
        ], actor=ADMIN)
        assert db.session.get(ClientAction, agreement.id).notes == ""

    def test_replace_rejects_non_string_notes(self, project):
        with pytest.raises(ValidationError):
            action_gate.replace_requirements(project, 0, [
                {"description": "Share logo files", "notes": ["a"]},
            ], actor=ADMIN)
        assert action_gate.gate_state(project).required_total == 3

    def test_completion_notes_must_be_text(self, project):
        intake = _action(project, "intake_form")
        with pytest.raises(ValidationError):
            action_gate.mark_completed(intake.id, CLIENT, notes=5)
        assert db.session.get(ClientAction, intake.id).is_completed is False
