"""
Phase registry tests.

Covers:
    1. Catalog shape (8 phases, fixed order, keys)
    2. Index validation and lookups
    3. Action templates per phase
    4. Progress percentage
"""

import pytest

from portal.workflow import phases
from portal.workflow.phases import (
    INITIAL_PHASE,
    PAYMENT_PHASE,
    PHASE_COUNT,
    TERMINAL_PHASE,
    is_valid_index,
    phase_at,
    phase_by_key,
    progress_percent,
    templates_for,
)


class TestCatalog:

    def test_eight_phases_in_order(self):
        assert phases.count() == PHASE_COUNT == 8
        assert [p.key for p in phases.PHASES] == [
            "onboarding", "ideation", "design", "review",
            "production", "payment", "signoff", "launch",
        ]

    def test_indices_match_positions(self):
        for i, phase in enumerate(phases.PHASES):
            assert phase.index == i

    def test_named_boundaries(self):
        assert INITIAL_PHASE == 0
        assert PAYMENT_PHASE == 5
        assert TERMINAL_PHASE == 7
        assert phase_at(PAYMENT_PHASE).key == "payment"

    def test_phase_is_immutable(self):
        with pytest.raises(Exception):
            phase_at(0).display_name = "Changed"

    def test_to_dict(self):
        d = phase_at(2).to_dict()
        assert d["index"] == 2
        assert d["display_name"] == "Design"
        assert d["requires_client_action"] is True
        assert [t["key"] for t in d["action_templates"]] == [
            "review_designs", "design_feedback", "approve_designs",
        ]


class TestLookups:

    @pytest.mark.parametrize("index", [0, 3, 7])
    def test_valid_indices(self, index):
        assert is_valid_index(index)
        assert phase_at(index).index == index

    @pytest.mark.parametrize("index", [-1, 8, 99, True, "2", 2.0, None])
    def test_invalid_indices(self, index):
        assert not is_valid_index(index)
        with pytest.raises(IndexError):
            phase_at(index)

    def test_phase_by_key(self):
        assert phase_by_key("signoff").index == 6
        assert phase_by_key("nope") is None


class TestTemplates:

    def test_onboarding_templates(self):
        tpls = templates_for(0)
        assert [t.key for t in tpls] == ["intake_form", "service_agreement", "deposit_payment"]
        assert all(t.is_required for t in tpls)
        deposit = tpls[2]
        assert deposit.requirement_type == "payment"
        assert deposit.is_client_facing is False

    def test_payment_phase_requires_final_payment_only(self):
        required = phase_at(PAYMENT_PHASE).required_templates
        assert [t.key for t in required] == ["final_payment"]
        assert required[0].requirement_type == "payment"

    def test_production_has_no_required_actions(self):
        assert phase_at(4).required_templates == ()
        assert phase_at(4).requires_client_action is False

    def test_launch_actions_are_all_optional(self):
        assert all(not t.is_required for t in templates_for(TERMINAL_PHASE))

    def test_requirement_types_are_known(self):
        for phase in phases.PHASES:
            for tpl in phase.action_templates:
                assert tpl.requirement_type in phases.REQUIREMENT_TYPES


class TestProgress:

    @pytest.mark.parametrize("index,expected", [(0, 0), (1, 14), (5, 71), (7, 100)])
    def test_progress_percent(self, index, expected):
        assert progress_percent(index) == expected
