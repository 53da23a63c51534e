"""
Phase Registry: the fixed 8-stage project lifecycle.

Onboarding → Ideation → Design → Review → Production → Payment → Sign-off → Launch

Everything here is immutable and built once at import time.  An index outside
``0..7`` is a programming error, so ``phase_at`` raises ``IndexError``; request
handlers validate with ``is_valid_index`` before calling in.

Usage:
    from portal.workflow.phases import phase_at, templates_for, PAYMENT_PHASE
    phase_at(2).display_name          # -> "Design"
    [t.key for t in templates_for(0)] # -> ["intake_form", "service_agreement", ...]
"""

from __future__ import annotations

from dataclasses import dataclass

# ── Requirement types ────────────────────────────────────────────────────────

REQUIREMENT_TYPES = {
    "form", "agreement", "payment", "review", "approval",
    "feedback", "proof", "monitor", "check", "download",
    "confirm", "launch", "custom",
}


@dataclass(frozen=True)
class ActionTemplate:
    """Blueprint for a ClientAction seeded when a project enters a phase."""
    key: str
    description: str
    requirement_type: str = "custom"
    is_required: bool = True
    is_client_facing: bool = True

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "description": self.description,
            "requirement_type": self.requirement_type,
            "is_required": self.is_required,
            "is_client_facing": self.is_client_facing,
        }


@dataclass(frozen=True)
class Phase:
    index: int
    key: str
    display_name: str
    icon: str
    description: str
    action_templates: tuple[ActionTemplate, ...] = ()

    @property
    def requires_client_action(self) -> bool:
        return any(t.is_required and t.is_client_facing for t in self.action_templates)

    @property
    def required_templates(self) -> tuple[ActionTemplate, ...]:
        return tuple(t for t in self.action_templates if t.is_required)

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "key": self.key,
            "display_name": self.display_name,
            "icon": self.icon,
            "description": self.description,
            "requires_client_action": self.requires_client_action,
            "action_templates": [t.to_dict() for t in self.action_templates],
        }


# ── Catalog ──────────────────────────────────────────────────────────────────

PHASES: tuple[Phase, ...] = (
    Phase(0, "onboarding", "Onboarding", "📋", "Initial kickoff and info gathering", (
        ActionTemplate("intake_form", "Complete intake form", "form"),
        ActionTemplate("service_agreement", "Sign service agreement", "agreement"),
        ActionTemplate("deposit_payment", "Pay deposit invoice", "payment",
                       is_client_facing=False),
    )),
    Phase(1, "ideation", "Ideation", "💡", "Brainstorming & concept development", (
        ActionTemplate("review_brief", "Review creative brief", "review"),
        ActionTemplate("approve_direction", "Approve project direction", "approval"),
        ActionTemplate("initial_feedback", "Provide initial feedback", "feedback",
                       is_required=False),
    )),
    Phase(2, "design", "Design", "🎨", "Creation of designs and prototypes", (
        ActionTemplate("review_designs", "Review initial designs", "review",
                       is_required=False),
        ActionTemplate("design_feedback", "Provide design feedback", "feedback",
                       is_required=False),
        ActionTemplate("approve_designs", "Approve final designs", "approval"),
    )),
    Phase(3, "review", "Review & Feedback", "👀", "Client review and feedback collection", (
        ActionTemplate("approve_deliverables", "Approve all deliverables", "approval"),
        ActionTemplate("proof_approval", "Complete proof approval (if print)", "proof",
                       is_required=False),
        ActionTemplate("request_changes", "Request changes (if needed)", "feedback",
                       is_required=False),
    )),
    Phase(4, "production", "Production", "🖨️", "Final production and printing", (
        ActionTemplate("monitor_production", "Monitor production progress", "monitor",
                       is_required=False),
        ActionTemplate("press_check", "Approve press check (if applicable)", "check",
                       is_required=False),
    )),
    Phase(5, "payment", "Payment", "💳", "Final payment collection", (
        ActionTemplate("final_payment", "Pay final invoice", "payment",
                       is_client_facing=False),
        ActionTemplate("review_costs", "Review final costs", "review",
                       is_required=False),
    )),
    Phase(6, "signoff", "Sign-off & Docs", "✍️", "Final approvals and documentation", (
        ActionTemplate("completion_agreement", "Sign completion agreement", "agreement"),
        ActionTemplate("download_assets", "Download final assets", "download",
                       is_required=False),
        ActionTemplate("review_docs", "Review documentation", "review",
                       is_required=False),
    )),
    Phase(7, "launch", "Launch", "🚀", "Final deliverables and handover", (
        ActionTemplate("confirm_receipt", "Confirm receipt of deliverables", "confirm",
                       is_required=False),
        ActionTemplate("provide_testimonial", "Provide testimonial", "feedback",
                       is_required=False),
        ActionTemplate("launch_project", "Launch/deploy project", "launch",
                       is_required=False, is_client_facing=False),
    )),
)

PHASE_COUNT = len(PHASES)
INITIAL_PHASE = 0
PAYMENT_PHASE = 5
TERMINAL_PHASE = PHASE_COUNT - 1

_BY_KEY = {p.key: p for p in PHASES}


# ── Lookups ──────────────────────────────────────────────────────────────────

def is_valid_index(index) -> bool:
    """True for an int (not bool) within ``0..TERMINAL_PHASE``."""
    return isinstance(index, int) and not isinstance(index, bool) and 0 <= index <= TERMINAL_PHASE


def phase_at(index: int) -> Phase:
    if not is_valid_index(index):
        raise IndexError(f"phase index out of range: {index!r}")
    return PHASES[index]


def count() -> int:
    return PHASE_COUNT


def templates_for(index: int) -> tuple[ActionTemplate, ...]:
    return phase_at(index).action_templates


def phase_by_key(key: str) -> Phase | None:
    return _BY_KEY.get(key)


def progress_percent(index: int) -> int:
    """Share of the lifecycle completed on entering ``index`` (0, 14, ... 100)."""
    return round(phase_at(index).index / TERMINAL_PHASE * 100)
