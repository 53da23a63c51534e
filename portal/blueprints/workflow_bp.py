"""
Project workflow blueprint.

Endpoints (all under /api/v1/workflow):
  Inbound events:   POST /projects                          project created
                    POST /payments                          payment confirmed
  Read models:      GET  /projects/<pid>                    current phase
                    GET  /projects/<pid>/overview           all phases + progress
                    GET  /projects/<pid>/history            transitions (?limit=&offset=)
                    GET  /projects/<pid>/actions            open actions (?all=1 for every action)
                    GET  /phases                            phase catalog
  Transitions:      POST /projects/<pid>/advance            {override_gate, notes, expected_version}
                    POST /projects/<pid>/rewind             {notes, expected_version}
                    POST /projects/<pid>/jump               {phase_index | phase_key, notes, expected_version}
  Admin settings:   PATCH /projects/<pid>/automation        toggles + stuck threshold
                    PUT  /projects/<pid>/phases/<idx>/requirements
                    POST /projects/<pid>/phases/<idx>/actions
  Client actions:   POST /actions/<aid>/complete
                    POST /actions/<aid>/reopen              admin

Roles are enforced in the services (``ForbiddenError``); only the inbound
event endpoints are restricted at the route.
"""

import logging

from flask import Blueprint, jsonify, request
from sqlalchemy.exc import OperationalError

from portal.auth import current_actor, require_role
from portal.core.exceptions import NotFoundError, ValidationError, WorkflowError
from portal.models import db
from portal.services import action_gate, phase_ledger, transition_engine, workflow_inbound, workflow_queries
from portal.utils.errors import E, api_error
from portal.utils.helpers import parse_bool
from portal.workflow.phases import PHASES, phase_by_key

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflow", __name__, url_prefix="/api/v1/workflow")

_DEFAULT_HISTORY_LIMIT = 50
_MAX_HISTORY_LIMIT = 500


# ── Error handlers ───────────────────────────────────────────────────────────


@workflow_bp.errorhandler(WorkflowError)
def _handle_workflow_error(error: WorkflowError):
    return api_error(error.code, str(error), status=error.status_code, details=error.details)


@workflow_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@workflow_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@workflow_bp.errorhandler(OperationalError)
def _handle_store_unavailable(error: OperationalError):
    db.session.rollback()
    logger.exception("Workflow storage unavailable on %s", request.endpoint)
    return api_error(E.SERVICE_UNAVAILABLE, "Workflow storage is unavailable; try again shortly")


# ── Request helpers ──────────────────────────────────────────────────────────


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _query_int(name, default, *, minimum=0, maximum=None):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be an integer", details={name: raw}) from exc
    value = max(value, minimum)
    if maximum is not None:
        value = min(value, maximum)
    return value


# ═══════════════════════════════════════════════════════════════════════════
# Inbound events
# ═══════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/projects", methods=["POST"])
@require_role("system")
def create_project():
    data = _body()
    entry, created = workflow_inbound.handle_project_created(
        data.get("project_id"),
        actor=current_actor(),
        auto_advance=data.get("auto_advance_enabled"),
        stuck_notifications=data.get("stuck_notifications_enabled"),
        stuck_threshold_days=data.get("stuck_threshold_days"),
    )
    view = workflow_queries.current_phase(entry.project_id)
    view["created"] = created
    return jsonify(view), 201 if created else 200


@workflow_bp.route("/payments", methods=["POST"])
@require_role("system")
def payment_confirmed():
    data = _body()
    outcome = workflow_inbound.handle_payment_confirmed(
        data.get("project_id"), data.get("amount"), data.get("reference"),
    )
    return jsonify(outcome), 200


# ═══════════════════════════════════════════════════════════════════════════
# Read models
# ═══════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/phases", methods=["GET"])
def list_phases():
    return jsonify({"items": [p.to_dict() for p in PHASES], "total": len(PHASES)})


@workflow_bp.route("/projects/<project_id>", methods=["GET"])
def get_current_phase(project_id):
    return jsonify(workflow_queries.current_phase(project_id))


@workflow_bp.route("/projects/<project_id>/overview", methods=["GET"])
def get_overview(project_id):
    return jsonify(workflow_queries.overview(project_id))


@workflow_bp.route("/projects/<project_id>/history", methods=["GET"])
def get_history(project_id):
    limit = _query_int("limit", _DEFAULT_HISTORY_LIMIT, minimum=1, maximum=_MAX_HISTORY_LIMIT)
    offset = _query_int("offset", 0)
    return jsonify(workflow_queries.history(project_id, limit=limit, offset=offset))


@workflow_bp.route("/projects/<project_id>/actions", methods=["GET"])
def get_actions(project_id):
    include_completed = parse_bool(request.args.get("all"))
    return jsonify(workflow_queries.actions(project_id, include_completed=include_completed))


# ═══════════════════════════════════════════════════════════════════════════
# Transitions
# ═══════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/projects/<project_id>/advance", methods=["POST"])
def advance_project(project_id):
    data = _body()
    result = transition_engine.advance(
        project_id,
        current_actor(),
        override_gate=parse_bool(data.get("override_gate")),
        notes=data.get("notes"),
        expected_version=data.get("expected_version"),
    )
    return jsonify(result.to_dict()), 200


@workflow_bp.route("/projects/<project_id>/rewind", methods=["POST"])
def rewind_project(project_id):
    data = _body()
    result = transition_engine.rewind(
        project_id,
        current_actor(),
        notes=data.get("notes"),
        expected_version=data.get("expected_version"),
    )
    return jsonify(result.to_dict()), 200


@workflow_bp.route("/projects/<project_id>/jump", methods=["POST"])
def jump_project(project_id):
    data = _body()
    target = data.get("phase_index")
    if target is None and data.get("phase_key"):
        phase = phase_by_key(str(data["phase_key"]))
        if phase is None:
            raise ValidationError("Unknown phase_key", details={"phase_key": data["phase_key"]})
        target = phase.index
    if target is None:
        raise ValidationError("phase_index or phase_key is required")
    result = transition_engine.jump_to(
        project_id,
        current_actor(),
        target,
        notes=data.get("notes"),
        expected_version=data.get("expected_version"),
    )
    return jsonify(result.to_dict()), 200


# ═══════════════════════════════════════════════════════════════════════════
# Admin settings
# ═══════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/projects/<project_id>/automation", methods=["PATCH"])
def update_automation(project_id):
    data = _body()
    auto_advance = data.get("auto_advance_enabled")
    stuck_notifications = data.get("stuck_notifications_enabled")
    entry = phase_ledger.update_rules(
        project_id,
        current_actor(),
        auto_advance=None if auto_advance is None else parse_bool(auto_advance),
        stuck_notifications=None if stuck_notifications is None else parse_bool(stuck_notifications),
        stuck_threshold_days=data.get("stuck_threshold_days"),
        expected_version=data.get("expected_version"),
    )
    return jsonify(entry.to_dict()), 200


@workflow_bp.route("/projects/<project_id>/phases/<int(signed=True):phase_index>/requirements",
                   methods=["PUT"])
def replace_requirements(project_id, phase_index):
    data = _body()
    actions = action_gate.replace_requirements(
        project_id, phase_index, data.get("actions"), actor=current_actor(),
    )
    return jsonify({"items": [a.to_dict() for a in actions], "total": len(actions)}), 200


@workflow_bp.route("/projects/<project_id>/phases/<int(signed=True):phase_index>/actions",
                   methods=["POST"])
def add_action(project_id, phase_index):
    data = _body()
    action = action_gate.add_action(
        project_id,
        phase_index,
        data.get("description"),
        actor=current_actor(),
        is_required=parse_bool(data.get("is_required"), default=True),
        is_client_facing=parse_bool(data.get("is_client_facing"), default=True),
        requirement_type=data.get("requirement_type"),
        notes=data.get("notes"),
    )
    return jsonify(action.to_dict()), 201


# ═══════════════════════════════════════════════════════════════════════════
# Client actions
# ═══════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/actions/<int:action_id>/complete", methods=["POST"])
def complete_action(action_id):
    data = _body()
    state = action_gate.mark_completed(action_id, current_actor(), notes=data.get("notes"))
    return jsonify(state.to_dict()), 200


@workflow_bp.route("/actions/<int:action_id>/reopen", methods=["POST"])
def reopen_action(action_id):
    action = action_gate.uncomplete_action(action_id, current_actor())
    return jsonify(action.to_dict()), 200
