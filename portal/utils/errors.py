"""Standardised API error responses.

Usage
-----
    from portal.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Project not found")
    return api_error(E.GATE_NOT_SATISFIED, str(exc), details=exc.details)
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Must stay in sync with the ``code`` attributes in
    ``portal.core.exceptions``.
    """

    # Validation – HTTP 400 / 422
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Auth – HTTP 401 / 403
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"

    # Request shape – HTTP 405 / 415 / 429
    METHOD_NOT_ALLOWED = "ERR_METHOD_NOT_ALLOWED"
    UNSUPPORTED_MEDIA_TYPE = "ERR_UNSUPPORTED_MEDIA_TYPE"
    RATE_LIMITED = "ERR_RATE_LIMITED"

    # Workflow state – HTTP 409 / 422
    INVALID_PHASE = "ERR_INVALID_PHASE"
    AT_TERMINAL_PHASE = "ERR_AT_TERMINAL_PHASE"
    AT_INITIAL_PHASE = "ERR_AT_INITIAL_PHASE"
    GATE_NOT_SATISFIED = "ERR_GATE_NOT_SATISFIED"
    CONCURRENT_MODIFICATION = "ERR_CONCURRENT_MODIFICATION"

    # Server – HTTP 500 / 503
    SERVICE_UNAVAILABLE = "ERR_SERVICE_UNAVAILABLE"
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.NOT_FOUND: 404,
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.METHOD_NOT_ALLOWED: 405,
    E.UNSUPPORTED_MEDIA_TYPE: 415,
    E.RATE_LIMITED: 429,
    E.INVALID_PHASE: 422,
    E.AT_TERMINAL_PHASE: 409,
    E.AT_INITIAL_PHASE: 409,
    E.GATE_NOT_SATISFIED: 409,
    E.CONCURRENT_MODIFICATION: 409,
    E.SERVICE_UNAVAILABLE: 503,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """``(jsonify(body), status)`` with body ``{"error", "code"[, "details"]}``.

    Status defaults from the code (``_DEFAULT_STATUS``), else 400; views pass
    ``status=`` only where one code serves several statuses.
    """
    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
