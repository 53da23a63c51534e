"""
Request timing middleware.

Every response carries X-Request-ID and X-Request-Duration-Ms.  Workflow
commands (state-changing calls under /api/v1/workflow) are logged at INFO
with the acting role so the log doubles as a trail of who pushed which
project; everything else is DEBUG unless slow or failing.

Slow threshold: SLOW_REQUEST_MS (app config, default 1000).
"""

import logging
import time
import uuid

from flask import Flask, current_app, g, request

logger = logging.getLogger(__name__)

# Probes hit every few seconds
_SKIP_LOG = frozenset({"/api/v1/health/ready", "/api/v1/health/live"})

_WORKFLOW_PREFIX = "/api/v1/workflow/"
_COMMAND_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def init_request_timing(app: Flask):
    """Register before/after hooks for request timing."""

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _log_request(response):
        start = getattr(g, "request_start", None)
        if start is None:
            return response

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = g.request_id
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"

        if request.path in _SKIP_LOG:
            return response

        extra = _request_fields(response.status_code, duration_ms)
        summary = (request.method, request.path, response.status_code, duration_ms)
        slow_ms = current_app.config.get("SLOW_REQUEST_MS", 1000)

        if response.status_code >= 500:
            logger.error("Server error: %s %s %d (%.0fms)", *summary, extra=extra)
        elif duration_ms > slow_ms:
            logger.warning("Slow request: %s %s %d (%.0fms)", *summary, extra=extra)
        elif _is_workflow_command():
            logger.info("Workflow command: %s %s %d by %s (%.0fms)",
                        request.method, request.path, response.status_code,
                        extra["actor_role"] or "anonymous", duration_ms, extra=extra)
        else:
            logger.debug("Request: %s %s %d (%.0fms)", *summary, extra=extra)

        return response


def _is_workflow_command() -> bool:
    return request.method in _COMMAND_METHODS and request.path.startswith(_WORKFLOW_PREFIX)


def _request_fields(status: int, duration_ms: float) -> dict:
    return {
        "method": request.method,
        "path": request.path,
        "status": status,
        "duration_ms": duration_ms,
        "remote_addr": request.remote_addr,
        "request_id": getattr(g, "request_id", ""),
        "project_id": _extract_project_id(),
        "actor_role": getattr(g, "current_user_role", None),
        "actor_id": getattr(g, "current_actor_id", None),
    }


def _extract_project_id() -> str | None:
    """Project from the URL, the query string or an inbound-event body."""
    project_id = (request.view_args or {}).get("project_id") or request.args.get("project_id")
    if project_id is None and request.is_json:
        payload = request.get_json(silent=True)
        if isinstance(payload, dict):
            project_id = payload.get("project_id")
    return str(project_id) if project_id is not None else None
