"""
Platform-wide exception hierarchy.

Services raise these; blueprints register handlers against them once and get
consistent HTTP status codes everywhere.  Every workflow error is an expected,
recoverable condition that is surfaced to the caller as a user-visible
message.

Usage:
    from portal.core.exceptions import NotFoundError, GateNotSatisfiedError

    raise NotFoundError(resource="ClientAction", resource_id=42)
    raise GateNotSatisfiedError(project_id="p-1", phase_index=2, pending=[...])
"""


class NotFoundError(Exception):
    """Raised when a requested project ledger or client action does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Project", "ClientAction").
        resource_id: The key that was looked up.
    """

    status_code = 404
    code = "ERR_NOT_FOUND"

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    status_code = 422
    code = "ERR_VALIDATION_INVALID"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


# ── Workflow engine errors ───────────────────────────────────────────────────


class WorkflowError(Exception):
    """Base class for phase workflow failures.

    Subclasses fix ``status_code`` and ``code``; ``details`` carries the
    structured payload returned to the UI.
    """

    status_code = 400
    code = "ERR_WORKFLOW"
    retryable = False

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidPhaseIndexError(WorkflowError):
    status_code = 422
    code = "ERR_INVALID_PHASE"

    def __init__(self, phase_index, reason: str | None = None) -> None:
        self.phase_index = phase_index
        msg = f"Invalid phase index {phase_index!r}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, details={"phase_index": phase_index})


class AtTerminalPhaseError(WorkflowError):
    status_code = 409
    code = "ERR_AT_TERMINAL_PHASE"

    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        super().__init__(
            f"Project {project_id} is already in the final phase",
            details={"project_id": project_id},
        )


class AtInitialPhaseError(WorkflowError):
    status_code = 409
    code = "ERR_AT_INITIAL_PHASE"

    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        super().__init__(
            f"Project {project_id} is already in the first phase",
            details={"project_id": project_id},
        )


class GateNotSatisfiedError(WorkflowError):
    """Required actions of the current phase are still open."""

    status_code = 409
    code = "ERR_GATE_NOT_SATISFIED"

    def __init__(self, project_id: str, phase_index: int, pending: list[dict] | None = None) -> None:
        self.project_id = project_id
        self.phase_index = phase_index
        self.pending = pending or []
        super().__init__(
            f"{len(self.pending)} required action(s) still pending in phase {phase_index}",
            details={
                "project_id": project_id,
                "phase_index": phase_index,
                "pending_actions": self.pending,
            },
        )


class ForbiddenError(WorkflowError):
    """Actor's role does not allow the operation (e.g. a client rewinding)."""

    status_code = 403
    code = "ERR_FORBIDDEN"


class ConcurrentModificationError(WorkflowError):
    """Another transition on the same project committed first.

    Safe to retry: the losing attempt left no trace.
    """

    status_code = 409
    code = "ERR_CONCURRENT_MODIFICATION"
    retryable = True

    def __init__(self, project_id: str, message: str | None = None) -> None:
        self.project_id = project_id
        super().__init__(
            message or f"Project {project_id} was modified concurrently; reload and retry",
            details={"project_id": project_id, "retryable": True},
        )


class ServiceUnavailableError(WorkflowError):
    """The persistence collaborator could not be reached."""

    status_code = 503
    code = "ERR_SERVICE_UNAVAILABLE"
