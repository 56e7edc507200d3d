"""
Platform-wide exception hierarchy for the intervention workflow engine.

Services raise these types; blueprints register one handler against
``WorkflowError`` and get consistent result codes and HTTP statuses.

Usage:
    from propworks.core.exceptions import NotFoundError, InvalidStateError

    raise NotFoundError(resource="Quote", resource_id=42)
    raise InvalidStateError("Cannot reject intervention 7 (status=approved)")
"""

from enum import Enum


class ResultCode(str, Enum):
    """Collaborator-facing result codes, mapped to HTTP by the blueprint layer."""

    SUCCESS = "success"
    VALIDATION_FAILED = "validation_failed"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    INTERNAL_ERROR = "internal_error"


class WorkflowError(Exception):
    """Base class: carries the result code and default HTTP status."""

    code = ResultCode.INTERNAL_ERROR
    http_status = 500

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(WorkflowError):
    """Malformed input: missing fields, blank reasons, unknown status strings.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names.
    """

    code = ResultCode.VALIDATION_FAILED
    http_status = 400


class AuthError(WorkflowError):
    """No actor, or the actor could not be identified."""

    code = ResultCode.UNAUTHORIZED
    http_status = 401

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class ForbiddenError(WorkflowError):
    """The actor lacks the role or ownership the operation requires."""

    code = ResultCode.FORBIDDEN
    http_status = 403

    def __init__(self, message: str = "Access denied", details: dict | None = None) -> None:
        super().__init__(message, details)


class NotFoundError(WorkflowError):
    """Raised when a requested entity does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Intervention", "Quote").
        resource_id: The PK that was looked up.
        reason: Optional override for the message tail.
    """

    code = ResultCode.NOT_FOUND
    http_status = 404

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        reason: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += f" {reason}" if reason else " not found"
        super().__init__(msg)


class InvalidStateError(WorkflowError):
    """The current status does not permit the requested transition.

    Also raised when a conditional write matched no row because a concurrent
    request changed the status first.
    """

    code = ResultCode.INVALID_STATE
    http_status = 409

    def __init__(
        self,
        message: str,
        *,
        current_status: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.current_status = current_status
        super().__init__(message, details)


class InternalError(WorkflowError):
    """Unexpected failure in the repository or a collaborator."""

    code = ResultCode.INTERNAL_ERROR
    http_status = 500
