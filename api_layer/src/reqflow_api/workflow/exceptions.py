"""
Workflow Exceptions

Error taxonomy raised by the request workflow service. Every error carries its
taxonomy kind and the HTTP status the API layer maps it to.
"""

from typing import Any
from typing import Dict
from typing import Optional

from reqflow_api.workflow.enums import ErrorKind


class RequestFlowError(Exception):
    """Base class for all workflow errors."""

    kind: ErrorKind = ErrorKind.VALIDATION_ERROR
    http_status: int = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses."""
        body: Dict[str, Any] = {"detail": self.message, "error_type": self.kind.value}
        if self.details:
            body["context"] = self.details
        return body


class NotFoundError(RequestFlowError):
    """Request or user does not exist."""

    kind = ErrorKind.NOT_FOUND
    http_status = 404


class ForbiddenError(RequestFlowError):
    """Actor is not entitled to perform the operation."""

    kind = ErrorKind.FORBIDDEN
    http_status = 403


class InvalidTransitionError(RequestFlowError):
    """Action is not legal for the current request state."""

    kind = ErrorKind.INVALID_TRANSITION
    http_status = 409


class RequestValidationError(RequestFlowError):
    """Malformed payload or inconsistent input."""

    kind = ErrorKind.VALIDATION_ERROR
    http_status = 400


class ConflictError(RequestFlowError):
    """Optimistic-concurrency mismatch or lost claim race. Safe to retry."""

    kind = ErrorKind.CONFLICT
    http_status = 409


ERRORS_BY_KIND = {
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.FORBIDDEN: ForbiddenError,
    ErrorKind.INVALID_TRANSITION: InvalidTransitionError,
    ErrorKind.VALIDATION_ERROR: RequestValidationError,
    ErrorKind.CONFLICT: ConflictError,
}


def error_for_kind(kind: ErrorKind, message: str, details: Optional[Dict[str, Any]] = None) -> RequestFlowError:
    """Build the exception matching a taxonomy kind."""
    return ERRORS_BY_KIND[kind](message, details)
