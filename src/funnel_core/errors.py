"""Domain errors raised by the funnel core.

Each error carries a stable ``code`` that clients switch on and the HTTP
status the server maps it to.  ``details`` holds structured, client-safe
context (e.g. the list of missing questions); anything sensitive belongs
in the log line, not here.
"""

from __future__ import annotations

from typing import Any


class FunnelError(Exception):
    """Base class for every expected failure of a funnel operation."""

    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "Internal server error"

    def __init__(
        self,
        message: str | None = None,
        *,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class AuthenticationRequiredError(FunnelError):
    code = "AUTHENTICATION_REQUIRED"
    status_code = 401
    default_message = "Authentication required"


class ForbiddenError(FunnelError):
    """Ownership violations, step skipping and cross-funnel step access."""

    code = "FORBIDDEN"
    status_code = 403
    default_message = "Access denied"


class NotFoundError(FunnelError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Resource not found"


class ValidationFailedError(FunnelError):
    """Malformed input (400) or missing required answers (422)."""

    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Invalid request"

    def __init__(
        self,
        message: str | None = None,
        *,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, details=details)
        if status_code is not None:
            self.status_code = status_code


class AlreadyCompletedError(FunnelError):
    code = "ALREADY_COMPLETED"
    status_code = 409
    default_message = "Assessment is already completed"


class PayloadConflictError(FunnelError):
    code = "PAYLOAD_CONFLICT"
    status_code = 409
    default_message = "Idempotency key was already used with a different request"


class IdempotencyInProgressError(FunnelError):
    """A concurrent request holding the same key has not finished yet."""

    code = "IDEMPOTENCY_IN_PROGRESS"
    status_code = 409
    default_message = "A request with this idempotency key is still being processed"
