from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Caller identity missing or not verified (401)."""
    status_code = 401
    error_code = "unauthorized"


class AuthorizationError(ServiceError):
    """The acting participant is not allowed to perform the action (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class NotParticipantError(NotFoundError):
    """Target user has no active membership in the conversation."""
    pass


class ConflictError(ServiceError):
    """Request conflicts with current conversation state (409)."""
    status_code = 409
    error_code = "conflict"


class AlreadyParticipantError(ConflictError):
    """Target user is already an active participant."""
    pass


class InvalidOrExpiredLinkError(ConflictError):
    """Join link is unknown, expired, exhausted or superseded."""
    pass


class OrphanedAdminError(ConflictError):
    """Change would leave a group conversation without an active admin."""
    pass


class InvariantViolation(ServiceError):
    """Internal invariant broken; fatal for the request (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "AuthorizationError",
    "NotFoundError",
    "NotParticipantError",
    "ConflictError",
    "AlreadyParticipantError",
    "InvalidOrExpiredLinkError",
    "OrphanedAdminError",
    "InvariantViolation",
]
