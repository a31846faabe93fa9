from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - rate_limited (429)
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


class AuthFailure(str, Enum):
    """Why an authentication attempt or an authenticated call was refused."""

    INVALID_CREDENTIALS = "invalid-credentials"
    INACTIVE = "inactive"
    TOKEN_MISSING = "missing"
    TOKEN_INVALID = "invalid"
    TOKEN_EXPIRED = "expired"
    SESSION_INVALIDATED = "session-invalidated"
    PASSWORD_CHANGED = "password-changed"


INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"

_AUTH_FAILURE_MESSAGES = {
    AuthFailure.INVALID_CREDENTIALS: INVALID_CREDENTIALS_MESSAGE,
    AuthFailure.INACTIVE: "Account is deactivated",
    AuthFailure.TOKEN_MISSING: "Authentication required",
    AuthFailure.TOKEN_INVALID: "Invalid token",
    AuthFailure.TOKEN_EXPIRED: "Token expired",
    AuthFailure.SESSION_INVALIDATED: "Session is no longer valid, please log in again",
    AuthFailure.PASSWORD_CHANGED: "Password was changed, please log in again",
}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(
        self,
        reason: AuthFailure = AuthFailure.TOKEN_INVALID,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
    ) -> None:
        self.reason = reason
        merged = {"reason": reason.value}
        merged.update(detail or {})
        super().__init__(message or _AUTH_FAILURE_MESSAGES[reason], detail=merged)


class AccountLockedError(ServiceError):
    """Account is temporarily locked after repeated failures (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, lock_until: datetime, message: Optional[str] = None) -> None:
        self.lock_until = lock_until
        super().__init__(
            message or "Account is temporarily locked due to too many failed login attempts",
            detail={"lock_until": lock_until.isoformat()},
        )


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, detail: Optional[dict] = None) -> None:
        self.retry_after = retry_after
        merged = {"retry_after": retry_after}
        merged.update(detail or {})
        super().__init__(message, detail=merged)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class EmailDeliveryError(ServerError):
    """The email transport refused or failed to deliver a message."""


__all__ = [
    "INVALID_CREDENTIALS_MESSAGE",
    "AccountLockedError",
    "AuthFailure",
    "AuthenticationError",
    "ConflictError",
    "EmailDeliveryError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
    "ServiceError",
    "ValidationError",
]
