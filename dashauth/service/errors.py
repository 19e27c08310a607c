from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines an HTTP ``status_code`` and a stable ``error_code``
    from the envelope vocabulary:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
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
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class MissingCredentials(ValidationError):
    """Login request lacked an identifier or a secret."""

    reason = "missing_credentials"

    def __init__(self, message: str = "email and password are required") -> None:
        super().__init__(message, detail={"reason": self.reason})


class InvalidCredentials(AuthenticationError):
    """Either principal lookup failed or the secret did not match."""

    reason = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password") -> None:
        super().__init__(message, detail={"reason": self.reason})


class SessionError(AuthenticationError):
    """A presented session token cannot be honoured.

    The HTTP layer clears both session cookies whenever one of these escapes.
    ``recoverable`` marks reasons the client may answer with one recovery call.
    """

    reason = "invalid_session"
    recoverable = False
    default_message = "invalid session"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message, detail={"reason": self.reason})


class NoToken(SessionError):
    reason = "no_token"
    default_message = "no session token"


class InvalidSession(SessionError):
    reason = "invalid_session"
    recoverable = True
    default_message = "invalid session"


class ExpiredSession(SessionError):
    reason = "expired_session"
    recoverable = True
    default_message = "session expired"


class OwnerMissing(SessionError):
    """The session's principal was deleted; handled exactly like expiry."""

    reason = "owner_missing"
    default_message = "session owner no longer exists"


class RecoveryExhausted(SessionError):
    reason = "recovery_exhausted"
    default_message = "please log in again"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "ConflictError",
    "RateLimitedError",
    "MissingCredentials",
    "InvalidCredentials",
    "SessionError",
    "NoToken",
    "InvalidSession",
    "ExpiredSession",
    "OwnerMissing",
    "RecoveryExhausted",
]
