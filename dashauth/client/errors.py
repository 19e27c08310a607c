from __future__ import annotations

from typing import Optional

RECOVERABLE_REASONS = frozenset({"invalid_session", "expired_session"})


class SessionClientError(Exception):
    """Base class for failures surfaced by the session client."""


class SessionRejected(SessionClientError):
    """The server answered 4xx to a session call."""

    def __init__(self, status_code: int, reason: Optional[str], message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason
        self.message = message

    @property
    def recoverable(self) -> bool:
        return self.reason in RECOVERABLE_REASONS


class ReauthenticationRequired(SessionClientError):
    """Validation failed again after the one allowed recovery; log in again."""

    def __init__(self, reason: Optional[str] = None) -> None:
        super().__init__("please log in again")
        self.reason = reason


class ServerUnavailable(SessionClientError):
    """The server or its store is down; never answered by recovery."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
