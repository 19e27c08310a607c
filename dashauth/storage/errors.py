from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StoreUnavailable(Exception):
    """The backing store could not be reached or failed mid-operation.

    Never interpreted as "no session": callers surface it as a server error
    and do not retry.
    """

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        message = f"session store unavailable during {operation}"
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.cause = cause


__all__ = ["ConstraintViolation", "StoreUnavailable"]
