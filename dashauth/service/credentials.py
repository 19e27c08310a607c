from __future__ import annotations

import secrets
from enum import Enum
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from dashauth.logging import get_logger
from dashauth.storage.models import EmployeePrincipal, Principal, UserPrincipal

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[UserPrincipal]: ...

    def get_employee_by_email(self, email: str) -> Optional[EmployeePrincipal]: ...


class AuthFailureReason(str, Enum):
    NOT_FOUND = "not_found"
    BAD_SECRET = "bad_secret"


class AuthFailure(Exception):
    """Internal verification outcome; never shown to clients as-is."""

    def __init__(self, reason: AuthFailureReason) -> None:
        super().__init__(reason.value)
        self.reason = reason


def normalize_identifier(identifier: str) -> str:
    return identifier.strip().lower()


class CredentialVerifier:
    """Checks an identifier/secret pair against both principal tables.

    Users are consulted first. If a user exists with that identifier, the
    employee table is not consulted even when the secret is wrong.
    """

    def __init__(
        self, store: CredentialStore, *, hasher: Optional[PasswordHasher] = None
    ) -> None:
        self.store = store
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against when no principal matches so both failure paths cost the same
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    def hash_secret(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def _burn(self, secret: str) -> None:
        try:
            self._hasher.verify(self._dummy_hash, secret)
        except VerificationError:
            pass

    def _matches(self, stored_hash: Optional[str], secret: str) -> bool:
        if not stored_hash:
            self._burn(secret)
            return False
        try:
            return self._hasher.verify(stored_hash, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("secret_hash_unreadable")
            return False

    def _lookup(self, identifier: str) -> Optional[Principal]:
        user = self.store.get_user_by_email(identifier)
        if user is not None:
            return user
        return self.store.get_employee_by_email(identifier)

    def verify(self, identifier: str, secret: str) -> Principal:
        """Return the matching principal or raise AuthFailure."""
        normalized = normalize_identifier(identifier)
        principal = self._lookup(normalized)
        if principal is None:
            self._burn(secret)
            logger.info("credential_verification_failed", reason=AuthFailureReason.NOT_FOUND.value)
            raise AuthFailure(AuthFailureReason.NOT_FOUND)
        if not self._matches(principal.secret_hash, secret):
            logger.info(
                "credential_verification_failed",
                reason=AuthFailureReason.BAD_SECRET.value,
                owner_kind=principal.kind.value,
                owner_id=principal.id,
            )
            raise AuthFailure(AuthFailureReason.BAD_SECRET)
        return principal
