"""Tests for credential verification across the user and employee tables."""

import pytest

from dashauth.service.credentials import (
    AuthFailure,
    AuthFailureReason,
    CredentialVerifier,
    normalize_identifier,
)
from dashauth.storage.memory import MemoryStore


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def verifier(store, fast_hasher):
    return CredentialVerifier(store, hasher=fast_hasher)


class TestVerify:
    def test_user_credentials_match(self, store, verifier):
        user = store.create_user("Ada", "ada@example.com", verifier.hash_secret("pw-user-1"))

        principal = verifier.verify("ada@example.com", "pw-user-1")

        assert principal.id == user.id
        assert principal.kind.value == "user"

    def test_employee_credentials_match(self, store, verifier):
        employee = store.create_employee(
            "Eve", "eve@example.com", verifier.hash_secret("pw-emp-1")
        )

        principal = verifier.verify("eve@example.com", "pw-emp-1")

        assert principal.id == employee.id
        assert principal.kind.value == "employee"

    def test_identifier_is_case_and_whitespace_insensitive(self, store, verifier):
        store.create_user("Ada", "ada@example.com", verifier.hash_secret("pw-user-1"))

        principal = verifier.verify("  ADA@Example.com ", "pw-user-1")

        assert principal.email == "ada@example.com"

    def test_unknown_identifier_is_not_found(self, verifier):
        with pytest.raises(AuthFailure) as exc_info:
            verifier.verify("nobody@example.com", "whatever")

        assert exc_info.value.reason is AuthFailureReason.NOT_FOUND

    def test_wrong_secret_is_bad_secret(self, store, verifier):
        store.create_user("Ada", "ada@example.com", verifier.hash_secret("pw-user-1"))

        with pytest.raises(AuthFailure) as exc_info:
            verifier.verify("ada@example.com", "wrong")

        assert exc_info.value.reason is AuthFailureReason.BAD_SECRET

    def test_user_shadows_employee_with_same_email(self, store, verifier):
        """A user match short-circuits the lookup even when its secret is wrong."""
        store.create_user("Ada", "shared@example.com", verifier.hash_secret("user-pw"))
        store.create_employee("Ada", "shared@example.com", verifier.hash_secret("emp-pw"))

        with pytest.raises(AuthFailure) as exc_info:
            verifier.verify("shared@example.com", "emp-pw")

        assert exc_info.value.reason is AuthFailureReason.BAD_SECRET

    def test_employee_without_secret_cannot_log_in(self, store, verifier):
        store.create_employee("Eve", "eve@example.com", None)

        with pytest.raises(AuthFailure) as exc_info:
            verifier.verify("eve@example.com", "")

        assert exc_info.value.reason is AuthFailureReason.BAD_SECRET

    def test_unreadable_stored_hash_is_a_mismatch(self, store, verifier):
        store.create_user("Ada", "ada@example.com", "not-an-argon2-hash")

        with pytest.raises(AuthFailure) as exc_info:
            verifier.verify("ada@example.com", "anything")

        assert exc_info.value.reason is AuthFailureReason.BAD_SECRET


class TestHashing:
    def test_hashes_are_salted(self, verifier):
        first = verifier.hash_secret("same-secret")
        second = verifier.hash_secret("same-secret")

        assert first != second
        assert first.startswith("$argon2id$")

    def test_normalize_identifier(self):
        assert normalize_identifier("  Mixed@Case.COM ") == "mixed@case.com"
