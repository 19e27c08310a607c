"""Session lifecycle tests: login, validate, logout and one-shot recovery.

Runs the coordinator over the in-memory store with a manually advanced
clock, so expiry and sliding can be asserted to the second.
"""

from datetime import timedelta

import pytest

from dashauth.service.credentials import CredentialVerifier
from dashauth.service.errors import (
    ConflictError,
    ExpiredSession,
    InvalidCredentials,
    InvalidSession,
    MissingCredentials,
    NoToken,
    OwnerMissing,
    RecoveryExhausted,
)
from dashauth.service.identity import IdentityResolver
from dashauth.service.sessions import SessionCoordinator
from dashauth.storage.errors import StoreUnavailable
from dashauth.storage.memory import MemoryStore
from dashauth.storage.models import OwnerKind

SESSION_TTL = 30 * 24 * 60 * 60
RECOVERY_TTL = 300
RECOVERY_WINDOW = 900


@pytest.fixture
def store(clock):
    return MemoryStore(clock=clock)


@pytest.fixture
def verifier(store, fast_hasher):
    return CredentialVerifier(store, hasher=fast_hasher)


@pytest.fixture
def coordinator(store, verifier, clock):
    return SessionCoordinator(
        store,
        None,
        verifier,
        IdentityResolver(store),
        session_ttl_seconds=SESSION_TTL,
        recovery_ttl_seconds=RECOVERY_TTL,
        recovery_window_seconds=RECOVERY_WINDOW,
        clock=clock,
    )


@pytest.fixture
def user(store, verifier):
    return store.create_user("Ada", "ada@example.com", verifier.hash_secret("user-secret"))


@pytest.fixture
def employee(store, verifier):
    dept = store.create_department("Operations")
    return store.create_employee(
        "Eve",
        "a@x.com",
        verifier.hash_secret("p1"),
        department_id=dept.id,
        position="supervisor",
    )


class TestLogin:
    async def test_user_login_creates_session(self, coordinator, store, user, clock):
        outcome = await coordinator.login("ada@example.com", "user-secret")

        assert outcome.owner_kind is OwnerKind.USER
        assert outcome.profile.id == user.id
        assert outcome.max_age == SESSION_TTL
        assert outcome.session.expires_at == clock.now + timedelta(seconds=SESSION_TTL)
        assert store.get_session(outcome.session.token) is not None

    async def test_employee_login_then_validate_then_expire(
        self, coordinator, store, employee, clock
    ):
        """Employee-only credentials log in, validate, and expire cleanly."""
        outcome = await coordinator.login("a@x.com", "p1")
        assert outcome.owner_kind is OwnerKind.EMPLOYEE
        assert outcome.profile.department_name == "Operations"

        clock.advance(hours=1)
        validated = await coordinator.validate(outcome.session.token)
        assert validated.profile.id == employee.id
        assert validated.session.expires_at > outcome.session.expires_at

        clock.advance(seconds=SESSION_TTL + 1)
        with pytest.raises(ExpiredSession) as exc_info:
            await coordinator.validate(outcome.session.token)
        assert exc_info.value.detail == {"reason": "expired_session"}
        assert store.get_session(outcome.session.token) is None

    @pytest.mark.parametrize(
        "identifier,secret",
        [(None, "pw"), ("", "pw"), ("   ", "pw"), ("ada@example.com", None), ("ada@example.com", "")],
    )
    async def test_missing_fields(self, coordinator, identifier, secret):
        with pytest.raises(MissingCredentials):
            await coordinator.login(identifier, secret)

    async def test_unknown_and_wrong_secret_look_identical(self, coordinator, user):
        with pytest.raises(InvalidCredentials) as unknown:
            await coordinator.login("nobody@example.com", "user-secret")
        with pytest.raises(InvalidCredentials) as wrong:
            await coordinator.login("ada@example.com", "nope")

        assert unknown.value.message == wrong.value.message == "invalid email or password"
        assert unknown.value.detail == wrong.value.detail

    async def test_login_evicts_previous_session(self, coordinator, store, user):
        first = await coordinator.login("ada@example.com", "user-secret")
        second = await coordinator.login("ada@example.com", "user-secret")

        assert first.session.token != second.session.token
        assert store.get_session(first.session.token) is None
        with pytest.raises(InvalidSession):
            await coordinator.validate(first.session.token)


class TestValidate:
    async def test_no_token(self, coordinator):
        with pytest.raises(NoToken):
            await coordinator.validate(None)

    async def test_unknown_token(self, coordinator):
        with pytest.raises(InvalidSession):
            await coordinator.validate("never-issued")

    async def test_sliding_expiration(self, coordinator, user, clock):
        """Validating every 20 days keeps a 30-day session alive indefinitely."""
        outcome = await coordinator.login("ada@example.com", "user-secret")

        for _ in range(4):
            clock.advance(days=20)
            refreshed = await coordinator.validate(outcome.session.token)
            assert refreshed.session.expires_at == clock.now + timedelta(seconds=SESSION_TTL)
            assert refreshed.session.token == outcome.session.token

    async def test_expiry_is_monotonic(self, coordinator, user, clock):
        outcome = await coordinator.login("ada@example.com", "user-secret")
        clock.advance(seconds=SESSION_TTL + 1)

        with pytest.raises(ExpiredSession):
            await coordinator.validate(outcome.session.token)
        # Once purged, the token is gone for good
        with pytest.raises(InvalidSession):
            await coordinator.validate(outcome.session.token)

    async def test_validate_converges_duplicate_sessions(self, coordinator, store, user):
        """A transient second session from a login race is evicted on the next validate."""
        kept = store.create_session(user.id, OwnerKind.USER, timedelta(days=30))
        stray = store.create_session(user.id, OwnerKind.USER, timedelta(days=30))

        await coordinator.validate(kept.token)

        assert store.get_session(stray.token) is None
        remaining = store.list_sessions_for_owner(user.id, OwnerKind.USER)
        assert [sess.token for sess in remaining] == [kept.token]

    async def test_owner_kind_isolation(self, coordinator, store, user):
        """Sessions of an employee sharing the user's id survive the user's login."""
        employee_sess = store.create_session(user.id, OwnerKind.EMPLOYEE, timedelta(days=30))

        await coordinator.login("ada@example.com", "user-secret")

        assert store.get_session(employee_sess.token) is not None
        with pytest.raises(OwnerMissing):
            await coordinator.validate(employee_sess.token)

    async def test_deleted_owner_invalidates_session(self, coordinator, store, user):
        outcome = await coordinator.login("ada@example.com", "user-secret")
        store.delete_user(user.id)

        with pytest.raises(OwnerMissing):
            await coordinator.validate(outcome.session.token)

        assert store.get_session(outcome.session.token) is None
        with pytest.raises(InvalidSession):
            await coordinator.recover(outcome.session.token)

    async def test_store_failure_is_not_anonymous(self, coordinator, store, user, monkeypatch):
        outcome = await coordinator.login("ada@example.com", "user-secret")

        def _down(token):
            raise StoreUnavailable("get_session")

        monkeypatch.setattr(store, "get_session", _down)

        with pytest.raises(StoreUnavailable):
            await coordinator.validate(outcome.session.token)


class TestLogout:
    async def test_logout_is_idempotent(self, coordinator, store, user):
        outcome = await coordinator.login("ada@example.com", "user-secret")

        await coordinator.logout(outcome.session.token)
        await coordinator.logout(outcome.session.token)
        await coordinator.logout(None)

        assert store.get_session(outcome.session.token) is None

    async def test_logout_swallows_store_failure(self, coordinator, store, monkeypatch):
        def _down(token):
            raise StoreUnavailable("delete_session")

        monkeypatch.setattr(store, "delete_session", _down)

        await coordinator.logout("any-token")

    async def test_validate_after_logout_is_invalid(self, coordinator, user):
        outcome = await coordinator.login("ada@example.com", "user-secret")
        await coordinator.logout(outcome.session.token)

        with pytest.raises(InvalidSession):
            await coordinator.validate(outcome.session.token)


class TestRecovery:
    async def _expire(self, coordinator, clock, token):
        clock.advance(seconds=SESSION_TTL + 1)
        with pytest.raises(ExpiredSession):
            await coordinator.validate(token)

    async def test_no_token(self, coordinator):
        with pytest.raises(NoToken):
            await coordinator.recover(None)

    async def test_recovers_same_token_with_short_ttl(self, coordinator, store, user, clock):
        outcome = await coordinator.login("ada@example.com", "user-secret")
        token = outcome.session.token
        await self._expire(coordinator, clock, token)

        recovered = await coordinator.recover(token, OwnerKind.USER)

        assert recovered.recovery_attempted is True
        assert recovered.recovered is True
        assert recovered.session.token == token
        assert recovered.max_age == RECOVERY_TTL
        assert recovered.session.expires_at == clock.now + timedelta(seconds=RECOVERY_TTL)
        assert store.get_session(token).recovered is True

    async def test_recovered_session_does_not_slide(self, coordinator, user, clock):
        outcome = await coordinator.login("ada@example.com", "user-secret")
        token = outcome.session.token
        await self._expire(coordinator, clock, token)
        recovered = await coordinator.recover(token)

        clock.advance(seconds=100)
        validated = await coordinator.validate(token)

        assert validated.session.expires_at == recovered.session.expires_at
        assert validated.max_age == RECOVERY_TTL - 100

    async def test_recovery_is_bounded(self, coordinator, store, user, clock):
        """A second failure after a recovery forces re-login."""
        outcome = await coordinator.login("ada@example.com", "user-secret")
        token = outcome.session.token
        await self._expire(coordinator, clock, token)
        await coordinator.recover(token)

        clock.advance(seconds=RECOVERY_TTL + 1)
        with pytest.raises(ExpiredSession):
            await coordinator.validate(token)
        with pytest.raises(RecoveryExhausted) as exc_info:
            await coordinator.recover(token)

        assert exc_info.value.message == "please log in again"
        assert store.get_session(token) is None

    async def test_two_tabs_recovering_together_keep_the_session(
        self, coordinator, store, user, clock
    ):
        """Both tabs see the expiry; the slower recover call must not undo the first."""
        outcome = await coordinator.login("ada@example.com", "user-secret")
        token = outcome.session.token
        await self._expire(coordinator, clock, token)
        with pytest.raises(InvalidSession):
            await coordinator.validate(token)

        first = await coordinator.recover(token)
        second = await coordinator.recover(token)

        assert first.recovery_attempted is True
        assert second.recovery_attempted is False
        assert second.recovered is True
        assert second.session.expires_at == first.session.expires_at
        assert store.get_session(token) is not None
        validated = await coordinator.validate(token)
        assert validated.recovered is True

    async def test_live_session_is_a_noop(self, coordinator, user):
        outcome = await coordinator.login("ada@example.com", "user-secret")

        result = await coordinator.recover(outcome.session.token)

        assert result.recovery_attempted is False
        assert result.session.expires_at == outcome.session.expires_at

    async def test_logged_out_token_is_not_recoverable(self, coordinator, user):
        outcome = await coordinator.login("ada@example.com", "user-secret")
        await coordinator.logout(outcome.session.token)

        with pytest.raises(InvalidSession):
            await coordinator.recover(outcome.session.token)

    async def test_evicted_token_is_not_recoverable(self, coordinator, user):
        first = await coordinator.login("ada@example.com", "user-secret")
        await coordinator.login("ada@example.com", "user-secret")

        with pytest.raises(InvalidSession):
            await coordinator.recover(first.session.token)

    async def test_kind_mismatch_does_not_spend_recovery(self, coordinator, employee, clock):
        outcome = await coordinator.login("a@x.com", "p1")
        token = outcome.session.token
        await self._expire(coordinator, clock, token)

        with pytest.raises(InvalidSession):
            await coordinator.recover(token, OwnerKind.USER)

        recovered = await coordinator.recover(token, OwnerKind.EMPLOYEE)
        assert recovered.owner_kind is OwnerKind.EMPLOYEE

    async def test_window_closes(self, coordinator, user, clock):
        outcome = await coordinator.login("ada@example.com", "user-secret")
        token = outcome.session.token
        await self._expire(coordinator, clock, token)

        clock.advance(seconds=RECOVERY_WINDOW + 1)
        with pytest.raises(InvalidSession):
            await coordinator.recover(token)

    async def test_cleanup_drops_stale_recovery_state(self, coordinator, user, clock):
        outcome = await coordinator.login("ada@example.com", "user-secret")
        await self._expire(coordinator, clock, outcome.session.token)

        clock.advance(seconds=RECOVERY_WINDOW + 1)

        assert coordinator.cleanup_expired_states() == 1


class TestRegisterAndInspect:
    async def test_register_logs_in(self, coordinator, store):
        outcome = await coordinator.register("New Person", "new@example.com", "long-enough-pw")

        assert outcome.owner_kind is OwnerKind.USER
        assert store.get_user_by_email("new@example.com") is not None

    async def test_register_rejects_employee_email(self, coordinator, employee):
        with pytest.raises(ConflictError):
            await coordinator.register("Someone", "A@X.com", "long-enough-pw")

    async def test_inspect_does_not_slide_or_purge(self, coordinator, store, user, clock):
        outcome = await coordinator.login("ada@example.com", "user-secret")
        clock.advance(days=1)

        inspected = coordinator.inspect(outcome.session.token)
        assert inspected.session.expires_at == outcome.session.expires_at

        clock.advance(seconds=SESSION_TTL)
        assert coordinator.inspect(outcome.session.token) is None
        assert store.get_session(outcome.session.token) is not None
