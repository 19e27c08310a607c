"""Session lifecycle: login, validate, logout, register and one-shot recovery.

The coordinator is the only component that moves a client between
``Anonymous`` and ``Authenticated``. It talks to the store synchronously and
to the optional Redis cache asynchronously; without Redis, the recovery
tombstones and ledger live in lock-protected dictionaries on the instance.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol, Tuple

from dashauth.logging import get_logger, token_prefix
from dashauth.service.credentials import AuthFailure, CredentialVerifier, normalize_identifier
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
from dashauth.storage.errors import ConstraintViolation
from dashauth.storage.models import (
    EmployeePrincipal,
    OwnerKind,
    PublicProfile,
    Session,
    UserPrincipal,
    utcnow,
)
from dashauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(
        self,
        owner_id: str,
        owner_kind: OwnerKind,
        ttl: timedelta,
        *,
        token: Optional[str] = None,
        recovered: bool = False,
    ) -> Session: ...

    def replace_owner_session(
        self, owner_id: str, owner_kind: OwnerKind, ttl: timedelta
    ) -> Session: ...

    def evict_all_for_owner(
        self, owner_id: str, owner_kind: OwnerKind, *, keep_token: Optional[str] = None
    ) -> int: ...

    def get_session(self, token: str) -> Optional[Session]: ...

    def touch_session(self, token: str, ttl: timedelta) -> Optional[Session]: ...

    def delete_session(self, token: str) -> bool: ...

    def purge_expired(self, token: str) -> bool: ...

    def count_active_sessions(self) -> int: ...

    def create_user(
        self, name: str, email: str, secret_hash: str, *, role: str = "user"
    ) -> UserPrincipal: ...

    def get_user_by_email(self, email: str) -> Optional[UserPrincipal]: ...

    def get_employee_by_email(self, email: str) -> Optional[EmployeePrincipal]: ...


@dataclass
class SessionOutcome:
    session: Session
    profile: PublicProfile
    max_age: int
    recovered: bool = False
    recovery_attempted: bool = False

    @property
    def owner_kind(self) -> OwnerKind:
        return self.session.owner_kind


class SessionCoordinator:
    """Drives the session state machine on top of a store and an optional cache."""

    def __init__(
        self,
        store: SessionStore,
        cache: Optional[RedisCache],
        verifier: CredentialVerifier,
        resolver: IdentityResolver,
        *,
        session_ttl_seconds: int,
        recovery_ttl_seconds: int,
        recovery_window_seconds: int,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.verifier = verifier
        self.resolver = resolver
        self.session_ttl = timedelta(seconds=session_ttl_seconds)
        self.recovery_ttl = timedelta(seconds=recovery_ttl_seconds)
        self.recovery_window = timedelta(seconds=recovery_window_seconds)
        self._clock = clock
        # Protects the in-memory fallback for tombstones and the recovery ledger
        self._state_lock = threading.Lock()
        self._tombstones: dict[str, Tuple[str, OwnerKind, datetime]] = {}
        self._recovered_tokens: dict[str, datetime] = {}
        self._last_cleanup = clock()

    # ------------------------------------------------------------------
    # login / register
    # ------------------------------------------------------------------

    async def login(self, identifier: Optional[str], secret: Optional[str]) -> SessionOutcome:
        if not identifier or not identifier.strip() or not secret:
            raise MissingCredentials()
        try:
            principal = self.verifier.verify(identifier, secret)
        except AuthFailure:
            raise InvalidCredentials()
        return self._open_session(principal)

    async def register(
        self, name: str, identifier: str, secret: str, *, role: str = "user"
    ) -> SessionOutcome:
        email = normalize_identifier(identifier)
        if self.store.get_user_by_email(email) or self.store.get_employee_by_email(email):
            raise ConflictError("email already exists", detail={"field": "email"})
        try:
            user = self.store.create_user(
                name, email, self.verifier.hash_secret(secret), role=role
            )
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc
        logger.info("user_registered", owner_id=user.id)
        return self._open_session(user)

    def _open_session(self, principal: UserPrincipal | EmployeePrincipal) -> SessionOutcome:
        sess = self.store.replace_owner_session(principal.id, principal.kind, self.session_ttl)
        logger.info(
            "session_created",
            owner_id=principal.id,
            owner_kind=principal.kind.value,
            token_prefix=token_prefix(sess.token),
        )
        return SessionOutcome(
            session=sess,
            profile=self.resolver.profile_for(principal),
            max_age=int(self.session_ttl.total_seconds()),
        )

    # ------------------------------------------------------------------
    # validate / logout
    # ------------------------------------------------------------------

    async def validate(self, token: Optional[str]) -> SessionOutcome:
        if not token:
            raise NoToken()
        self.maybe_cleanup()
        sess = self.store.get_session(token)
        if sess is None:
            raise InvalidSession()
        now = self._clock()
        if sess.is_expired(now):
            self.store.purge_expired(token)
            if not sess.recovered:
                await self._remember_expired(sess)
            logger.info(
                "session_expired",
                owner_id=sess.owner_id,
                owner_kind=sess.owner_kind.value,
                token_prefix=token_prefix(token),
            )
            raise ExpiredSession()
        try:
            profile = self.resolver.resolve(sess)
        except OwnerMissing:
            self.store.delete_session(token)
            raise
        evicted = self.store.evict_all_for_owner(
            sess.owner_id, sess.owner_kind, keep_token=token
        )
        if evicted:
            logger.info(
                "duplicate_sessions_converged",
                owner_id=sess.owner_id,
                owner_kind=sess.owner_kind.value,
                evicted=evicted,
            )
        if sess.recovered:
            # Recovered sessions run out their short grace window and never slide
            remaining = int((sess.expires_at - now).total_seconds())
            return SessionOutcome(session=sess, profile=profile, max_age=max(1, remaining), recovered=True)
        refreshed = self.store.touch_session(token, self.session_ttl)
        if refreshed is None:
            # Deleted between lookup and touch (concurrent logout)
            raise InvalidSession()
        return SessionOutcome(
            session=refreshed,
            profile=profile,
            max_age=int(self.session_ttl.total_seconds()),
        )

    async def logout(self, token: Optional[str]) -> None:
        if not token:
            return
        try:
            deleted = self.store.delete_session(token)
        except Exception as exc:
            logger.warning(
                "logout_delete_failed",
                token_prefix=token_prefix(token),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        logger.info("session_logged_out", token_prefix=token_prefix(token), deleted=deleted)

    def inspect(self, token: Optional[str]) -> Optional[SessionOutcome]:
        """Read-only view of a token for diagnostics; never purges or slides."""
        if not token:
            return None
        sess = self.store.get_session(token)
        if sess is None or sess.is_expired(self._clock()):
            return None
        try:
            profile = self.resolver.resolve(sess)
        except OwnerMissing:
            return None
        remaining = int((sess.expires_at - self._clock()).total_seconds())
        return SessionOutcome(
            session=sess, profile=profile, max_age=max(1, remaining), recovered=sess.recovered
        )

    # ------------------------------------------------------------------
    # recovery
    # ------------------------------------------------------------------

    async def recover(
        self, token: Optional[str], kind_hint: Optional[OwnerKind] = None
    ) -> SessionOutcome:
        """Re-issue a short-lived session for a token that recently expired.

        Only tokens that Validate saw expire within the recovery window are
        eligible, each at most once. A token that still validates, including
        one another caller has just recovered, is returned untouched.
        """
        if not token:
            raise NoToken()
        self.maybe_cleanup()
        # Another tab may already have recovered this token
        live = self.inspect(token)
        if live is not None:
            return live

        if await self._recovery_spent(token):
            self.store.purge_expired(token)
            logger.info("session_recovery_exhausted", token_prefix=token_prefix(token))
            raise RecoveryExhausted()

        tombstone = await self._load_tombstone(token)
        if tombstone is None:
            raise InvalidSession()
        owner_id, owner_kind = tombstone
        if kind_hint is not None and kind_hint != owner_kind:
            logger.info(
                "session_recovery_kind_mismatch",
                token_prefix=token_prefix(token),
                owner_kind=owner_kind.value,
                kind_hint=kind_hint.value,
            )
            raise InvalidSession()

        if not await self._claim_recovery(token):
            raise RecoveryExhausted()
        await self._forget_tombstone(token)
        # A stale expired row may still be present if the tombstone came from another node
        self.store.purge_expired(token)
        try:
            sess = self.store.create_session(
                owner_id, owner_kind, self.recovery_ttl, token=token, recovered=True
            )
        except ConstraintViolation:
            raise InvalidSession()
        try:
            profile = self.resolver.resolve(sess)
        except OwnerMissing:
            self.store.delete_session(token)
            raise
        logger.info(
            "session_recovered",
            owner_id=owner_id,
            owner_kind=owner_kind.value,
            token_prefix=token_prefix(token),
            ttl_seconds=int(self.recovery_ttl.total_seconds()),
        )
        return SessionOutcome(
            session=sess,
            profile=profile,
            max_age=int(self.recovery_ttl.total_seconds()),
            recovered=True,
            recovery_attempted=True,
        )

    async def _remember_expired(self, sess: Session) -> None:
        window = int(self.recovery_window.total_seconds())
        if self.cache:
            try:
                await self.cache.set_recovery_tombstone(
                    sess.token, sess.owner_id, sess.owner_kind, window
                )
            except Exception as exc:
                logger.warning(
                    "recovery_tombstone_write_failed",
                    token_prefix=token_prefix(sess.token),
                    error=str(exc),
                )
            return
        with self._state_lock:
            self._tombstones[sess.token] = (
                sess.owner_id,
                sess.owner_kind,
                self._clock() + self.recovery_window,
            )

    async def _load_tombstone(self, token: str) -> Optional[Tuple[str, OwnerKind]]:
        if self.cache:
            return await self.cache.get_recovery_tombstone(token)
        with self._state_lock:
            entry = self._tombstones.get(token)
            if not entry:
                return None
            owner_id, owner_kind, expires_at = entry
            if expires_at <= self._clock():
                self._tombstones.pop(token, None)
                return None
            return owner_id, owner_kind

    async def _forget_tombstone(self, token: str) -> None:
        if self.cache:
            await self.cache.delete_recovery_tombstone(token)
            return
        with self._state_lock:
            self._tombstones.pop(token, None)

    def _ledger_ttl(self) -> timedelta:
        return self.recovery_window + self.recovery_ttl

    async def _claim_recovery(self, token: str) -> bool:
        if self.cache:
            return await self.cache.claim_recovery(
                token, int(self._ledger_ttl().total_seconds())
            )
        with self._state_lock:
            now = self._clock()
            expires_at = self._recovered_tokens.get(token)
            if expires_at and expires_at > now:
                return False
            self._recovered_tokens[token] = now + self._ledger_ttl()
            return True

    async def _recovery_spent(self, token: str) -> bool:
        if self.cache:
            return await self.cache.is_recovery_spent(token)
        with self._state_lock:
            expires_at = self._recovered_tokens.get(token)
            return bool(expires_at and expires_at > self._clock())

    # ------------------------------------------------------------------
    # housekeeping
    # ------------------------------------------------------------------

    def cleanup_expired_states(self) -> int:
        """Drop expired tombstones and ledger entries from the in-memory fallback.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        cleaned = 0
        with self._state_lock:
            for token in [t for t, entry in self._tombstones.items() if entry[2] <= now]:
                self._tombstones.pop(token, None)
                cleaned += 1
            for token in [t for t, exp in self._recovered_tokens.items() if exp <= now]:
                self._recovered_tokens.pop(token, None)
                cleaned += 1
            self._last_cleanup = now
        if cleaned:
            logger.debug("recovery_state_cleaned", cleaned=cleaned)
        return cleaned

    def maybe_cleanup(self, interval_minutes: int = 5) -> int:
        now = self._clock()
        if (now - self._last_cleanup).total_seconds() >= interval_minutes * 60:
            return self.cleanup_expired_states()
        return 0
