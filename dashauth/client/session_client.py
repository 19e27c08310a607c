"""Async HTTP client for the session API.

Keeps the cookie pair in an ``httpx`` cookie jar and mirrors the last good
answer in a :class:`SessionCache`. ``ensure_session`` is the only place that
decides whether to attempt recovery.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional

import httpx

from dashauth.client.cache import SessionCache
from dashauth.client.errors import (
    ReauthenticationRequired,
    ServerUnavailable,
    SessionRejected,
)
from dashauth.logging import get_logger, token_prefix
from dashauth.service.cookies import CookieCodec
from dashauth.storage.models import OwnerKind

logger = get_logger(__name__)


class SessionClient:
    def __init__(
        self,
        base_url: str,
        *,
        cache: Optional[SessionCache] = None,
        session_cookie_name: str = "dash_session",
        kind_cookie_name: str = "dash_auth_kind",
        secure: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.cache = cache or SessionCache()
        self.session_cookie_name, self.kind_cookie_name = CookieCodec(
            session_cookie_name=session_cookie_name,
            kind_cookie_name=kind_cookie_name,
            secure=secure,
        ).cookie_names
        self._transport = transport
        self._timeout = timeout
        self._clock = clock
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client holding the cookie jar."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                transport=self._transport,
                timeout=httpx.Timeout(self._timeout, connect=5.0),
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def current_token(self) -> Optional[str]:
        if self._client is None:
            return None
        return self._client.cookies.get(self.session_cookie_name)

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        client = await self._get_client()
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            logger.warning("session_server_unreachable", path=path, error=str(exc))
            raise ServerUnavailable(f"session server unreachable: {exc}") from exc
        if response.status_code >= 500:
            logger.warning(
                "session_server_error", path=path, status_code=response.status_code
            )
            raise ServerUnavailable("session server error", status_code=response.status_code)
        return response

    @staticmethod
    def _rejection(response: httpx.Response) -> SessionRejected:
        try:
            body = response.json()
        except ValueError:
            body = {}
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            error = {}
        details = error.get("details")
        reason = details.get("reason") if isinstance(details, dict) else None
        return SessionRejected(
            response.status_code, reason, error.get("message") or "request rejected"
        )

    def _record(self, response: httpx.Response) -> Dict[str, Any]:
        data = response.json()["data"]
        profile = data["profile"]
        self.cache.record(
            profile,
            OwnerKind.parse(data.get("owner_kind")),
            self._clock(),
            self.current_token(),
        )
        return profile

    async def login(self, identifier: str, secret: str) -> Dict[str, Any]:
        response = await self._request(
            "POST", "/session", json={"identifier": identifier, "secret": secret}
        )
        if response.status_code != 200:
            raise self._rejection(response)
        self.cache.invalidate()
        profile = self._record(response)
        logger.info("session_client_logged_in", owner_kind=profile.get("kind"))
        return profile

    async def validate(self) -> Dict[str, Any]:
        token = self.current_token()
        if token:
            self.cache.last_token = token
        response = await self._request("GET", "/session")
        if response.status_code != 200:
            raise self._rejection(response)
        return self._record(response)

    async def recover(self, kind: Optional[OwnerKind] = None) -> Dict[str, Any]:
        """Present the last known token to the recovery endpoint.

        Validate failures clear the cookie jar, so the token is sent
        explicitly from the cache.
        """
        token = self.cache.last_token or self.current_token()
        headers = {"Cookie": f"{self.session_cookie_name}={token}"} if token else {}
        params = {"kind": OwnerKind(kind).value} if kind else None
        self.cache.recovery_attempted = True
        response = await self._request(
            "GET", "/session/recover", headers=headers, params=params
        )
        if response.status_code != 200:
            raise self._rejection(response)
        recovered = response.headers.get("X-Session-Recovered") == "1"
        logger.info(
            "session_client_recover_answered",
            recovered=recovered,
            token_prefix=token_prefix(token),
        )
        return self._record(response)

    async def logout(self) -> None:
        try:
            await self._request("DELETE", "/session")
        finally:
            self.cache.invalidate()
            if self._client is not None:
                self._client.cookies.delete(self.session_cookie_name)
                self._client.cookies.delete(self.kind_cookie_name)

    async def ensure_session(self) -> Dict[str, Any]:
        """Validate, recovering at most once per token.

        Raises:
            ReauthenticationRequired: If validation fails and recovery is not
                possible or has already been spent
            ServerUnavailable: On any 5xx or transport failure; not retried
        """
        try:
            return await self.validate()
        except SessionRejected as exc:
            if not exc.recoverable or self.cache.recovery_attempted or not self.cache.last_token:
                logger.info(
                    "session_client_reauth_required",
                    reason=exc.reason,
                    recovery_attempted=self.cache.recovery_attempted,
                )
                self.cache.invalidate()
                raise ReauthenticationRequired(exc.reason) from exc
            first_failure = exc

        try:
            await self.recover(self.cache.owner_kind)
            return await self.validate()
        except SessionRejected as exc:
            logger.info(
                "session_client_recovery_failed",
                reason=exc.reason,
                first_reason=first_failure.reason,
            )
            self.cache.invalidate()
            raise ReauthenticationRequired(exc.reason) from exc
