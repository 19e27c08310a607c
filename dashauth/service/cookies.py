from __future__ import annotations

from typing import Mapping, Optional, Tuple

from fastapi import Response

from dashauth.storage.models import OwnerKind

_HOST_PREFIX = "__Host-"


def _normalize_cookie_name(name: str, *, secure: bool, fallback: str) -> str:
    value = (name or "").strip() or fallback
    if value.startswith(_HOST_PREFIX):
        value = value[len(_HOST_PREFIX):].strip() or fallback
    return f"{_HOST_PREFIX}{value}" if secure else value


class CookieCodec:
    """Encodes a session as a transport cookie plus a script-readable kind marker.

    The transport cookie carries the bearer token and is HttpOnly. The marker
    only tells the browser which principal type it is talking as; the server
    never trusts it for authorization.

    Both cookies outlive the server session by ``grace_seconds`` so a client
    can still present an expired token to recovery. The server enforces
    ``expires_at`` on its own.
    """

    def __init__(
        self,
        *,
        session_cookie_name: str = "dash_session",
        kind_cookie_name: str = "dash_auth_kind",
        secure: bool = True,
        grace_seconds: int = 0,
    ) -> None:
        self.secure = secure
        self.grace_seconds = max(0, grace_seconds)
        self.session_cookie_name = _normalize_cookie_name(
            session_cookie_name, secure=secure, fallback="dash_session"
        )
        self.kind_cookie_name = _normalize_cookie_name(
            kind_cookie_name, secure=secure, fallback="dash_auth_kind"
        )

    @property
    def cookie_names(self) -> Tuple[str, str]:
        return self.session_cookie_name, self.kind_cookie_name

    def read(self, cookies: Mapping[str, str]) -> Tuple[Optional[str], Optional[OwnerKind]]:
        token = (cookies.get(self.session_cookie_name) or "").strip() or None
        kind_hint = OwnerKind.parse(cookies.get(self.kind_cookie_name))
        return token, kind_hint

    def write(
        self, response: Response, token: str, owner_kind: OwnerKind, *, max_age: int
    ) -> None:
        max_age = max_age + self.grace_seconds
        response.set_cookie(
            self.session_cookie_name,
            token,
            max_age=max_age,
            path="/",
            secure=self.secure,
            httponly=True,
            samesite="lax",
        )
        response.set_cookie(
            self.kind_cookie_name,
            OwnerKind(owner_kind).value,
            max_age=max_age,
            path="/",
            secure=self.secure,
            httponly=False,
            samesite="lax",
        )

    def clear(self, response: Response) -> None:
        response.delete_cookie(
            self.session_cookie_name,
            path="/",
            secure=self.secure,
            httponly=True,
            samesite="lax",
        )
        response.delete_cookie(
            self.kind_cookie_name,
            path="/",
            secure=self.secure,
            httponly=False,
            samesite="lax",
        )
