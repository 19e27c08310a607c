from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from dashauth.api.schemas import (
    Envelope,
    LoginRequest,
    LogoutResponse,
    ProfileResponse,
    RecoverResponse,
    RegisterRequest,
    SessionCheckResponse,
    SessionDiagnostics,
    SessionResponse,
)
from dashauth.logging import get_logger
from dashauth.service.errors import ForbiddenError, RateLimitedError
from dashauth.service.runtime import check_rate_limit, get_runtime
from dashauth.service.sessions import SessionOutcome
from dashauth.storage.errors import StoreUnavailable
from dashauth.storage.models import OwnerKind

logger = get_logger(__name__)

router = APIRouter()

RECOVERED_HEADER = "X-Session-Recovered"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce rate limit and optionally apply headers to response.

    Raises:
        RateLimitedError if rate limit exceeded
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        raise RateLimitedError("rate limit exceeded", detail={"retry_after": reset_seconds})

    return info


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _session_payload(outcome: SessionOutcome) -> SessionResponse:
    return SessionResponse(
        profile=ProfileResponse.from_profile(outcome.profile),
        owner_kind=outcome.owner_kind.value,
        expires_at=outcome.session.expires_at,
    )


def _write_cookies(runtime, response: Response, outcome: SessionOutcome) -> None:
    runtime.cookies.write(
        response,
        outcome.session.token,
        outcome.owner_kind,
        max_age=outcome.max_age,
    )


async def require_session(request: Request) -> SessionOutcome:
    """Validate the session cookie; slides the session as a side effect.

    Failures propagate as ``SessionError`` so the exception handlers clear
    both cookies.
    """
    runtime = get_runtime()
    token, _ = runtime.cookies.read(request.cookies)
    return await runtime.sessions.validate(token)


@router.post("/session", response_model=Envelope, tags=["session"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Log in as a user or an employee with one identifier/secret pair.

    Any previous session of the same principal is evicted; the new one is
    delivered as the cookie pair.

    Raises:
        400: If identifier or secret is missing
        401: If credentials do not match
        429: If rate limit exceeded for this identifier
    """
    runtime = get_runtime()
    rate_key = (body.identifier or "").lower() or _client_key(request)
    await _enforce_rate_limit(
        runtime,
        f"login:{rate_key}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    outcome = await runtime.sessions.login(body.identifier, body.secret)
    _write_cookies(runtime, response, outcome)
    return Envelope(status="ok", data=_session_payload(outcome))


@router.get("/session", response_model=Envelope, tags=["session"])
async def validate(response: Response, outcome: SessionOutcome = Depends(require_session)):
    """Return the caller's profile and refresh the cookie pair.

    Raises:
        401: With ``details.reason`` one of no_token, invalid_session,
            expired_session or owner_missing; both cookies are cleared
    """
    runtime = get_runtime()
    _write_cookies(runtime, response, outcome)
    return Envelope(status="ok", data=_session_payload(outcome))


@router.delete("/session", response_model=Envelope, tags=["session"])
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    token, _ = runtime.cookies.read(request.cookies)
    await runtime.sessions.logout(token)
    runtime.cookies.clear(response)
    return Envelope(status="ok", data=LogoutResponse())


@router.get("/session/recover", response_model=Envelope, tags=["session"])
async def recover(
    request: Request,
    response: Response,
    kind: Optional[str] = Query(
        None, max_length=16, description="Principal type the client last authenticated as"
    ),
):
    """Re-issue a short-lived session for a recently expired token.

    A token is recoverable once, within the recovery window after it was
    seen to expire. A still-valid token keeps its session and has its
    cookies written again.

    Raises:
        400: If ``kind`` is neither user nor employee
        401: With ``details.reason`` one of no_token, invalid_session or
            recovery_exhausted
    """
    runtime = get_runtime()
    kind_hint = OwnerKind.parse(kind)
    if kind is not None and kind_hint is None:
        raise _http_error(
            "validation_error",
            "kind must be 'user' or 'employee'",
            status_code=400,
            details={"field": "kind"},
        )
    await _enforce_rate_limit(runtime, f"recover:{_client_key(request)}", limit=20, window_seconds=60)
    token, cookie_kind = runtime.cookies.read(request.cookies)
    outcome = await runtime.sessions.recover(token, kind_hint or cookie_kind)
    _write_cookies(runtime, response, outcome)
    if outcome.recovery_attempted:
        response.headers[RECOVERED_HEADER] = "1"
    return Envelope(
        status="ok",
        data=RecoverResponse(
            profile=ProfileResponse.from_profile(outcome.profile),
            owner_kind=outcome.owner_kind.value,
            expires_at=outcome.session.expires_at,
            recovered=outcome.recovery_attempted,
            recovery_attempted=outcome.recovery_attempted,
        ),
    )


@router.post("/session/register", response_model=Envelope, status_code=201, tags=["session"])
async def register(body: RegisterRequest, response: Response):
    """Create a user account and log it in.

    Raises:
        403: If registration is disabled in settings
        409: If the email belongs to a user or an employee
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    if not runtime.settings.allow_registration:
        raise ForbiddenError("registration disabled")
    await _enforce_rate_limit(
        runtime,
        f"register:{body.identifier}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    outcome = await runtime.sessions.register(body.name, body.identifier, body.secret)
    _write_cookies(runtime, response, outcome)
    return Envelope(status="ok", data=_session_payload(outcome))


@router.get("/session/check", response_model=Envelope, tags=["session"])
async def check(request: Request):
    """Report what the server makes of the caller's cookies without touching them."""
    runtime = get_runtime()
    token, kind_hint = runtime.cookies.read(request.cookies)
    diagnostics = SessionDiagnostics(
        cookies=sorted(request.cookies.keys()),
        token_present=token is not None,
        kind_hint=kind_hint.value if kind_hint else None,
    )
    try:
        diagnostics.active_sessions = runtime.store.count_active_sessions()
        outcome = runtime.sessions.inspect(token)
    except StoreUnavailable as exc:
        logger.warning("session_check_store_unavailable", operation=exc.operation)
        diagnostics.store_available = False
        outcome = None
    if outcome is None:
        return Envelope(
            status="ok",
            data=SessionCheckResponse(status="unauthenticated", diagnostics=diagnostics),
        )
    return Envelope(
        status="ok",
        data=SessionCheckResponse(
            status="authenticated",
            auth_method=outcome.owner_kind.value,
            profile=ProfileResponse.from_profile(outcome.profile),
            expires_at=outcome.session.expires_at,
            diagnostics=diagnostics,
        ),
    )
