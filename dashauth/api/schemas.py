from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from dashauth.storage.models import PublicProfile


def _normalize_unicode(value: str) -> str:
    """Normalize a string with NFKC after stripping spoofing characters.

    This handles:
    - Combining diacritics
    - Compatibility characters
    - Zero-width and bidi override characters
    """
    # U+200B, U+200C, U+200D, U+FEFF
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize('NFKC', cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope wrapping every JSON response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class LoginRequest(BaseModel):
    # Missing fields are reported as missing_credentials by the coordinator
    identifier: Optional[str] = Field(default=None, max_length=320)
    secret: Optional[str] = Field(default=None, max_length=1024)

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return _normalize_unicode(value.strip())


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    identifier: str
    secret: str

    @field_validator("identifier")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("secret")
    @classmethod
    def _validate_secret(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = _normalize_unicode(value).strip()
        if not normalized:
            raise ValueError("name must not be blank")
        return normalized


class ProfileResponse(BaseModel):
    id: str
    kind: Literal["user", "employee"]
    name: str
    email: str
    role: str
    department_id: Optional[str] = None
    department_name: Optional[str] = None
    position: Optional[str] = None

    @classmethod
    def from_profile(cls, profile: PublicProfile) -> "ProfileResponse":
        return cls(**profile.to_dict())


class SessionResponse(BaseModel):
    profile: ProfileResponse
    owner_kind: Literal["user", "employee"]
    expires_at: datetime


class RecoverResponse(BaseModel):
    profile: ProfileResponse
    owner_kind: Literal["user", "employee"]
    expires_at: datetime
    recovered: bool
    recovery_attempted: bool


class LogoutResponse(BaseModel):
    success: bool = True


class SessionDiagnostics(BaseModel):
    cookies: List[str] = Field(default_factory=list, description="Names of cookies sent")
    token_present: bool = False
    kind_hint: Optional[str] = None
    active_sessions: int = 0
    store_available: bool = True


class SessionCheckResponse(BaseModel):
    status: Literal["authenticated", "unauthenticated"]
    auth_method: Optional[Literal["user", "employee"]] = None
    profile: Optional[ProfileResponse] = None
    expires_at: Optional[datetime] = None
    diagnostics: SessionDiagnostics = Field(default_factory=SessionDiagnostics)
