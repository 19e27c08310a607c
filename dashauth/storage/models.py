from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_token() -> str:
    return secrets.token_urlsafe(32)


class OwnerKind(str, Enum):
    """Which principal table a session's owner_id points into."""

    USER = "user"
    EMPLOYEE = "employee"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["OwnerKind"]:
        """Decode an untrusted hint; unknown values map to None."""
        if not value:
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


@dataclass
class UserPrincipal:
    id: str
    name: str
    email: str
    secret_hash: str
    role: str = "user"
    created_at: datetime = field(default_factory=utcnow)

    kind = OwnerKind.USER


@dataclass
class EmployeePrincipal:
    id: str
    name: str
    email: str
    secret_hash: Optional[str] = None
    department_id: Optional[str] = None
    position: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    kind = OwnerKind.EMPLOYEE

    @property
    def role(self) -> str:
        return self.position or "employee"


Principal = Union[UserPrincipal, EmployeePrincipal]


@dataclass
class Department:
    id: str
    name: str
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    token: str
    owner_id: str
    owner_kind: OwnerKind
    expires_at: datetime
    created_at: datetime
    recovered: bool = False

    @classmethod
    def new(
        cls,
        owner_id: str,
        owner_kind: OwnerKind,
        ttl: timedelta,
        *,
        now: Optional[datetime] = None,
        token: Optional[str] = None,
        recovered: bool = False,
    ) -> "Session":
        issued_at = now or utcnow()
        return cls(
            token=token or new_session_token(),
            owner_id=owner_id,
            owner_kind=OwnerKind(owner_kind),
            created_at=issued_at,
            expires_at=issued_at + ttl,
            recovered=recovered,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now


@dataclass
class PublicProfile:
    """Principal fields that are safe to hand to the browser."""

    id: str
    kind: OwnerKind
    name: str
    email: str
    role: str
    department_id: Optional[str] = None
    department_name: Optional[str] = None
    position: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "department_id": self.department_id,
            "department_name": self.department_name,
            "position": self.position,
        }
