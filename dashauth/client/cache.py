from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from dashauth.storage.models import OwnerKind


@dataclass
class SessionCache:
    """Client-side mirror of the last server answer.

    Only the session client and the heartbeat read it. It is never a trust
    boundary: the server revalidates every request.
    """

    owner_kind: Optional[OwnerKind] = None
    last_refresh_at: Optional[float] = None
    cached_profile: Optional[Dict[str, Any]] = None
    recovery_attempted: bool = False
    # Last transport token the client presented; recovery must present the same value
    last_token: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return self.cached_profile is not None

    def record(
        self,
        profile: Dict[str, Any],
        owner_kind: Optional[OwnerKind],
        refreshed_at: float,
        token: Optional[str],
    ) -> None:
        self.cached_profile = profile
        self.owner_kind = owner_kind
        self.last_refresh_at = refreshed_at
        if token:
            self.last_token = token

    def invalidate(self) -> None:
        self.owner_kind = None
        self.last_refresh_at = None
        self.cached_profile = None
        self.recovery_attempted = False
        self.last_token = None
