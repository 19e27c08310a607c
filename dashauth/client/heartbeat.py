"""Periodic session refresh that cooperates across tabs.

Every ``interval`` seconds the heartbeat checks the later of its own last
refresh and the last broadcast heartbeat. Only when that is older than
``staleness`` does it validate and announce the new timestamp, so several
open tabs produce roughly one refresh per staleness window between them.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Callable, Optional

from dashauth.client.errors import ReauthenticationRequired, ServerUnavailable
from dashauth.logging import get_logger

if TYPE_CHECKING:
    from dashauth.client.broadcast import Broadcast
    from dashauth.client.session_client import SessionClient
    from dashauth.config import Settings

logger = get_logger(__name__)

DEFAULT_INTERVAL_SECONDS = 30
DEFAULT_STALENESS_SECONDS = 60


class Heartbeat:
    def __init__(
        self,
        client: "SessionClient",
        broadcast: "Broadcast",
        *,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        staleness: float = DEFAULT_STALENESS_SECONDS,
        clock: Callable[[], float] = time.time,
        on_reauthentication: Optional[Callable[[], None]] = None,
    ) -> None:
        self.client = client
        self.broadcast = broadcast
        self.interval = interval
        self.staleness = staleness
        self._clock = clock
        self._on_reauthentication = on_reauthentication
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls, client: "SessionClient", broadcast: "Broadcast", settings: "Settings"
    ) -> "Heartbeat":
        return cls(
            client,
            broadcast,
            interval=settings.heartbeat_interval_seconds,
            staleness=settings.heartbeat_staleness_seconds,
        )

    @property
    def running(self) -> bool:
        return self._running

    def _last_refresh(self) -> Optional[float]:
        candidates = [
            ts for ts in (self.client.cache.last_refresh_at, self.broadcast.last_seen()) if ts
        ]
        return max(candidates) if candidates else None

    async def tick(self) -> bool:
        """Run one heartbeat iteration; True when a validation was sent."""
        now = self._clock()
        last = self._last_refresh()
        if last is not None and now - last < self.staleness:
            logger.debug("heartbeat_skipped", age_seconds=round(now - last, 3))
            return False
        await self.client.ensure_session()
        await self.broadcast.publish(self._clock())
        logger.debug("heartbeat_refreshed")
        return True

    async def start(self) -> None:
        if self._running:
            logger.warning("heartbeat_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("heartbeat_started", interval=self.interval, staleness=self.staleness)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("heartbeat_stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.tick()
            except ReauthenticationRequired as exc:
                logger.info("heartbeat_reauthentication_required", reason=exc.reason)
                self._running = False
                if self._on_reauthentication:
                    self._on_reauthentication()
                return
            except ServerUnavailable as exc:
                logger.warning(
                    "heartbeat_server_unavailable",
                    status_code=exc.status_code,
                    error=str(exc),
                )
            except Exception as exc:
                logger.error(
                    "heartbeat_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
            await asyncio.sleep(self.interval)
