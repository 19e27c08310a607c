"""Cross-tab heartbeat signalling.

A tab that refreshes its session publishes the timestamp; every other tab
sees it through ``last_seen()`` and skips its own refresh while it is fresh.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Callable, List, Optional, Protocol

import redis.asyncio as aioredis

from dashauth.logging import get_logger

logger = get_logger(__name__)

HeartbeatCallback = Callable[[float], None]

DEFAULT_CHANNEL = "dashauth:heartbeat"


class Broadcast(Protocol):
    async def publish(self, timestamp: float) -> None: ...

    def subscribe(self, callback: HeartbeatCallback) -> Callable[[], None]: ...

    def last_seen(self) -> Optional[float]: ...

    async def close(self) -> None: ...


class _Observed:
    """Latest-timestamp register plus subscriber fan-out shared by both transports."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last_seen: Optional[float] = None
        self._subscribers: List[HeartbeatCallback] = []

    def last_seen(self) -> Optional[float]:
        with self._lock:
            return self._last_seen

    def subscribe(self, callback: HeartbeatCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    def _observe(self, timestamp: float) -> None:
        with self._lock:
            # Timestamps only move forward; a late message cannot rewind the register
            if self._last_seen is None or timestamp > self._last_seen:
                self._last_seen = timestamp
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(timestamp)
            except Exception as exc:
                logger.warning("heartbeat_subscriber_failed", error=str(exc))


class LocalBroadcast(_Observed):
    """In-process broadcast; share one instance between the tabs of a process."""

    async def publish(self, timestamp: float) -> None:
        self._observe(timestamp)

    async def close(self) -> None:
        with self._lock:
            self._subscribers.clear()


class RedisBroadcast(_Observed):
    """Broadcast over Redis pub/sub for tabs living in separate processes."""

    def __init__(self, redis_url: str, *, channel: str = DEFAULT_CHANNEL) -> None:
        super().__init__()
        self.channel = channel
        self.client = aioredis.from_url(redis_url, decode_responses=True)
        self._pubsub = None
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._pubsub = self.client.pubsub()
        await self._pubsub.subscribe(self.channel)
        self._task = asyncio.create_task(self._listen())
        logger.info("heartbeat_broadcast_subscribed", channel=self.channel)

    async def _listen(self) -> None:
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                timestamp = float(message["data"])
            except (TypeError, ValueError):
                logger.warning("heartbeat_broadcast_bad_payload", data=message.get("data"))
                continue
            self._observe(timestamp)

    async def publish(self, timestamp: float) -> None:
        self._observe(timestamp)
        await self.client.publish(self.channel, repr(timestamp))

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
            self._pubsub = None
        await self.client.aclose()
