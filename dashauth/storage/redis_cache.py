from __future__ import annotations

import hashlib
import json
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

from dashauth.storage.models import OwnerKind


def _token_digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def _tombstone_key(token: str) -> str:
    return f"session:tombstone:{_token_digest(token)}"


def _recovered_key(token: str) -> str:
    return f"session:recovered:{_token_digest(token)}"


def _encode_tombstone(owner_id: str, owner_kind: OwnerKind) -> str:
    return json.dumps({"owner_id": owner_id, "owner_kind": OwnerKind(owner_kind).value})


def _decode_tombstone(raw: Optional[str]) -> Optional[Tuple[str, OwnerKind]]:
    if not raw:
        return None
    try:
        data = json.loads(raw)
        return str(data["owner_id"]), OwnerKind(data["owner_kind"])
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        return None


class RedisCache:
    """Thin Redis wrapper for recovery tombstones, the recovery ledger and rate limits."""

    # Lua token bucket script: atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Check rate limit using a Redis-backed token bucket."""
        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def set_recovery_tombstone(
        self, token: str, owner_id: str, owner_kind: OwnerKind, ttl_seconds: int
    ) -> None:
        """Remember who owned an expired token for the recovery window."""
        await self.client.set(
            _tombstone_key(token),
            _encode_tombstone(owner_id, owner_kind),
            ex=max(1, int(ttl_seconds)),
        )

    async def get_recovery_tombstone(self, token: str) -> Optional[Tuple[str, OwnerKind]]:
        return _decode_tombstone(await self.client.get(_tombstone_key(token)))

    async def delete_recovery_tombstone(self, token: str) -> None:
        await self.client.delete(_tombstone_key(token))

    async def claim_recovery(self, token: str, ttl_seconds: int) -> bool:
        """Record that a token has been recovered; False if it already was."""
        claimed = await self.client.set(
            _recovered_key(token), "1", nx=True, ex=max(1, int(ttl_seconds))
        )
        return bool(claimed)

    async def is_recovery_spent(self, token: str) -> bool:
        return bool(await self.client.exists(_recovered_key(token)))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(RedisCache._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = RedisCache._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key], args=[time.time(), refill_rate, limit, max(1, cost)]
        )
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def set_recovery_tombstone(
        self, token: str, owner_id: str, owner_kind: OwnerKind, ttl_seconds: int
    ) -> None:
        self.client.set(
            _tombstone_key(token),
            _encode_tombstone(owner_id, owner_kind),
            ex=max(1, int(ttl_seconds)),
        )

    async def get_recovery_tombstone(self, token: str) -> Optional[Tuple[str, OwnerKind]]:
        return _decode_tombstone(self.client.get(_tombstone_key(token)))

    async def delete_recovery_tombstone(self, token: str) -> None:
        self.client.delete(_tombstone_key(token))

    async def claim_recovery(self, token: str, ttl_seconds: int) -> bool:
        return bool(
            self.client.set(_recovered_key(token), "1", nx=True, ex=max(1, int(ttl_seconds)))
        )

    async def is_recovery_spent(self, token: str) -> bool:
        return bool(self.client.exists(_recovered_key(token)))

    async def close(self) -> None:
        self.client.close()
