from __future__ import annotations

import hashlib
import json
import time
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for browser sessions and rate limits."""

    # Atomic refill + consume
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
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _session_key(session_id: str) -> str:
        return f"session:browser:{session_id}"

    async def get_browser_session(self, session_id: str) -> Optional[dict]:
        raw = await self.client.get(self._session_key(session_id))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None

    async def save_browser_session(
        self, session_id: str, payload: dict, ttl_seconds: int
    ) -> None:
        await self.client.set(
            self._session_key(session_id), json.dumps(payload), ex=max(1, int(ttl_seconds))
        )

    async def delete_browser_session(self, session_id: str) -> None:
        await self.client.delete(self._session_key(session_id))

    async def purge_expired(self) -> int:
        # Redis expires session keys on its own
        return 0

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        """Check a rate limit with a Redis-backed token bucket.

        The key is hashed so caller-supplied values (user names, emails) cannot
        collide through delimiter tricks.
        """

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        allowed, _tokens, _reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, 1],
        )
        return bool(int(allowed))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
