from __future__ import annotations

import hashlib
import json
import time
import uuid
from typing import Any, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for configuration views and update rate limits."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Sliding window over a sorted set of request timestamps (milliseconds).
    # Returns {allowed, remaining, reset_after_seconds}.
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, 0, now - window)
local count = redis.call('ZCARD', key)

if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local reset_after = 1
  if oldest[2] ~= nil then
    reset_after = math.max(1, math.ceil((tonumber(oldest[2]) + window - now) / 1000))
  end
  return {0, 0, reset_after}
end

redis.call('ZADD', key, now, member)
redis.call('PEXPIRE', key, window)
return {1, limit - count - 1, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off the startup loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    # -- configuration view cache ---------------------------------------

    async def get_json(self, key: str) -> Optional[Any]:
        cached = await self.client.get(f"cfg:{key}")
        if cached is None:
            return None
        try:
            return json.loads(cached)
        except json.JSONDecodeError:
            await self.client.delete(f"cfg:{key}")
            return None

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self.client.set(f"cfg:{key}", json.dumps(value), ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        await self.client.delete(f"cfg:{key}")

    # -- rate limiting ---------------------------------------------------

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Record one request against ``key`` and report the outcome.

        Returns ``(allowed, remaining, retry_after_seconds)``.
        """

        allowed, remaining, reset_after = await self._sliding_window(
            keys=[self._normalize_rate_key(key)],
            args=[
                int(time.time() * 1000),
                int(window_seconds) * 1000,
                int(limit),
                uuid.uuid4().hex,
            ],
        )
        return bool(int(allowed)), max(0, int(remaining)), int(reset_after or 0)

    async def remaining_requests(self, key: str, limit: int, window_seconds: int) -> int:
        safe_key = self._normalize_rate_key(key)
        now_ms = int(time.time() * 1000)
        count = await self.client.zcount(safe_key, now_ms - int(window_seconds) * 1000, "+inf")
        return max(0, int(limit) - int(count))
