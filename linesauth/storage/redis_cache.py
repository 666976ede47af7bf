from __future__ import annotations

import hashlib
import math
import time
import uuid
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for the shared per-user request window."""

    DEFAULT_OPERATION_TIMEOUT = 5.0  # 5 seconds

    # Atomic trim + count + record over a sorted set of request timestamps.
    # Rejected requests are not recorded.
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)

if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local retry = window
  if oldest[2] then
    retry = tonumber(oldest[2]) + window - now
  end
  return {0, 0, tostring(retry)}
end

redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, math.ceil(window))
return {1, limit - count - 1, '0'}
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
        """Hash the subject so user-controlled values cannot collide on delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:window:{digest}"

    @staticmethod
    def _parse_window_result(result) -> Tuple[bool, int, int]:
        allowed, remaining, retry_after = result
        retry_seconds = max(1, math.ceil(float(retry_after))) if not int(allowed) else 0
        return bool(int(allowed)), max(0, int(remaining)), retry_seconds

    async def check_sliding_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Record one request for ``key`` if the window has room.

        Returns ``(allowed, remaining, retry_after_seconds)``.
        """
        now = time.time()
        result = await self._sliding_window(
            keys=[self._normalize_rate_key(key)],
            args=[now, window_seconds, limit, f"{now}:{uuid.uuid4().hex}"],
        )
        return self._parse_window_result(result)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes the same async methods as :class:`RedisCache`.
    """

    def __init__(
        self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self._sync_client.register_script(
            RedisCache._SLIDING_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def check_sliding_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        now = time.time()
        result = self._sliding_window(
            keys=[RedisCache._normalize_rate_key(key)],
            args=[now, window_seconds, limit, f"{now}:{uuid.uuid4().hex}"],
        )
        return RedisCache._parse_window_result(result)

    async def close(self) -> None:
        self._sync_client.close()
