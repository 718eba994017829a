from __future__ import annotations

import hashlib
import time
from typing import List, Optional, Sequence, Tuple

import redis.asyncio as aioredis
from redis import Redis

# (claimed, blocked_key, retry_after_seconds)
ClaimResult = Tuple[bool, Optional[str], int]


class RedisCache:
    """Thin Redis wrapper for challenge send windows."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic claim-all-or-none: if any key still holds a window, report the
    # first one and its TTL; otherwise set every key with the window expiry.
    _CLAIM_WINDOWS_SCRIPT = """
for i, key in ipairs(KEYS) do
  if redis.call('EXISTS', key) == 1 then
    return {i, redis.call('TTL', key)}
  end
end
for _, key in ipairs(KEYS) do
  redis.call('SET', key, ARGV[1], 'EX', tonumber(ARGV[2]))
end
return {0, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._claim_windows = self.client.register_script(self._CLAIM_WINDOWS_SCRIPT)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash logical keys so phone numbers and addresses never land in Redis verbatim."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    @staticmethod
    def _claim_result(keys: Sequence[str], raw) -> ClaimResult:
        index, ttl = int(raw[0]), int(raw[1])
        if index == 0:
            return True, None, 0
        # TTL is -1 for a key without expiry and -2 if it vanished mid-call
        return False, keys[index - 1], max(1, ttl)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client keeps the async client off a temporary event loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def claim_windows(
        self, keys: Sequence[str], window_seconds: int
    ) -> ClaimResult:
        if not keys:
            return True, None, 0
        safe_keys = [self._normalize_rate_key(key) for key in keys]
        raw = await self._claim_windows(
            keys=safe_keys, args=[int(time.time()), max(1, int(window_seconds))]
        )
        return self._claim_result(keys, raw)

    async def release_windows(self, keys: Sequence[str]) -> None:
        if keys:
            await self.client.delete(*[self._normalize_rate_key(key) for key in keys])

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client to avoid event loop binding issues under pytest
    while exposing the same awaitable surface as :class:`RedisCache`.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._claim_windows = self._sync_client.register_script(
            RedisCache._CLAIM_WINDOWS_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def claim_windows(
        self, keys: Sequence[str], window_seconds: int
    ) -> ClaimResult:
        if not keys:
            return True, None, 0
        safe_keys: List[str] = [RedisCache._normalize_rate_key(key) for key in keys]
        raw = self._claim_windows(
            keys=safe_keys, args=[int(time.time()), max(1, int(window_seconds))]
        )
        return RedisCache._claim_result(keys, raw)

    async def release_windows(self, keys: Sequence[str]) -> None:
        if keys:
            self._sync_client.delete(*[RedisCache._normalize_rate_key(key) for key in keys])

    def disconnect(self) -> None:
        self._sync_client.close()

    async def close(self) -> None:
        self.disconnect()
