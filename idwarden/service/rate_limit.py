from __future__ import annotations

import threading
import time
from typing import Dict, List, Optional, Sequence, Union

from idwarden.logging import get_logger
from idwarden.service.errors import RateLimitedError
from idwarden.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

WindowCache = Union[RedisCache, SyncRedisCache]


def target_key(target: str) -> str:
    return f"rate_limit:{target}"


def source_key(ip_address: str) -> str:
    return f"rate_limit:ip:{ip_address}"


class RateLimiter:
    """Fixed send windows keyed by target and by source address.

    ``acquire`` claims every key or none of them. Redis runs the claim as a
    Lua script; without a cache the windows live in a lock-guarded dict
    local to this process.
    """

    def __init__(
        self, cache: Optional[WindowCache] = None, *, window_seconds: int = 60
    ) -> None:
        self.cache = cache
        self.window_seconds = window_seconds
        self._lock = threading.Lock()
        self._windows: Dict[str, float] = {}

    def _claim_local(self, keys: Sequence[str], window: int):
        now = time.monotonic()
        with self._lock:
            for key in keys:
                expires = self._windows.get(key)
                if expires is not None and expires > now:
                    return False, key, max(1, int(expires - now + 0.999))
            for key in keys:
                self._windows[key] = now + window
            # drop stale windows while the lock is held
            for key in [k for k, exp in self._windows.items() if exp <= now]:
                self._windows.pop(key, None)
        return True, None, 0

    async def acquire(
        self, keys: Sequence[str], window_seconds: Optional[int] = None
    ) -> List[str]:
        """Claim all ``keys`` for one window or raise :class:`RateLimitedError`.

        Returns the claimed keys so callers can :meth:`release` them when the
        guarded operation fails.
        """
        window = window_seconds or self.window_seconds
        unique = list(dict.fromkeys(k for k in keys if k))
        if self.cache is not None:
            claimed, blocked, retry_after = await self.cache.claim_windows(unique, window)
        else:
            claimed, blocked, retry_after = self._claim_local(unique, window)
        if not claimed:
            logger.info("rate_limit_blocked", key_kind=_key_kind(blocked), retry_after=retry_after)
            raise RateLimitedError(
                "too many requests, try again later",
                detail={"retry_after": retry_after},
            )
        return unique

    async def release(self, keys: Sequence[str]) -> None:
        if not keys:
            return
        if self.cache is not None:
            await self.cache.release_windows(keys)
            return
        with self._lock:
            for key in keys:
                self._windows.pop(key, None)


def _key_kind(key: Optional[str]) -> str:
    if not key:
        return "unknown"
    return "source" if key.startswith("rate_limit:ip:") else "target"
