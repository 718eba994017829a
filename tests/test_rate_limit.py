from unittest.mock import AsyncMock

import pytest

from idwarden.service.errors import RateLimitedError
from idwarden.service.rate_limit import RateLimiter, source_key, target_key
from idwarden.storage.redis_cache import RedisCache


class TestLocalWindows:
    """Process-local windows when no Redis is configured."""

    async def test_second_claim_blocked_with_retry_after(self):
        limiter = RateLimiter(window_seconds=60)
        await limiter.acquire([target_key("+8613800138000")])

        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.acquire([target_key("+8613800138000")])

        retry_after = exc_info.value.detail["retry_after"]
        assert 1 <= retry_after <= 60
        assert exc_info.value.status_code == 429

    async def test_claim_is_all_or_none(self):
        limiter = RateLimiter(window_seconds=60)
        await limiter.acquire([source_key("10.0.0.1")])

        with pytest.raises(RateLimitedError):
            await limiter.acquire([target_key("bob@example.com"), source_key("10.0.0.1")])

        # the target key must not have been claimed by the blocked attempt
        assert await limiter.acquire([target_key("bob@example.com")]) == [
            "rate_limit:bob@example.com"
        ]

    async def test_release_reopens_window(self):
        limiter = RateLimiter(window_seconds=60)
        claimed = await limiter.acquire([target_key("a@example.com"), source_key("10.0.0.2")])
        assert claimed == ["rate_limit:a@example.com", "rate_limit:ip:10.0.0.2"]

        await limiter.release(claimed)

        assert await limiter.acquire([target_key("a@example.com")])

    async def test_duplicate_and_empty_keys_collapsed(self):
        limiter = RateLimiter()
        claimed = await limiter.acquire(["rate_limit:x", "", "rate_limit:x"])
        assert claimed == ["rate_limit:x"]

    async def test_distinct_targets_independent(self):
        limiter = RateLimiter()
        await limiter.acquire([target_key("one@example.com")])
        await limiter.acquire([target_key("two@example.com")])
        with pytest.raises(RateLimitedError):
            await limiter.acquire([target_key("one@example.com")])


class TestCacheWindows:
    """Redis-backed windows delegate to the cache."""

    async def test_acquire_delegates_to_cache(self):
        cache = AsyncMock()
        cache.claim_windows.return_value = (True, None, 0)
        limiter = RateLimiter(cache, window_seconds=30)

        await limiter.acquire([target_key("x@example.com")])

        cache.claim_windows.assert_awaited_once_with(["rate_limit:x@example.com"], 30)

    async def test_cache_block_raises(self):
        cache = AsyncMock()
        cache.claim_windows.return_value = (False, "rate_limit:ip:10.0.0.3", 42)
        limiter = RateLimiter(cache)

        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.acquire([source_key("10.0.0.3")])
        assert exc_info.value.detail == {"retry_after": 42}

    async def test_release_delegates(self):
        cache = AsyncMock()
        limiter = RateLimiter(cache)

        await limiter.release(["rate_limit:y"])
        await limiter.release([])
        cache.release_windows.assert_awaited_once_with(["rate_limit:y"])


class TestRedisHelpers:
    def test_keys_are_hashed(self):
        key = RedisCache._normalize_rate_key("rate_limit:+8613800138000")
        assert key.startswith("rate:")
        assert "13800138000" not in key
        assert key == RedisCache._normalize_rate_key("rate_limit:+8613800138000")

    def test_claim_result_success(self):
        assert RedisCache._claim_result(["a", "b"], [0, 0]) == (True, None, 0)

    def test_claim_result_reports_blocking_key(self):
        assert RedisCache._claim_result(["a", "b"], [2, 37]) == (False, "b", 37)

    def test_claim_result_never_reports_zero_retry(self):
        assert RedisCache._claim_result(["a"], [1, -2]) == (False, "a", 1)
