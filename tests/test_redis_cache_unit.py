import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from kbsync.service.cache import RedisConfigCache
from kbsync.service.rate_limit import RedisRateLimiter
from kbsync.storage.redis_cache import RedisCache


def _cache() -> RedisCache:
    cache: RedisCache = RedisCache.__new__(RedisCache)
    cache.redis_url = "redis://unused"
    cache.client = MagicMock()
    cache.client.get = AsyncMock(return_value=None)
    cache.client.set = AsyncMock()
    cache.client.delete = AsyncMock()
    cache.client.zcount = AsyncMock(return_value=0)
    cache._sliding_window = AsyncMock(return_value=[1, 4, 0])
    return cache


class TestRedisCache:
    @pytest.mark.asyncio
    async def test_json_values_use_prefixed_keys(self):
        cache = _cache()
        await cache.set_json("user_config_o", {"rules": []}, 300)

        cache.client.set.assert_awaited_once_with(
            "cfg:user_config_o", json.dumps({"rules": []}), ex=300
        )

    @pytest.mark.asyncio
    async def test_corrupt_json_is_dropped(self):
        cache = _cache()
        cache.client.get = AsyncMock(return_value="{broken")

        assert await cache.get_json("k") is None
        cache.client.delete.assert_awaited_once_with("cfg:k")

    @pytest.mark.asyncio
    async def test_rate_limit_script_arguments(self):
        cache = _cache()

        allowed, remaining, retry_after = await cache.check_rate_limit("rate_limit_o_x", 5, 60)

        assert (allowed, remaining, retry_after) == (True, 4, 0)
        kwargs = cache._sliding_window.await_args.kwargs
        assert kwargs["keys"][0].startswith("rate:")
        assert "rate_limit_o_x" not in kwargs["keys"][0]
        assert kwargs["args"][1:3] == [60000, 5]

    @pytest.mark.asyncio
    async def test_denied_rate_limit(self):
        cache = _cache()
        cache._sliding_window = AsyncMock(return_value=[0, 0, 12])

        assert await cache.check_rate_limit("k", 5, 60) == (False, 0, 12)

    @pytest.mark.asyncio
    async def test_remaining_requests_counts_window(self):
        cache = _cache()
        cache.client.zcount = AsyncMock(return_value=3)

        assert await cache.remaining_requests("k", 5, 60) == 2


class TestRedisAdapters:
    @pytest.mark.asyncio
    async def test_config_cache_delegates(self):
        cache = _cache()
        adapter = RedisConfigCache(cache)

        await adapter.set("key", {"a": 1}, 30)
        await adapter.remove("key")

        cache.client.set.assert_awaited_once()
        cache.client.delete.assert_awaited_once_with("cfg:key")

    @pytest.mark.asyncio
    async def test_rate_limiter_builds_decision(self):
        cache = _cache()
        limiter = RedisRateLimiter(cache, 5, 60)

        decision = await limiter.check("k")

        assert decision.allowed and decision.remaining == 4 and decision.limit == 5
