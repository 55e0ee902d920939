"""Tests for tilesmith.core.rate_limit."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from tilesmith.core.cache import MemoryCache
from tilesmith.core.rate_limit import RateLimiter


@pytest.fixture(params=["memory-dict", "cache"])
def limiter(request):
    return RateLimiter(MemoryCache() if request.param == "cache" else None)


class TestRateLimiter:
    """Fixed-window counting with and without a cache backend."""

    @pytest.mark.asyncio
    async def test_allows_up_to_limit(self, limiter):
        results = [await limiter.check("user", 3, 60) for _ in range(4)]
        assert [r.allowed for r in results] == [True, True, True, False]
        assert [r.remaining for r in results] == [2, 1, 0, 0]

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, limiter):
        await limiter.check("a", 1, 60)
        assert (await limiter.check("b", 1, 60)).allowed
        assert not (await limiter.check("a", 1, 60)).allowed

    @pytest.mark.asyncio
    async def test_window_resets(self, limiter, monkeypatch):
        now = [1_000_000.0]
        monkeypatch.setattr("tilesmith.core.rate_limit.time", SimpleNamespace(time=lambda: now[0]))
        await limiter.check("user", 1, 60)
        assert not (await limiter.check("user", 1, 60)).allowed
        now[0] += 61
        result = await limiter.check("user", 1, 60)
        assert result.allowed
        assert result.reset_at == now[0] + 60

    @pytest.mark.asyncio
    async def test_cache_entry_format(self):
        cache = MemoryCache()
        await RateLimiter(cache).check("ip", 5, 60)
        assert '"count": 1' in await cache.get("ratelimit:ip")
