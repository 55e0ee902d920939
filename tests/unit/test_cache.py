"""Tests for tilesmith.core.cache."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from tilesmith.core.cache import MemoryCache, RedisCache, create_cache
from tilesmith.core.config import TilesmithConfig


class TestMemoryCache:
    @pytest.mark.asyncio
    async def test_set_and_get(self):
        cache = MemoryCache()
        await cache.set("k", "v", 60)
        assert await cache.get("k") == "v"

    @pytest.mark.asyncio
    async def test_missing_key(self):
        assert await MemoryCache().get("nope") is None

    @pytest.mark.asyncio
    async def test_expired_entry_evicted(self, monkeypatch):
        cache = MemoryCache()
        now = [1000.0]
        monkeypatch.setattr("tilesmith.core.cache.time", SimpleNamespace(monotonic=lambda: now[0]))
        await cache.set("k", "v", 10)
        now[0] += 11
        assert await cache.get("k") is None
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_unread_expired_entries_swept_on_write(self, monkeypatch):
        cache = MemoryCache()
        now = [1000.0]
        monkeypatch.setattr("tilesmith.core.cache.time", SimpleNamespace(monotonic=lambda: now[0]))
        for i in range(1000):
            await cache.set(f"k{i}", "v", 1)
        assert len(cache) == 1000

        now[0] += 1.1
        await cache.set("fresh", "v", 60)
        assert len(cache) == 1
        assert await cache.get("fresh") == "v"

    @pytest.mark.asyncio
    async def test_sweep_runs_at_most_once_per_interval(self, monkeypatch):
        cache = MemoryCache(sweep_interval_seconds=30)
        now = [1000.0]
        monkeypatch.setattr("tilesmith.core.cache.time", SimpleNamespace(monotonic=lambda: now[0]))
        await cache.set("short", "v", 1)
        now[0] += 5
        await cache.set("other", "v", 60)
        assert len(cache) == 2

        now[0] += 30
        await cache.set("third", "v", 60)
        assert len(cache) == 2
        assert await cache.get("short") is None

    @pytest.mark.asyncio
    async def test_non_positive_ttl_not_stored(self):
        cache = MemoryCache()
        await cache.set("k", "v", 0)
        assert await cache.get("k") is None


class TestRedisCache:
    """Redis failures degrade to misses."""

    @pytest.mark.asyncio
    async def test_get_and_set_delegate(self):
        client = AsyncMock()
        client.get.return_value = "v"
        cache = RedisCache(client)
        await cache.set("k", "v", 30)
        client.set.assert_awaited_once_with("k", "v", ex=30)
        assert await cache.get("k") == "v"

    @pytest.mark.asyncio
    async def test_errors_are_misses(self):
        client = AsyncMock()
        client.get.side_effect = RedisConnectionError("down")
        client.set.side_effect = RedisConnectionError("down")
        cache = RedisCache(client)
        assert await cache.get("k") is None
        await cache.set("k", "v", 30)


class TestCreateCache:
    def test_memory_by_default(self, test_config):
        assert create_cache(test_config).name == "memory"

    def test_redis_when_url_set(self, temp_dir):
        settings = TilesmithConfig(_env_file=None, tiles_dir=temp_dir, redis_url="redis://localhost:6379/0")
        assert isinstance(create_cache(settings), RedisCache)
