"""Key-value cache collaborator shared by the prompt/template core.

Every cached value is a JSON string with a TTL.  Components receive a
:class:`CacheBase` instance (or ``None``) instead of looking up a global client,
so tests can pass a :class:`MemoryCache` and production can pass a
:class:`RedisCache` without any startup-ordering concerns.

Cache semantics
---------------
- ``None`` in place of a cache means "always miss": every path still works.
- Writes are idempotent.  Two concurrent fills of the same key compute the same
  value, so last-write-wins is harmless and no locking is needed.
- Backend failures are logged and treated as a miss / dropped write.  A cache
  outage never surfaces as an error to the caller.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .config import TilesmithConfig

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = 1.0


class CacheBase(ABC):
    """Abstract TTL key-value store."""

    name: str = "base"

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the cached value for *key*, or ``None`` on miss."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store *value* under *key* for *ttl_seconds*."""

    async def close(self) -> None:
        """Release backend resources (no-op by default)."""


class MemoryCache(CacheBase):
    """In-process cache with monotonic-clock expiry.

    Used for local development and tests.  Expired entries are evicted on
    read, and writes sweep out every expired entry at most once per
    *sweep_interval_seconds*, so keys that are never read again do not
    accumulate.
    """

    name = "memory"

    def __init__(self, sweep_interval_seconds: float = SWEEP_INTERVAL_SECONDS) -> None:
        self._entries: dict[str, tuple[float, str]] = {}
        self._sweep_interval = sweep_interval_seconds
        self._next_sweep = 0.0

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= time.monotonic():
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        now = time.monotonic()
        if now >= self._next_sweep:
            self._sweep(now)
        self._entries[key] = (now + ttl_seconds, value)

    def _sweep(self, now: float) -> None:
        expired = [key for key, (expires_at, _) in self._entries.items() if expires_at <= now]
        for key in expired:
            del self._entries[key]
        self._next_sweep = now + self._sweep_interval
        if expired:
            logger.debug(f"Swept {len(expired)} expired cache entries")

    def __len__(self) -> int:
        return len(self._entries)


class RedisCache(CacheBase):
    """Redis-backed cache.

    The connection is established lazily by ``redis.asyncio`` on first use.
    """

    name = "redis"

    def __init__(self, client: aioredis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> RedisCache:
        return cls(aioredis.Redis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> str | None:
        try:
            return await self._client.get(key)
        except RedisError as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        try:
            await self._client.set(key, value, ex=ttl_seconds)
        except RedisError as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    async def close(self) -> None:
        await self._client.aclose()


def create_cache(settings: TilesmithConfig) -> CacheBase:
    """Build the cache backend selected by configuration.

    Args:
        settings: Application configuration

    Returns
    -------
    CacheBase
        ``RedisCache`` when ``redis_url`` is set, otherwise ``MemoryCache``
    """
    if settings.redis_url:
        logger.info("Using Redis cache backend")
        return RedisCache.from_url(settings.redis_url)
    logger.info("Using in-process memory cache backend")
    return MemoryCache()
