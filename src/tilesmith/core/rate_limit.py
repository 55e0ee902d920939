"""Fixed-window rate limiting on top of the cache collaborator.

Each key holds ``{"count": n, "reset_at": epoch_seconds}`` under
``ratelimit:<key>`` with a TTL equal to the remaining window.  Read-modify-write
is not atomic; concurrent requests can slip a few calls past the limit, which
is acceptable for abuse protection.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass

from .cache import CacheBase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float


class RateLimiter:
    """Count calls per key within fixed windows.

    Args:
        cache: Shared cache.  ``None`` keeps counters in process memory.
    """

    def __init__(self, cache: CacheBase | None = None) -> None:
        self.cache = cache
        self._memory: dict[str, tuple[int, float]] = {}

    async def _load(self, key: str) -> tuple[int, float] | None:
        if self.cache is None:
            return self._memory.get(key)
        raw = await self.cache.get(f"ratelimit:{key}")
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return int(data["count"]), float(data["reset_at"])
        except (ValueError, KeyError, TypeError):
            logger.warning(f"Discarding unreadable rate limit entry for {key}")
            return None

    async def _store(self, key: str, count: int, reset_at: float, now: float) -> None:
        if self.cache is None:
            self._memory[key] = (count, reset_at)
            return
        ttl = max(1, int(reset_at - now + 0.999))
        await self.cache.set(f"ratelimit:{key}", json.dumps({"count": count, "reset_at": reset_at}), ttl)

    async def check(self, key: str, limit: int, window_seconds: int) -> RateLimitResult:
        """Record one call for *key* and report whether it is within *limit*."""
        now = time.time()
        entry = await self._load(key)
        if entry is None or entry[1] <= now:
            count, reset_at = 1, now + window_seconds
        else:
            count, reset_at = entry[0] + 1, entry[1]
        await self._store(key, count, reset_at, now)

        allowed = count <= limit
        if not allowed:
            logger.info(f"Rate limit exceeded for {key} ({count}/{limit})")
        return RateLimitResult(allowed=allowed, remaining=max(0, limit - count), reset_at=reset_at)
