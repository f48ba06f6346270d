"""Redis cache for rendered leaderboard pages.

Pages are keyed by their query and a generation counter; bumping the
counter orphans every cached page at once and TTLs clean them up. Redis
errors are logged and treated as cache misses.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

DEFAULT_LEADERBOARD_CACHE_TTL = 30


class LeaderboardCache:
    """JSON page cache in front of the leaderboard read path."""

    def __init__(
        self,
        redis: Redis | None,
        *,
        ttl_seconds: int = DEFAULT_LEADERBOARD_CACHE_TTL,
        prefix: str = "leaderboard:",
    ) -> None:
        self._redis = redis
        self._ttl = ttl_seconds
        self._prefix = prefix

    @property
    def enabled(self) -> bool:
        return self._redis is not None

    def _generation_key(self) -> str:
        return f"{self._prefix}generation"

    async def _generation(self, redis: Redis) -> int:
        raw = await redis.get(self._generation_key())
        if raw is None:
            return 0
        return int(raw if isinstance(raw, (str, int)) else raw.decode())

    def _page_key(self, generation: int, query: dict[str, Any]) -> str:
        parts = ":".join(f"{k}={query[k]}" for k in sorted(query))
        return f"{self._prefix}g{generation}:{parts}"

    async def get_page(self, query: dict[str, Any]) -> dict[str, Any] | None:
        if not self._redis:
            return None
        try:
            generation = await self._generation(self._redis)
            cached = await self._redis.get(self._page_key(generation, query))
            if cached is None:
                return None
            data: dict[str, Any] = json.loads(
                cached if isinstance(cached, str) else cached.decode()
            )
            return data
        except Exception as e:
            logger.warning("Failed to read cached leaderboard page %s: %s", query, e)
            return None

    async def set_page(self, query: dict[str, Any], page: dict[str, Any]) -> None:
        if not self._redis:
            return
        try:
            generation = await self._generation(self._redis)
            await self._redis.set(
                self._page_key(generation, query),
                json.dumps(page),
                ex=self._ttl,
            )
        except Exception as e:
            logger.warning("Failed to cache leaderboard page %s: %s", query, e)

    async def invalidate(self) -> None:
        if not self._redis:
            return
        try:
            await self._redis.incr(self._generation_key())
        except Exception as e:
            logger.warning("Failed to invalidate leaderboard cache: %s", e)


def create_redis(url: str | None) -> Redis | None:
    """Client for ``REDIS_URL``, or None when caching is disabled."""
    if not url:
        return None
    return Redis.from_url(url)
