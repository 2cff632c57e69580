"""Redis JSON cache and scrape-progress snapshots.

The cache is optional: every operation degrades to a miss / no-op when Redis
is unreachable, so crawling and persistence never depend on it.
"""

import json
import logging
import re
import time
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError

from catalog_crawler.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROGRESS_KEY_PREFIX = "scrape-progress:"
NAVIGATION_CACHE_KEY = "nav:all"


def progress_key(slug: str) -> str:
    return f"{PROGRESS_KEY_PREFIX}{slug}"


class CacheService:
    """Best-effort JSON cache over Redis."""

    def __init__(self, redis_url: Optional[str] = None, client: Optional[redis.Redis] = None):
        """
        Args:
            redis_url: Redis connection URL (defaults to settings)
            client: Pre-built client, used instead of connecting
        """
        self.redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = client

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[Any]:
        """Cached value for ``key``, or None on miss or when Redis is down."""
        try:
            client = await self._get_redis()
            data = await client.get(key)
        except RedisError as e:
            logger.debug(f"Cache get failed for {key}: {e}")
            return None
        if data is None:
            return None
        try:
            return json.loads(data)
        except ValueError:
            logger.warning(f"Discarding undecodable cache entry {key}")
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store ``value`` as JSON, expiring after ``ttl`` seconds when given."""
        serialized = json.dumps(value, default=str)
        try:
            client = await self._get_redis()
            await client.set(key, serialized, ex=ttl or None)
        except RedisError as e:
            logger.debug(f"Cache set failed for {key}: {e}")

    async def delete(self, key: str) -> None:
        try:
            client = await self._get_redis()
            await client.delete(key)
        except RedisError as e:
            logger.debug(f"Cache delete failed for {key}: {e}")

    async def delete_pattern(self, pattern: str) -> int:
        """Remove every key matching a glob pattern, e.g. ``cat:*``."""
        try:
            client = await self._get_redis()
            keys = await client.keys(pattern)
            if keys:
                await client.delete(*keys)
            return len(keys)
        except RedisError as e:
            logger.debug(f"Cache delete_pattern failed for {pattern}: {e}")
            return 0

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[T]],
        ttl: Optional[int] = None,
    ) -> T:
        """Cache-aside read: return the cached value or compute, store and return it."""
        cached = await self.get(key)
        if cached is not None:
            return cached

        value = await factory()
        await self.set(key, value, ttl)
        return value

    async def stats(self) -> Dict[str, Any]:
        """Connection state, key count and memory use for monitoring."""
        try:
            client = await self._get_redis()
            info = await client.info("memory")
            keys = await client.dbsize()
        except RedisError:
            return {"connected": False}

        if isinstance(info, dict):
            memory = info.get("used_memory_human", "unknown")
        else:
            match = re.search(r"used_memory_human:(\S+)", str(info))
            memory = match.group(1) if match else "unknown"
        return {"connected": True, "keys": keys, "memory": memory}

    # ------------------------------------------------------------------
    # Scrape progress
    # ------------------------------------------------------------------

    async def set_scrape_progress(
        self,
        slug: str,
        current_page: int,
        total_pages: int,
        ttl: Optional[int] = None,
    ) -> None:
        """Record crawl position; the short TTL clears it if the worker dies."""
        await self.set(
            progress_key(slug),
            {
                "currentPage": current_page,
                "totalPages": total_pages,
                "timestamp": int(time.time() * 1000),
            },
            ttl or settings.progress_ttl_seconds,
        )

    async def get_scrape_progress(self, slug: str) -> Optional[Dict[str, int]]:
        data = await self.get(progress_key(slug))
        if not isinstance(data, dict):
            return None
        return {"currentPage": data.get("currentPage"), "totalPages": data.get("totalPages")}

    async def clear_scrape_progress(self, slug: str) -> None:
        await self.delete(progress_key(slug))
