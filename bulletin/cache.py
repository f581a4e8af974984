"""
Redis cache for listing pages.

Only ``articles:list:*`` keys are written.  Redis is optional: when the
ping at startup fails, or any later call errors, the manager behaves as a
permanent miss and every listing is served from the database.
"""
import json
import logging

import redis.asyncio as redis

from bulletin.config import settings

logger = logging.getLogger(__name__)

ARTICLE_LIST_PATTERN = "articles:list:*"


class CacheManager:
    def __init__(self) -> None:
        self._redis: redis.Redis | None = None
        self._hits: int = 0
        self._misses: int = 0

    async def connect(self) -> None:
        client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        try:
            await client.ping()
        except Exception as exc:
            logger.warning("Redis at %s unreachable, listing cache off: %s", settings.REDIS_URL, exc)
            await client.aclose()
            return
        self._redis = client
        logger.info("Listing cache on: %s", settings.REDIS_URL)

    async def disconnect(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    @property
    def enabled(self) -> bool:
        return self._redis is not None

    async def get(self, key: str) -> dict | None:
        value = None
        if self._redis:
            try:
                raw = await self._redis.get(key)
                value = json.loads(raw) if raw is not None else None
            except Exception as exc:
                logger.debug("Cache read failed for %r: %s", key, exc)
        if value is None:
            self._misses += 1
        else:
            self._hits += 1
        return value

    async def set(self, key: str, value: dict, ttl: int | None = None) -> None:
        """Store *value*; a TTL of zero or less means it is already stale."""
        if not self._redis or (ttl is not None and ttl <= 0):
            return
        try:
            await self._redis.set(key, json.dumps(value, default=str), ex=ttl)
        except Exception as exc:
            logger.debug("Cache write failed for %r: %s", key, exc)

    async def delete_pattern(self, pattern: str) -> None:
        if not self._redis:
            return
        try:
            keys = [key async for key in self._redis.scan_iter(match=pattern)]
            if keys:
                await self._redis.delete(*keys)
                logger.debug("Dropped %d cached key(s) for %r", len(keys), pattern)
        except Exception as exc:
            logger.debug("Cache delete failed for %r: %s", pattern, exc)

    async def invalidate_article_lists(self) -> None:
        await self.delete_pattern(ARTICLE_LIST_PATTERN)

    @property
    def stats(self) -> dict:
        total = self._hits + self._misses
        return {
            "enabled": self.enabled,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total * 100, 1) if total > 0 else 0.0,
        }


cache = CacheManager()
