from __future__ import annotations

import asyncio
import json
import logging
from typing import Protocol, Sequence

from redis.asyncio import Redis

from billrail.core.config import Settings, get_settings
from billrail.services.effects import CacheKey


logger = logging.getLogger(__name__)


class CacheInvalidator(Protocol):
    async def invalidate(self, keys: Sequence[CacheKey]) -> None: ...


class NullCacheInvalidator:
    async def invalidate(self, keys: Sequence[CacheKey]) -> None:
        return None


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_cache_redis() -> Redis | None:
    # Reuse one Redis client per event loop for invalidation traffic.
    settings = get_settings()
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("cache_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


class RedisCacheInvalidator:
    """Deletes cached entries and broadcasts the keys to in-process caches.

    Deleting an absent key is a no-op, so concurrent invalidations of the
    same key commute.
    """

    def __init__(self, settings: Settings | None = None, *, redis: Redis | None = None) -> None:
        self._settings = settings or get_settings()
        self._redis = redis

    def _namespaced(self, key: CacheKey) -> str:
        return f"{self._settings.cache_key_prefix}:{key}"

    async def _client(self) -> Redis | None:
        if self._redis is not None:
            return self._redis
        return await get_cache_redis()

    async def invalidate(self, keys: Sequence[CacheKey]) -> None:
        if not keys:
            return
        client = await self._client()
        if client is None:
            logger.warning("cache_invalidation_skipped reason=redis_unavailable keys=%s", len(keys))
            return
        await client.delete(*[self._namespaced(key) for key in keys])
        await client.publish(
            self._settings.cache_invalidation_channel,
            json.dumps({"keys": list(keys)}),
        )


def build_cache_invalidator(settings: Settings | None = None) -> CacheInvalidator:
    settings = settings or get_settings()
    if not settings.cache_invalidation_enabled:
        return NullCacheInvalidator()
    return RedisCacheInvalidator(settings)
