"""
Redis caching layer for the stats read model.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.asyncio import Redis
from redis.exceptions import RedisError
from redis.exceptions import ConnectionError as RedisConnectionError

from .config import get_settings

logger = logging.getLogger(__name__)


class CacheKeyBuilder:
    """Helper class for building consistent cache keys."""

    @staticmethod
    def user_stats(user_id: str) -> str:
        """Build cache key for a user's booking stats."""
        return f"stats:user:{user_id}"

    @staticmethod
    def organizer_stats(organizer_id: str) -> str:
        """Build cache key for an organizer's dashboard stats."""
        return f"stats:organizer:{organizer_id}"

    @staticmethod
    def event_inventory(event_id: str) -> str:
        """Build cache key for an event's inventory snapshot."""
        return f"event:inventory:{event_id}"


class RedisCache:
    """Redis cache manager with connection handling and operations."""

    def __init__(self):
        self.client: Optional[Redis] = None
        self.pool: Optional[redis.ConnectionPool] = None

    async def initialize(self) -> None:
        """Initialize Redis connection pool and client."""
        settings = get_settings()

        try:
            self.pool = redis.ConnectionPool.from_url(
                settings.redis_url,
                max_connections=settings.redis_max_connections,
                retry_on_timeout=True,
                socket_keepalive=True,
                health_check_interval=30
            )
            self.client = Redis(connection_pool=self.pool)

            await self.client.ping()
            logger.info("Redis cache initialized successfully")

        except RedisConnectionError as e:
            # The stats cache is optional; reads fall through to the database
            logger.warning("Redis unavailable, stats caching disabled: %s", e)
            self.client = None

    async def close(self) -> None:
        """Close Redis connections."""
        if self.client:
            await self.client.aclose()
        if self.pool:
            await self.pool.disconnect()
        logger.info("Redis cache connections closed")

    async def get(self, key: str) -> Optional[Any]:
        """
        Get value from cache.

        Returns:
            Cached value or None if not found
        """
        if not self.client:
            return None

        try:
            value = await self.client.get(key)
            if value:
                return json.loads(value)
            return None
        except (RedisError, ValueError) as e:
            logger.warning("Failed to get cache key %s: %s", key, e)
            return None

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None
    ) -> bool:
        """
        Set value in cache.

        Args:
            key: Cache key
            value: Value to cache
            ttl: Time to live in seconds

        Returns:
            True if successful, False otherwise
        """
        if not self.client:
            return False

        try:
            serialized_value = json.dumps(value, default=str)
            if ttl:
                await self.client.setex(key, ttl, serialized_value)
            else:
                await self.client.set(key, serialized_value)
            return True
        except (RedisError, TypeError) as e:
            logger.warning("Failed to set cache key %s: %s", key, e)
            return False

    async def delete(self, *keys: str) -> bool:
        """Delete one or more keys from cache."""
        if not self.client or not keys:
            return False

        try:
            await self.client.delete(*keys)
            return True
        except RedisError as e:
            logger.warning("Failed to delete cache keys %s: %s", keys, e)
            return False


# Global cache instance
cache = RedisCache()


async def init_cache() -> None:
    """Initialize the global cache instance."""
    await cache.initialize()


async def close_cache() -> None:
    """Close the global cache instance."""
    await cache.close()


def get_cache() -> RedisCache:
    """Get the global cache instance."""
    return cache


class CacheInvalidator:
    """Helper class for cache invalidation strategies."""

    @staticmethod
    def booking_cache_keys(
        user_id: Optional[str] = None,
        organizer_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> list[str]:
        keys = []
        if user_id:
            keys.append(CacheKeyBuilder.user_stats(str(user_id)))
        if organizer_id:
            keys.append(CacheKeyBuilder.organizer_stats(str(organizer_id)))
        if event_id:
            keys.append(CacheKeyBuilder.event_inventory(str(event_id)))
        return keys

    @staticmethod
    async def invalidate_booking_caches(
        user_id: Optional[str] = None,
        organizer_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> None:
        """Drop every read-side entry affected by a booking state change."""
        keys = CacheInvalidator.booking_cache_keys(user_id, organizer_id, event_id)
        if keys:
            await get_cache().delete(*keys)
            logger.debug(f"Invalidated stats caches: {', '.join(keys)}")

