import redis.asyncio as redis
from typing import Optional, Any, Dict
from datetime import datetime
import json
import logging

from app.core.config import settings
from app.core.circuit_breaker import async_circuit_breaker, redis_breaker

logger = logging.getLogger(__name__)

# Named caches and their default Time-To-Live (seconds)
CACHE_TTLS: Dict[str, int] = {
    "queries": settings.QUERY_CACHE_TTL_SECONDS,
    "performance": settings.PERFORMANCE_CACHE_TTL_SECONDS,
}


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


class CacheService:
    """
    Shared get/set/invalidate cache with TTL, backed by Redis.

    Every operation degrades to a cache miss when Redis is unavailable, so
    callers never have to handle cache errors themselves.
    """

    def __init__(self):
        # Connection will be initialized externally in app/core/events.py
        self.redis_client: Optional[redis.Redis] = None

    def initialize_client(self):
        """Initializes the Redis client for use by this service."""
        if not settings.CACHE_ENABLED:
            logger.info("⏭️ Cache disabled by configuration")
            return
        if not self.redis_client:
            self.redis_client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info(
                f"✅ Redis client initialized: {settings.REDIS_HOST}:{settings.REDIS_PORT}"
            )

    def get_client(self) -> redis.Redis:
        """Returns the initialized Redis client instance."""
        if not self.redis_client:
            raise RuntimeError(
                "Redis client not initialized. Call initialize_client() first."
            )
        return self.redis_client

    @property
    def is_enabled(self) -> bool:
        return self.redis_client is not None

    @staticmethod
    def _key(cache_name: str, key: str) -> str:
        if cache_name not in CACHE_TTLS:
            raise KeyError(f"Cache '{cache_name}' not found")
        return f"{settings.CACHE_KEY_PREFIX}:{cache_name}:{key}"

    @async_circuit_breaker(redis_breaker)
    async def _get(self, full_key: str) -> Optional[str]:
        return await self.get_client().get(full_key)

    @async_circuit_breaker(redis_breaker)
    async def _set(self, full_key: str, payload: str, ttl: int) -> None:
        await self.get_client().setex(full_key, ttl, payload)

    async def get(self, cache_name: str, key: str) -> Optional[Any]:
        """
        Retrieve a cached value.

        Returns:
            The decoded value, or None on a miss or when Redis is unavailable
        """
        full_key = self._key(cache_name, key)
        if not self.is_enabled:
            return None
        try:
            cached = await self._get(full_key)
            if cached is None:
                logger.debug(f"🔍 Cache MISS [{cache_name}]: {key}")
                return None
            logger.debug(f"📦 Cache HIT [{cache_name}]: {key}")
            return json.loads(cached)
        except Exception as e:
            logger.error(f"❌ Error reading cache [{cache_name}] {key}: {e}")
            return None

    async def set(
        self, cache_name: str, key: str, value: Any, ttl: Optional[int] = None
    ) -> bool:
        """
        Store a JSON-serializable value under the named cache.

        Args:
            cache_name: One of the configured caches ("queries", "performance")
            key: Key within that cache
            value: Value to store
            ttl: Override of the cache's default TTL in seconds

        Returns:
            True if the value was stored
        """
        full_key = self._key(cache_name, key)
        if not self.is_enabled:
            return False
        try:
            payload = json.dumps(value, default=_json_default)
            await self._set(full_key, payload, ttl or CACHE_TTLS[cache_name])
            logger.debug(f"📦 Cache SET [{cache_name}]: {key}")
            return True
        except Exception as e:
            logger.error(f"❌ Error writing cache [{cache_name}] {key}: {e}")
            return False

    async def invalidate(self, cache_name: str, key: str) -> bool:
        """Delete one key. Returns True if something was removed."""
        full_key = self._key(cache_name, key)
        if not self.is_enabled:
            return False
        try:
            result = await self.get_client().delete(full_key)
            if result:
                logger.debug(f"🗑️ Cache DEL [{cache_name}]: {key}")
            return bool(result)
        except Exception as e:
            logger.error(f"❌ Error invalidating cache [{cache_name}] {key}: {e}")
            return False

    async def clear(self, cache_name: str) -> int:
        """Delete every key of a named cache. Returns the number of keys removed."""
        pattern = self._key(cache_name, "*")
        if not self.is_enabled:
            return 0
        removed = 0
        try:
            client = self.get_client()
            async for full_key in client.scan_iter(match=pattern):
                removed += await client.delete(full_key)
            logger.info(f"🧹 Cache FLUSH [{cache_name}]: {removed} keys")
        except Exception as e:
            logger.error(f"❌ Error clearing cache [{cache_name}]: {e}")
        return removed

    async def close(self):
        """Close Redis connection."""
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None
            logger.info("✅ Redis connection closed")


# Create singleton instance
cache_service = CacheService()
