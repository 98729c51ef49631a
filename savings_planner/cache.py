"""Redis cache used for exchange rates."""

import json
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.asyncio import Redis

from savings_planner.config import Settings
from savings_planner.logging_config import get_logger

logger = get_logger(__name__)


class CacheManager:
    """Namespaced JSON cache over Redis.

    Every operation degrades to a miss (or a no-op) when Redis is not
    connected or errors, so callers never fail because of the cache.
    """

    DEFAULT_TTL = 300  # 5 minutes

    PREFIX = "savings_planner:"

    def __init__(self, settings: Settings, redis: Optional[Redis] = None) -> None:
        """Initialize cache manager.

        Args:
            settings: Application settings
            redis: Already-connected client (optional)
        """
        self.settings = settings
        self.redis: Optional[Redis] = redis
        self._stats = {"hits": 0, "misses": 0, "errors": 0}

    async def connect(self) -> None:
        """Connect to Redis."""
        try:
            self.redis = aioredis.from_url(
                self.settings.redis_url,
                max_connections=self.settings.redis_max_connections,
                encoding="utf-8",
                decode_responses=True,
            )
            await self.redis.ping()
            logger.info("Connected to Redis successfully")
        except Exception as e:
            logger.error("Failed to connect to Redis", error=str(e), exc_info=True)
            raise

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            logger.info("Disconnected from Redis")

    def _make_key(self, key: str) -> str:
        """Create namespaced cache key."""
        return f"{self.PREFIX}{key}"

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache.

        Args:
            key: Cache key

        Returns:
            Cached value or None if not found
        """
        if not self.redis:
            return None

        try:
            value = await self.redis.get(self._make_key(key))
            if value:
                self._stats["hits"] += 1
                return json.loads(value)
            self._stats["misses"] += 1
            return None
        except Exception as e:
            self._stats["errors"] += 1
            logger.error("Cache get error", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, expire: Optional[int] = None) -> bool:
        """Set value in cache.

        Args:
            key: Cache key
            value: JSON-serializable value (Decimals are stored as strings)
            expire: Expiration time in seconds (defaults to DEFAULT_TTL)

        Returns:
            True if successful, False otherwise
        """
        if not self.redis:
            return False

        try:
            serialized = json.dumps(value, default=str)
            ttl = expire or self.DEFAULT_TTL
            await self.redis.setex(self._make_key(key), ttl, serialized)
            return True
        except Exception as e:
            self._stats["errors"] += 1
            logger.error("Cache set error", key=key, error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        """Delete value from cache."""
        if not self.redis:
            return False

        try:
            await self.redis.delete(self._make_key(key))
            return True
        except Exception as e:
            self._stats["errors"] += 1
            logger.error("Cache delete error", key=key, error=str(e))
            return False

    def get_stats(self) -> dict:
        """Get cache statistics."""
        stats: dict = self._stats.copy()
        total = stats["hits"] + stats["misses"]
        stats["hit_rate"] = (stats["hits"] / total * 100) if total > 0 else 0
        return stats
