"""
Redis Cache Utility
Caches idempotent gateway reads (account list, index quotes) with TTL support
"""

import json
from typing import Optional, Any, Dict
import redis
from calendar_trader.core.config import settings
from calendar_trader.core.logging import get_logger

logger = get_logger(__name__)


class RedisCache:
    """Redis cache manager with TTL support"""

    def __init__(self):
        """Initialize Redis connection"""
        self.redis_client: Optional[redis.Redis] = None
        self._connected = False

        if not settings.enable_caching:
            logger.info("Caching is disabled")
            return

        try:
            self.redis_client = redis.from_url(
                settings.redis_url,
                decode_responses=True
            )
            # Test connection
            self.redis_client.ping()
            self._connected = True
            logger.info("Redis cache connected successfully")
        except redis.RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            self.redis_client = None
            self._connected = False

    def _key(self, key: str, namespace: Optional[str] = None) -> str:
        parts = [settings.cache.key_prefix]
        if namespace:
            parts.append(namespace)
        parts.append(key)
        return ":".join(parts)

    def get(self, key: str, namespace: Optional[str] = None) -> Optional[Any]:
        """Get value from cache"""
        if not self.redis_client:
            return None

        try:
            value = self.redis_client.get(self._key(key, namespace))
            if value:
                return json.loads(value)
            return None
        except (redis.RedisError, ValueError) as e:
            logger.error(f"Cache get error: {e}")
            return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None, namespace: Optional[str] = None) -> bool:
        """Set value in cache with TTL in seconds"""
        if not self.redis_client:
            return False

        try:
            json_value = json.dumps(value)
            self.redis_client.setex(self._key(key, namespace), ttl or settings.cache.default_ttl, json_value)
            return True
        except (redis.RedisError, TypeError) as e:
            logger.error(f"Cache set error: {e}")
            return False


class CacheManager:
    """Cache manager with connection state tracking"""

    def __init__(self):
        self._connected = False
        self._cache: Optional[RedisCache] = None

    @property
    def cache(self) -> RedisCache:
        """Get or create cache instance"""
        if self._cache is None:
            self._cache = RedisCache()
            self._connected = self._cache._connected
        return self._cache

    @property
    def connected(self) -> bool:
        return self._connected

    def connect(self) -> bool:
        """Open the Redis connection if caching is enabled"""
        return self.cache._connected

    def get_metrics(self) -> Dict[str, Any]:
        """Get cache metrics"""
        if not self._connected or not self.cache.redis_client:
            return {"status": "disconnected"}

        try:
            info = self.cache.redis_client.info()
            return {
                "status": "connected",
                "memory_used": info.get("used_memory_human", "unknown"),
                "keyspace_hits": info.get("keyspace_hits", 0),
                "keyspace_misses": info.get("keyspace_misses", 0)
            }
        except redis.RedisError as e:
            logger.error(f"Error getting cache metrics: {e}")
            return {"status": "error", "error": str(e)}

    def disconnect(self):
        """Disconnect from cache"""
        if self._cache and self._cache.redis_client:
            try:
                self._cache.redis_client.close()
            except redis.RedisError as e:
                logger.warning(f"Error closing Redis connection: {e}")
        self._cache = None
        self._connected = False


# Global cache manager
cache_manager = CacheManager()
