"""Cache service with Redis (production) or in-process memory backend.

Redis is used when REDIS_ENABLED=true so that several engine replicas share
execution records and cancellation signals. A single process runs fine on the
memory backend, which keeps values JSON-encoded so both backends behave alike.
"""

import json
import time
from typing import Any, Dict, Optional, Set

import redis.asyncio as redis

from core.config import Settings
from core.logging import get_logger, log_cache_operation

logger = get_logger(__name__)


class CacheService:
    """Async key-value cache with Redis or memory backend.

    Backend selection:
    - Redis: When REDIS_ENABLED=true and the server answers PING
    - Memory: Otherwise, or if the Redis connection fails at startup
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.redis: Optional[redis.Redis] = None
        self.use_redis = settings.redis_enabled and bool(settings.redis_url)
        # key -> (serialized value, expires_at or None)
        self.memory_cache: Dict[str, tuple] = {}
        self.memory_sets: Dict[str, Set[str]] = {}

    async def startup(self):
        """Initialize cache connection."""
        if self.use_redis:
            try:
                self.redis = redis.from_url(
                    self.settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_timeout=5,
                    socket_connect_timeout=5,
                    retry_on_timeout=True
                )
                await self.redis.ping()
                logger.info("Redis cache initialized", url=self.settings.redis_url)
            except Exception as e:
                logger.warning("Redis connection failed, falling back to memory", error=str(e))
                self.use_redis = False
                self.redis = None
        else:
            logger.info("Using in-memory cache", redis_enabled=self.settings.redis_enabled)

    async def shutdown(self):
        """Close cache connections."""
        if self.redis:
            await self.redis.aclose()
            logger.info("Redis cache connections closed")

        self.memory_cache.clear()
        self.memory_sets.clear()

    def is_redis_available(self) -> bool:
        return self.use_redis and self.redis is not None

    def _memory_get(self, key: str) -> Optional[str]:
        entry = self.memory_cache.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.time():
            del self.memory_cache[key]
            return None
        return value

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        try:
            if self.is_redis_available():
                value = await self.redis.get(key)
            else:
                value = self._memory_get(key)

            log_cache_operation(logger, "get", key, hit=value is not None)
            return json.loads(value) if value is not None else None

        except Exception as e:
            logger.error("Cache get failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set value in cache. ttl=0 stores without expiry."""
        try:
            ttl = self.settings.cache_ttl if ttl is None else ttl
            serialized = json.dumps(value, default=str)

            if self.is_redis_available():
                if ttl:
                    await self.redis.setex(key, ttl, serialized)
                else:
                    await self.redis.set(key, serialized)
            else:
                expires_at = time.time() + ttl if ttl else None
                self.memory_cache[key] = (serialized, expires_at)

            log_cache_operation(logger, "set", key, ttl=ttl)
            return True

        except Exception as e:
            logger.error("Cache set failed", key=key, error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        """Delete value from cache."""
        try:
            if self.is_redis_available():
                deleted = bool(await self.redis.delete(key))
            else:
                deleted = self.memory_cache.pop(key, None) is not None
            log_cache_operation(logger, "delete", key, deleted=deleted)
            return deleted

        except Exception as e:
            logger.error("Cache delete failed", key=key, error=str(e))
            return False

    # ============================================================================
    # Set operations (active execution tracking)
    # ============================================================================

    async def set_add(self, key: str, member: str) -> bool:
        try:
            if self.is_redis_available():
                await self.redis.sadd(key, member)
            else:
                self.memory_sets.setdefault(key, set()).add(member)
            return True
        except Exception as e:
            logger.error("Cache set add failed", key=key, error=str(e))
            return False

    async def set_remove(self, key: str, member: str) -> bool:
        try:
            if self.is_redis_available():
                await self.redis.srem(key, member)
            else:
                self.memory_sets.get(key, set()).discard(member)
            return True
        except Exception as e:
            logger.error("Cache set remove failed", key=key, error=str(e))
            return False

    async def set_members(self, key: str) -> Set[str]:
        try:
            if self.is_redis_available():
                return set(await self.redis.smembers(key))
            return set(self.memory_sets.get(key, set()))
        except Exception as e:
            logger.error("Cache set members failed", key=key, error=str(e))
            return set()
