"""
Key-Value Backend for the Response Cache
========================================

Async key-value store with TTL, backed by Redis with automatic fallback to
an in-process dict.

Features:
- TTL-based expiration (expired entries read as misses)
- JSON serialization
- Fallback to in-memory if Redis unavailable
- Namespace prefixing for key isolation
- Prefix deletion (entity invalidation) via SCAN

Usage:
    backend = RedisCache(redis_url="redis://localhost:6379/0")
    await backend.connect()
    await backend.set("ai:deal_coach:42:ab12", {"data": "value"}, ttl_seconds=900)
    result = await backend.get("ai:deal_coach:42:ab12")
"""

import hashlib
import json
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class RedisCache:
    """
    Redis-based key-value store with in-memory fallback.

    Without a redis_url, or when Redis is unreachable at connect time,
    everything lives in the in-memory dict.

    Args:
        redis_url: Redis URL, None for memory-only
        prefix: Key prefix for namespace isolation
        fallback_to_memory: Use the in-memory dict when Redis is unavailable
        clock: Returns the current time in seconds (injectable for tests)
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        prefix: str = "crm_ai",
        fallback_to_memory: bool = True,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self.fallback_to_memory = fallback_to_memory
        self._clock = clock or time.time
        self._redis: Optional[Any] = None
        self._memory_cache: Dict[str, Tuple[Optional[float], Any]] = {}
        self._use_memory = redis_url is None

    async def connect(self) -> None:
        """Establish the Redis connection (no-op in memory mode)."""
        if self._use_memory:
            logger.info("Response cache using in-memory backend")
            return

        import redis.asyncio as aioredis

        try:
            self._redis = aioredis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
            )
            await self._redis.ping()
            url = self.redis_url
            logger.info(f"Redis cache connected: {url.split('@')[-1] if '@' in url else url}")
        except Exception as e:
            if not self.fallback_to_memory:
                raise
            logger.warning(f"Redis connection failed: {e}. Using in-memory cache.")
            self._redis = None
            self._use_memory = True

    @property
    def backend(self) -> str:
        return "memory" if self._use_memory or self._redis is None else "redis"

    def _make_key(self, key: str) -> str:
        """Create prefixed key."""
        return f"{self.prefix}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        """
        Get value from cache.

        Returns:
            Cached value or None if not found/expired
        """
        full_key = self._make_key(key)

        if self.backend == "memory":
            return self._memory_get(full_key)

        try:
            value = await self._redis.get(full_key)
            if value is None:
                return None
            return json.loads(value)
        except Exception as e:
            logger.warning(f"Redis get failed: {e}")
            return self._memory_get(full_key)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        """
        Set value in cache.

        Args:
            key: Cache key
            value: Value to cache (must be JSON serializable)
            ttl_seconds: Time to live in seconds

        Returns:
            True if successful
        """
        full_key = self._make_key(key)

        if self.backend == "memory":
            return self._memory_set(full_key, value, ttl_seconds)

        try:
            serialized = json.dumps(value, default=str)
            if ttl_seconds:
                await self._redis.setex(full_key, ttl_seconds, serialized)
            else:
                await self._redis.set(full_key, serialized)
            return True
        except Exception as e:
            logger.warning(f"Redis set failed: {e}")
            return self._memory_set(full_key, value, ttl_seconds)

    async def delete(self, key: str) -> bool:
        """Delete key from cache. Returns True if a key was deleted."""
        full_key = self._make_key(key)

        if self.backend == "memory":
            return self._memory_delete(full_key)

        try:
            return await self._redis.delete(full_key) > 0
        except Exception as e:
            logger.warning(f"Redis delete failed: {e}")
            return self._memory_delete(full_key)

    async def clear_prefix(self, prefix: str) -> int:
        """
        Clear all keys with given prefix.

        Returns:
            Number of keys deleted
        """
        full_prefix = self._make_key(prefix)

        if self.backend == "memory":
            keys_to_delete = [k for k in self._memory_cache if k.startswith(full_prefix)]
            for k in keys_to_delete:
                del self._memory_cache[k]
            return len(keys_to_delete)

        try:
            count = 0
            async for k in self._redis.scan_iter(match=f"{full_prefix}*", count=500):
                count += await self._redis.delete(k)
            return count
        except Exception as e:
            logger.warning(f"Redis clear_prefix failed: {e}")
            return 0

    async def sweep(self) -> int:
        """Evict expired in-memory entries. Redis expires keys server-side."""
        now = self._clock()
        expired = [
            k for k, (expires_at, _) in self._memory_cache.items()
            if expires_at is not None and now >= expires_at
        ]
        for k in expired:
            del self._memory_cache[k]
        return len(expired)

    async def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        stats = {
            "backend": self.backend,
            "connected": self.backend == "redis",
        }

        if self.backend == "memory":
            stats["memory_keys"] = len(self._memory_cache)
        else:
            try:
                info = await self._redis.info("memory")
                stats["redis_memory_used"] = info.get("used_memory_human", "N/A")
                stats["redis_keys"] = await self._redis.dbsize()
            except Exception as e:
                logger.warning(f"Redis stats failed: {e}")

        return stats

    # =========================================================================
    # MEMORY FALLBACK
    # =========================================================================

    def _memory_get(self, key: str) -> Optional[Any]:
        if key not in self._memory_cache:
            return None

        expires_at, value = self._memory_cache[key]
        if expires_at is not None and self._clock() >= expires_at:
            del self._memory_cache[key]
            return None

        return value

    def _memory_set(self, key: str, value: Any, ttl_seconds: Optional[int]) -> bool:
        expires_at = None
        if ttl_seconds:
            expires_at = self._clock() + ttl_seconds

        self._memory_cache[key] = (expires_at, value)
        return True

    def _memory_delete(self, key: str) -> bool:
        if key in self._memory_cache:
            del self._memory_cache[key]
            return True
        return False

    # =========================================================================
    # UTILITIES
    # =========================================================================

    @staticmethod
    def compute_hash(*args) -> str:
        """
        Compute a SHA-256 fingerprint of the arguments for cache key generation.

        Args:
            *args: Values to hash (JSON serialized with sorted keys)

        Returns:
            64-character hex digest
        """
        data = json.dumps(args, sort_keys=True, default=str)
        return hashlib.sha256(data.encode()).hexdigest()

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except Exception as e:
                logger.warning(f"Redis close failed: {e}")
            self._redis = None
