"""
Response Cache
==============

Caches generated AI responses per (feature, entity, request fingerprint) and
guarantees at most one in-flight computation per key.

Key format:
    ai:{feature}:{entity_id}:{sha256(relevant request fields)}

The entity id is always part of the key, so two entities can never read each
other's entry. Only successful computations are stored; a failure propagates
to every caller waiting on the same key and nothing is cached.

Usage:
    cache = ResponseCache(RedisCache(), default_ttl=900)
    key = build_cache_key(Feature.DEAL_COACH, deal.id, {"stage": deal.stage})
    payload, cache_hit = await cache.get_or_compute(key, None, compute)
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from ..errors import ValidationError
from ..models import Feature
from .redis_cache import RedisCache
from .singleflight import Singleflight

logger = logging.getLogger(__name__)

KEY_NAMESPACE = "ai"


def build_cache_key(feature: Feature, entity_id: str, fields: Dict[str, Any]) -> str:
    """
    Build the cache key for a feature request.

    Args:
        feature: Requested feature
        entity_id: Id of the entity the response is about (required)
        fields: Request fields that change the response

    Raises:
        ValidationError: empty entity id, or an id containing ':'
    """
    entity_id = (entity_id or "").strip()
    if not entity_id:
        raise ValidationError("Cache key requires a non-empty entity id", {"feature": Feature(feature).value})
    if ":" in entity_id:
        raise ValidationError("Entity id may not contain ':'", {"entityId": entity_id})

    content_hash = RedisCache.compute_hash(fields)
    return f"{KEY_NAMESPACE}:{Feature(feature).value}:{entity_id}:{content_hash}"


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    computations: int = 0
    shared: int = 0
    failures: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class ResponseCache:
    """
    TTL cache of AI responses with singleflight computation.

    Args:
        backend: Key-value backend (RedisCache, memory or Redis)
        default_ttl: Seconds an entry stays valid (default 15 minutes)
    """

    def __init__(self, backend: RedisCache, default_ttl: int = 900):
        self.backend = backend
        self.default_ttl = default_ttl
        self._flight = Singleflight()
        self._stats = CacheStats()

    async def get(self, key: str) -> Optional[Any]:
        return await self.backend.get(key)

    async def get_or_compute(
        self,
        key: str,
        ttl: Optional[int],
        compute_fn: Callable[[], Awaitable[Any]],
    ) -> Tuple[Any, bool]:
        """
        Return the cached payload or compute, store and return it.

        Concurrent callers for the same key share one computation. A caller
        that joins an in-flight computation did not trigger generation and
        is reported as a cache hit.

        Returns:
            (payload, cache_hit)
        """
        cached = await self.backend.get(key)
        if cached is not None:
            self._stats.hits += 1
            logger.debug(f"Cache hit: {key}")
            return cached, True

        self._stats.misses += 1
        effective_ttl = ttl or self.default_ttl

        async def compute_and_store():
            # Another flight may have stored it between our read and the lock
            existing = await self.backend.get(key)
            if existing is not None:
                return existing, True

            self._stats.computations += 1
            try:
                payload = await compute_fn()
            except BaseException:
                self._stats.failures += 1
                raise
            await self.backend.set(key, payload, ttl_seconds=effective_ttl)
            logger.debug(f"Cache stored: {key} (ttl={effective_ttl}s)")
            return payload, False

        (payload, was_cached), shared = await self._flight.do(key, compute_and_store)
        if shared:
            self._stats.shared += 1
        return payload, was_cached or shared

    async def invalidate(self, key: str) -> bool:
        return await self.backend.delete(key)

    async def invalidate_entity(self, entity_id: str) -> int:
        """Drop every cached response about an entity, across features."""
        removed = 0
        for feature in Feature:
            removed += await self.backend.clear_prefix(f"{KEY_NAMESPACE}:{feature.value}:{entity_id}:")
        if removed:
            logger.info(f"Invalidated {removed} cached responses for entity {entity_id}")
        return removed

    async def clear(self) -> int:
        return await self.backend.clear_prefix(f"{KEY_NAMESPACE}:")

    async def sweep(self) -> int:
        """Evict expired entries."""
        removed = await self.backend.sweep()
        if removed:
            logger.debug(f"Cache sweep evicted {removed} expired entries")
        return removed

    def in_flight(self, key: str) -> bool:
        return self._flight.in_flight(key)

    async def stats(self) -> Dict[str, Any]:
        backend_stats = await self.backend.get_stats()
        return {
            **backend_stats,
            "hits": self._stats.hits,
            "misses": self._stats.misses,
            "computations": self._stats.computations,
            "shared": self._stats.shared,
            "failures": self._stats.failures,
            "hit_rate": round(self._stats.hit_rate, 4),
            "in_flight": len(self._flight),
            "ttl_seconds": self.default_ttl,
        }

    async def close(self) -> None:
        await self._flight.wait_all()
        await self.backend.close()
