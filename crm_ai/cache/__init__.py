"""
CRM AI Cache Module
===================

Response cache keyed by feature, entity and an input fingerprint, with
Redis or in-memory storage and single-flight computation per key.

Usage:
    from crm_ai.cache import RedisCache, ResponseCache, build_cache_key

    cache = ResponseCache(RedisCache(), default_ttl=900)
    payload, cache_hit = await cache.get_or_compute(key, None, compute)
"""

from .redis_cache import RedisCache
from .response_cache import ResponseCache, build_cache_key
from .singleflight import Singleflight

__all__ = ["RedisCache", "ResponseCache", "build_cache_key", "Singleflight"]
