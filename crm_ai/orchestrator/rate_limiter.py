"""
Per-User Daily Rate Limiter
===========================

Enforces the daily AI request quota (default 500 requests/user/day).

Rules:
- One counter per user per calendar day (server-local time)
- Reset is lazy: a counter whose day_key differs from today is reset on the next call
- A request is counted only when it is admitted
- Fails closed: a storage error denies the request with RateLimiterUnavailable

Backends:
- MemoryCounterStore: process-local, one asyncio.Lock per user
- RedisCounterStore: shared across processes, atomic Lua script per call

Usage:
    limiter = RateLimiter(MemoryCounterStore(), limit=500)
    allowed, remaining = await limiter.admit("user-42")
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from ..errors import RateLimiterUnavailable

logger = logging.getLogger(__name__)


@dataclass
class RateCounter:
    """Requests admitted for one user on one calendar day."""
    user_id: str
    day_key: str
    count: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class MemoryCounterStore:
    """Process-local counters with per-user locking."""

    def __init__(self):
        self._counters: Dict[str, RateCounter] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    async def increment_if_below(self, user_id: str, day_key: str, limit: int) -> Tuple[bool, int]:
        """Increment today's counter unless the limit is reached. Returns (allowed, count)."""
        async with self._lock_for(user_id):
            counter = self._counters.get(user_id)
            if counter is None or counter.day_key != day_key:
                if counter is not None:
                    logger.debug(f"Daily counter reset for user {user_id} ({counter.day_key} -> {day_key})")
                counter = RateCounter(user_id=user_id, day_key=day_key, count=0, limit=limit)
                self._counters[user_id] = counter

            counter.limit = limit
            if counter.count >= limit:
                return False, counter.count

            counter.count += 1
            return True, counter.count

    async def get_count(self, user_id: str, day_key: str) -> int:
        counter = self._counters.get(user_id)
        if counter is None or counter.day_key != day_key:
            return 0
        return counter.count

    async def sweep(self, day_key: str) -> int:
        """Drop counters from previous days."""
        stale = [uid for uid, c in self._counters.items() if c.day_key != day_key]
        for uid in stale:
            del self._counters[uid]
            lock = self._locks.get(uid)
            if lock is not None and not lock.locked():
                del self._locks[uid]
        return len(stale)

    async def close(self) -> None:
        return None


# KEYS[1] = counter key, ARGV[1] = limit, ARGV[2] = expiry seconds
_INCREMENT_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local limit = tonumber(ARGV[1])
if current >= limit then
    return {0, current}
end
current = redis.call('INCR', KEYS[1])
if current == 1 then
    redis.call('EXPIRE', KEYS[1], ARGV[2])
end
return {1, current}
"""


class RedisCounterStore:
    """
    Redis-backed counters for multi-process deployments.

    The day key is part of the Redis key, so a new day starts a fresh counter
    and old counters expire on their own after two days.
    """

    COUNTER_TTL_SECONDS = 2 * 24 * 3600

    def __init__(self, redis_url: str, prefix: str = "crm_ai"):
        import redis.asyncio as aioredis

        self.prefix = prefix
        self._redis = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=5,
            socket_connect_timeout=5,
        )
        self._script = self._redis.register_script(_INCREMENT_SCRIPT)

    def _make_key(self, user_id: str, day_key: str) -> str:
        return f"{self.prefix}:ratelimit:{user_id}:{day_key}"

    async def increment_if_below(self, user_id: str, day_key: str, limit: int) -> Tuple[bool, int]:
        allowed, count = await self._script(
            keys=[self._make_key(user_id, day_key)],
            args=[limit, self.COUNTER_TTL_SECONDS],
        )
        return bool(int(allowed)), int(count)

    async def get_count(self, user_id: str, day_key: str) -> int:
        value = await self._redis.get(self._make_key(user_id, day_key))
        return int(value) if value is not None else 0

    async def sweep(self, day_key: str) -> int:
        # Keys expire server-side
        return 0

    async def close(self) -> None:
        await self._redis.aclose()


class RateLimiter:
    """
    Daily quota enforcement.

    Args:
        store: Counter backend (MemoryCounterStore or RedisCounterStore)
        limit: Requests allowed per user per calendar day
        clock: Returns the current local datetime (injectable for tests)
    """

    def __init__(
        self,
        store,
        limit: int = 500,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if limit <= 0:
            raise ValueError("limit must be positive")
        self.store = store
        self.limit = limit
        self._clock = clock or datetime.now

    def day_key(self) -> str:
        """Current calendar day in server-local time."""
        return self._clock().date().isoformat()

    async def admit(self, user_id: str) -> Tuple[bool, int]:
        """
        Admit one request for the user.

        Returns:
            (allowed, remaining) - remaining counts requests left today after this one

        Raises:
            RateLimiterUnavailable: counter storage failed (request must be denied)
        """
        day_key = self.day_key()
        try:
            allowed, count = await self.store.increment_if_below(user_id, day_key, self.limit)
        except Exception as e:
            logger.error(f"Rate limiter storage failed for user {user_id}: {e}")
            raise RateLimiterUnavailable(
                "Rate limiter storage unavailable; request denied",
                {"cause": type(e).__name__},
            ) from e

        remaining = max(0, self.limit - count)
        if not allowed:
            logger.warning(f"Rate limit exceeded for user {user_id}: {count}/{self.limit}")
        else:
            logger.debug(f"Rate limit check passed for user {user_id}: {count}/{self.limit}")
        return allowed, remaining

    async def peek(self, user_id: str) -> Tuple[int, int]:
        """Return (used, remaining) for today without counting a request."""
        try:
            used = await self.store.get_count(user_id, self.day_key())
        except Exception as e:
            raise RateLimiterUnavailable(
                "Rate limiter storage unavailable",
                {"cause": type(e).__name__},
            ) from e
        return used, max(0, self.limit - used)

    async def sweep(self) -> int:
        removed = await self.store.sweep(self.day_key())
        if removed:
            logger.info(f"Rate limiter sweep removed {removed} stale counters")
        return removed

    async def close(self) -> None:
        await self.store.close()
