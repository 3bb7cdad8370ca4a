"""
Singleflight
============

Collapses concurrent calls for the same key into one computation.

The first caller for a key starts the computation as an asyncio.Task; later
callers await the same task. Callers await through asyncio.shield, so a
cancelled caller stops waiting but the computation keeps running for the
others. The key is released once the task finishes, success or failure.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Tuple

logger = logging.getLogger(__name__)


class Singleflight:
    """Lock-guarded registry of in-flight tasks, one per key."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._tasks: Dict[str, asyncio.Task] = {}

    async def do(self, key: str, fn: Callable[[], Awaitable[Any]]) -> Tuple[Any, bool]:
        """
        Run fn once per key across concurrent callers.

        Returns:
            (result, shared) - shared is True when this caller joined a
            computation started by another caller

        Raises:
            Whatever fn raised, to every waiter
        """
        async with self._lock:
            task = self._tasks.get(key)
            shared = task is not None
            if task is None:
                task = asyncio.ensure_future(fn())
                self._tasks[key] = task
                task.add_done_callback(lambda t, k=key: self._release(k, t))

        if shared:
            logger.debug(f"Joined in-flight computation for {key}")
        return await asyncio.shield(task), shared

    def _release(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
        # Mark the exception retrieved when every waiter was cancelled
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"In-flight computation for {key} failed: {task.exception()!r}")

    def in_flight(self, key: str) -> bool:
        return key in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    async def wait_all(self) -> None:
        """Wait for every in-flight computation (used at shutdown)."""
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
