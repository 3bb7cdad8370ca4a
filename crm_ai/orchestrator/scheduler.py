"""
Maintenance Scheduler
=====================

Periodic housekeeping for the AI service, run on the service event loop
with APScheduler.

Jobs:
    - cache_sweep: evict expired response cache entries
    - rate_limit_sweep: drop counters of previous days

Both run every CACHE_SWEEP_INTERVAL_SECONDS (default: 60).

Usage:
    scheduler = MaintenanceScheduler(orchestrator.cache, orchestrator.rate_limiter)
    scheduler.start()      # inside a running event loop
    ...
    scheduler.stop()
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED, JobExecutionEvent
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..cache.response_cache import ResponseCache
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass
class SweepHistory:
    """Counters of the sweep jobs."""
    last_run_at: Optional[datetime] = None
    total_runs: int = 0
    total_failures: int = 0
    cache_entries_evicted: int = 0
    counters_removed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "total_runs": self.total_runs,
            "total_failures": self.total_failures,
            "cache_entries_evicted": self.cache_entries_evicted,
            "counters_removed": self.counters_removed,
        }


class MaintenanceScheduler:
    """
    Runs the sweep jobs.

    Args:
        cache: Response cache to sweep
        rate_limiter: Rate limiter whose stale counters are dropped
        interval_seconds: Sweep period
    """

    def __init__(
        self,
        cache: ResponseCache,
        rate_limiter: RateLimiter,
        interval_seconds: int = 60,
    ):
        self.cache = cache
        self.rate_limiter = rate_limiter
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._history = SweepHistory()

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def history(self) -> SweepHistory:
        return self._history

    def start(self) -> None:
        """Start the scheduler. Must be called from a running event loop."""
        if self.is_running:
            logger.warning("Maintenance scheduler is already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.sweep,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id="maintenance_sweep",
            name="Cache and rate limiter sweep",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)
        self._scheduler.add_listener(self._on_job_missed, EVENT_JOB_MISSED)
        self._scheduler.start()
        logger.info(f"Maintenance scheduler started (every {self.interval_seconds}s)")

    def stop(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Maintenance scheduler stopped")

    async def sweep(self) -> Dict[str, int]:
        """Run one sweep of both stores."""
        self._history.last_run_at = datetime.now()
        self._history.total_runs += 1

        evicted = await self.cache.sweep()
        removed = await self.rate_limiter.sweep()

        self._history.cache_entries_evicted += evicted
        self._history.counters_removed += removed
        if evicted or removed:
            logger.info(f"Sweep: {evicted} cache entries evicted, {removed} rate counters removed")
        return {"evicted": evicted, "counters_removed": removed}

    def _on_job_error(self, event: JobExecutionEvent) -> None:
        self._history.total_failures += 1
        logger.error(f"Maintenance job {event.job_id} failed: {event.exception}")

    def _on_job_missed(self, event: JobExecutionEvent) -> None:
        logger.warning(f"Maintenance job {event.job_id} missed its run time")

    def get_status(self) -> Dict[str, Any]:
        next_run = None
        if self._scheduler is not None:
            job = self._scheduler.get_job("maintenance_sweep")
            if job is not None and job.next_run_time is not None:
                next_run = job.next_run_time.isoformat()
        return {
            "running": self.is_running,
            "interval_seconds": self.interval_seconds,
            "next_run": next_run,
            "history": self._history.to_dict(),
        }
