"""
Tests for the maintenance scheduler.

Usage:
    pytest tests/test_scheduler.py -v
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

from crm_ai.orchestrator.scheduler import MaintenanceScheduler


class TestMaintenanceScheduler:

    def setup_method(self):
        self.cache = MagicMock()
        self.cache.sweep = AsyncMock(return_value=3)
        self.rate_limiter = MagicMock()
        self.rate_limiter.sweep = AsyncMock(return_value=2)
        self.scheduler = MaintenanceScheduler(self.cache, self.rate_limiter, interval_seconds=30)

    def test_sweep(self):
        result = asyncio.run(self.scheduler.sweep())

        assert result == {"evicted": 3, "counters_removed": 2}
        history = self.scheduler.history
        assert history.total_runs == 1
        assert history.cache_entries_evicted == 3
        assert history.counters_removed == 2
        assert history.last_run_at is not None

    def test_history_accumulates(self):
        async def run():
            await self.scheduler.sweep()
            await self.scheduler.sweep()

        asyncio.run(run())

        assert self.scheduler.history.total_runs == 2
        assert self.scheduler.history.cache_entries_evicted == 6

    def test_start_and_stop(self):
        async def run():
            self.scheduler.start()
            status = self.scheduler.get_status()
            running = self.scheduler.is_running
            self.scheduler.stop()
            return status, running

        status, running = asyncio.run(run())

        assert running is True
        assert status["running"] is True
        assert status["interval_seconds"] == 30
        assert status["next_run"] is not None
        assert self.scheduler.is_running is False

    def test_start_twice_keeps_one_scheduler(self):
        async def run():
            self.scheduler.start()
            first = self.scheduler._scheduler
            self.scheduler.start()
            second = self.scheduler._scheduler
            self.scheduler.stop()
            return first is second

        assert asyncio.run(run()) is True

    def test_status_when_stopped(self):
        status = self.scheduler.get_status()

        assert status["running"] is False
        assert status["next_run"] is None
        assert status["history"]["total_runs"] == 0

    def test_job_error_counted(self):
        self.scheduler._on_job_error(SimpleNamespace(job_id="maintenance_sweep", exception=RuntimeError("x")))
        assert self.scheduler.history.total_failures == 1
