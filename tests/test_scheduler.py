"""
Scheduler wiring tests; the APScheduler loop itself is never started
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from jobs.scheduler import DealScheduler


class TestDealScheduler:
    def test_setup_registers_jobs(self):
        scheduler = DealScheduler(MagicMock())
        scheduler.setup_jobs()
        ids = sorted(job.id for job in scheduler.scheduler.get_jobs())
        assert ids == ["deadline_sweep", "payout_retry", "price_refresh", "session_purge"]

    @pytest.mark.asyncio
    async def test_jobs_drive_the_core(self, core, driver, clock):
        scheduler = DealScheduler(core)
        await driver.create(deadline_hours=24)
        clock.advance(hours=25)

        stats = await scheduler.run_deadline_sweep()
        assert stats["expired"] == 1
        assert (await scheduler.run_payout_retries())["due"] == 0
        assert await scheduler.run_session_purge() == 0

    @pytest.mark.asyncio
    async def test_job_failures_are_contained(self):
        core = MagicMock()
        core.deadline_monitor.sweep = AsyncMock(side_effect=RuntimeError("db gone"))
        core.payout_retry.process_due = AsyncMock(side_effect=RuntimeError("db gone"))
        core.sessions.purge_expired = AsyncMock(side_effect=RuntimeError("db gone"))
        scheduler = DealScheduler(core)
        assert await scheduler.run_deadline_sweep() is None
        assert await scheduler.run_payout_retries() is None
        assert await scheduler.run_session_purge() is None

    def test_shutdown_without_start(self):
        DealScheduler(MagicMock()).shutdown()
