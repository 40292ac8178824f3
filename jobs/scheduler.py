"""Background job scheduler for the deal lifecycle core"""

import logging
from datetime import datetime

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config

logger = logging.getLogger(__name__)


class DealScheduler:
    """
    Periodic jobs:
    - Deadline sweep: expiries, auto-release, deadline warnings
    - Payout retry: pending releases/refunds with backoff
    - Price refresh: keeps the TRX price cache warm for settlement
    - Session purge: drops expired conversational sessions
    """

    def __init__(self, core):
        self.core = core

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Prevent job pileup
            'max_instances': 1,  # Single instance enforcement
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    async def run_deadline_sweep(self):
        try:
            return await self.core.deadline_monitor.sweep()
        except Exception as e:
            logger.error(f"❌ DEADLINE_SWEEP_FAILED: {e}", exc_info=True)

    async def run_payout_retries(self):
        try:
            return await self.core.payout_retry.process_due()
        except Exception as e:
            logger.error(f"❌ PAYOUT_RETRY_FAILED: {e}", exc_info=True)

    async def run_price_refresh(self):
        return await self.core.prices.refresh_price()

    async def run_session_purge(self):
        try:
            purged = await self.core.sessions.purge_expired()
            if purged:
                logger.info(f"🧹 SESSION_PURGE: removed {purged} expired session(s)")
            return purged
        except Exception as e:
            logger.error(f"❌ SESSION_PURGE_FAILED: {e}")

    def setup_jobs(self):
        """Register all jobs; safe to call again (existing jobs are replaced)"""
        now = datetime.now().replace(microsecond=0)

        self.scheduler.add_job(
            self.run_deadline_sweep,
            trigger=IntervalTrigger(seconds=Config.DEADLINE_CHECK_INTERVAL, start_date=now.replace(second=0)),
            id="deadline_sweep",
            name="⏰ Deadline Sweep - Expiry & Auto-Release",
            replace_existing=True
        )
        logger.info(f"✅ Deadline sweep scheduled every {Config.DEADLINE_CHECK_INTERVAL}s")

        self.scheduler.add_job(
            self.run_payout_retries,
            trigger=IntervalTrigger(seconds=Config.PAYOUT_RETRY_INTERVAL, start_date=now.replace(second=20)),
            id="payout_retry",
            name="🔁 Payout Retry - Pending Releases & Refunds",
            replace_existing=True
        )
        logger.info(f"✅ Payout retry scheduled every {Config.PAYOUT_RETRY_INTERVAL}s")

        self.scheduler.add_job(
            self.run_price_refresh,
            trigger=IntervalTrigger(seconds=Config.PRICE_REFRESH_INTERVAL, start_date=now.replace(second=40)),
            id="price_refresh",
            name="💱 TRX Price Refresh",
            replace_existing=True
        )

        self.scheduler.add_job(
            self.run_session_purge,
            trigger=IntervalTrigger(hours=1, start_date=now.replace(minute=0, second=30)),
            id="session_purge",
            name="🧹 Session Purge",
            misfire_grace_time=300,
            replace_existing=True
        )

        jobs = self.scheduler.get_jobs()
        logger.info(f"📋 Active jobs: {[f'{job.name} ({job.id})' for job in jobs]}")

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info("✅ DealScheduler started")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("🛑 DealScheduler stopped")
