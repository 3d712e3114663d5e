"""Background job scheduler for the Meetup Stakes Bot"""

import logging
from datetime import datetime, timedelta

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.reconciliation_sweep import ReconciliationSweep

logger = logging.getLogger(__name__)


class MeetupScheduler:
    """Background job scheduler for ledger reconciliation"""

    def __init__(self, sweep: ReconciliationSweep):
        self.sweep = sweep

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Global coalescing to prevent job pileup
            'max_instances': 1,  # A sweep never overlaps itself
            'misfire_grace_time': 120
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Setup all scheduled jobs"""
        existing_job = self.scheduler.get_job("ledger_reconciliation")
        if existing_job:
            self.scheduler.remove_job("ledger_reconciliation")
            logger.info("🧹 Hot-reload safety: Removed existing ledger_reconciliation job")

        if not Config.RECONCILIATION_ENABLED:
            logger.warning("⚠️ Ledger reconciliation disabled (RECONCILIATION_ENABLED=false)")
            return

        # First sweep shortly after startup settles anything left by the previous process
        self.scheduler.add_job(
            self.run_reconciliation,
            trigger=IntervalTrigger(
                seconds=Config.RECONCILIATION_INTERVAL_SECONDS,
                start_date=datetime.now() + timedelta(seconds=15),
            ),
            id="ledger_reconciliation",
            name="Ledger Reconciliation Sweep",
            max_instances=1,
            coalesce=True,
        )

    def start(self):
        """Start the scheduler"""
        self.setup_jobs()
        self.scheduler.start()

        job_names = [f"{job.name} ({job.id})" for job in self.scheduler.get_jobs()]
        logger.info(f"✅ Meetup scheduler started: {job_names}")

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")

    async def run_reconciliation(self):
        """Scheduled wrapper around the reconciliation sweep"""
        try:
            result = await self.sweep.run()
            if result.failures:
                logger.warning(f"⚠️ Reconciliation finished with {result.failures} failures: {result.errors[:5]}")
        except Exception as e:
            logger.error(f"❌ Ledger reconciliation job failed: {e}", exc_info=True)
