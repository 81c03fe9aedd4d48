"""Background job scheduler for rift automation (auto-release, payouts, reconciliation)"""

import logging
from datetime import datetime
from typing import Any, Dict, List

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.auto_release_job import run_auto_release
from jobs.payout_job import run_payouts
from jobs.reconciliation_job import run_reconciliation
from services.rift_operations import RiftOperations

logger = logging.getLogger(__name__)


class RiftScheduler:
    """Runs the rift background jobs on an AsyncIOScheduler"""

    JOB_IDS = ("auto_release", "payouts", "reconciliation")

    def __init__(self, operations: RiftOperations):
        self.operations = operations
        jobstores = {
            "default": MemoryJobStore()
        }
        executors = {
            "default": AsyncIOExecutor()
        }
        job_defaults = {
            "coalesce": True,  # Collapse missed runs into one
            "max_instances": 1,  # Never overlap a job with itself
            "misfire_grace_time": 120,
        }
        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone="UTC",
        )

    def setup_jobs(self):
        """Register the three rift jobs, replacing any left over from a reload"""
        for job_id in self.JOB_IDS:
            if self.scheduler.get_job(job_id):
                self.scheduler.remove_job(job_id)
                logger.info(f"🧹 Removed existing {job_id} job before re-registering")

        # Staggered start offsets so the jobs do not hit the database together
        self.scheduler.add_job(
            self.auto_release,
            trigger=IntervalTrigger(
                minutes=Config.AUTO_RELEASE_INTERVAL_MINUTES,
                start_date=datetime.now().replace(second=5, microsecond=0),
            ),
            id="auto_release",
            name="Auto-release Expired Review Windows",
        )
        self.scheduler.add_job(
            self.payouts,
            trigger=IntervalTrigger(
                minutes=Config.PAYOUT_INTERVAL_MINUTES,
                start_date=datetime.now().replace(second=25, microsecond=0),
            ),
            id="payouts",
            name="Schedule and Confirm Payouts",
        )
        self.scheduler.add_job(
            self.reconciliation,
            trigger=IntervalTrigger(
                minutes=Config.RECONCILIATION_INTERVAL_MINUTES,
                start_date=datetime.now().replace(second=45, microsecond=0),
            ),
            id="reconciliation",
            name="Reconcile Unconfirmed External Calls",
        )

    def start(self):
        """Start the scheduler"""
        self.setup_jobs()
        self.scheduler.start()
        jobs = self.scheduler.get_jobs()
        logger.info(f"✅ Rift scheduler started with jobs: {[f'{job.name} ({job.id})' for job in jobs]}")

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Background job scheduler stopped")

    def get_jobs(self) -> List[Dict[str, Any]]:
        return [
            {"id": job.id, "name": job.name, "next_run_time": str(getattr(job, "next_run_time", None))}
            for job in self.scheduler.get_jobs()
        ]

    async def auto_release(self) -> Dict[str, Any]:
        try:
            return await run_auto_release(self.operations)
        except Exception as e:
            logger.error(f"❌ Auto-release job crashed: {e}", exc_info=True)
            return {"job": "auto_release", "error": str(e)}

    async def payouts(self) -> Dict[str, Any]:
        try:
            return await run_payouts(self.operations)
        except Exception as e:
            logger.error(f"❌ Payout job crashed: {e}", exc_info=True)
            return {"job": "payouts", "error": str(e)}

    async def reconciliation(self) -> Dict[str, Any]:
        try:
            return await run_reconciliation(self.operations)
        except Exception as e:
            logger.error(f"❌ Reconciliation job crashed: {e}", exc_info=True)
            return {"job": "reconciliation", "error": str(e)}
