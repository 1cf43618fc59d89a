"""Background job scheduler for ledger maintenance"""

import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore

from config import Config
from database import SessionLocal
from jobs.commission_level_refresh import refresh_commission_levels
from jobs.ledger_consistency_monitor import LedgerConsistencyMonitor

logger = logging.getLogger(__name__)


class LedgerScheduler:
    """Runs turnover/level refresh and the ledger consistency check on intervals"""

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': ThreadPoolExecutor(max_workers=2)
        }
        job_defaults = {
            'coalesce': True,  # Global coalescing to prevent job pileup
            'max_instances': 1,  # Global single instance enforcement
            'misfire_grace_time': 120
        }

        self.scheduler = BackgroundScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def setup_jobs(self):
        """Register all maintenance jobs"""
        self.scheduler.add_job(
            self.refresh_commission_levels,
            trigger=IntervalTrigger(minutes=Config.COMMISSION_LEVEL_REFRESH_INTERVAL_MINUTES),
            id="refresh_commission_levels",
            name="Refresh carrier turnover and commission levels",
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.check_ledger_consistency,
            trigger=IntervalTrigger(minutes=Config.LEDGER_CONSISTENCY_INTERVAL_MINUTES),
            id="ledger_consistency_check",
            name="Replay balances and report ledger inconsistencies",
            replace_existing=True,
        )

    def start(self):
        """Start the scheduler"""
        self.setup_jobs()
        self.scheduler.start()
        jobs = self.scheduler.get_jobs()
        logger.info(f"📋 LedgerScheduler jobs: {[job.id for job in jobs]}")

    def stop(self):
        """Stop the scheduler"""
        self.scheduler.shutdown()
        logger.info("Background job scheduler stopped")

    def refresh_commission_levels(self):
        try:
            return refresh_commission_levels(self.session_factory)
        except Exception as e:
            logger.error(f"❌ JOB_FAILED: refresh_commission_levels: {e}", exc_info=True)
            raise

    def check_ledger_consistency(self):
        try:
            result = LedgerConsistencyMonitor(self.session_factory).run_consistency_check()
            return result.get_summary()
        except Exception as e:
            logger.error(f"❌ JOB_FAILED: ledger_consistency_check: {e}", exc_info=True)
            raise
