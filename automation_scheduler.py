"""
Copy Trading Automation Scheduler
Runs the risk check, rebalance, disconnect check and daily summary jobs
"""

import logging
import threading
from typing import Dict, Optional, Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

import automation_config as config
from workers.daily_summary_worker import run_daily_summary
from workers.disconnect_check_worker import run_disconnect_check
from workers.rebalance_worker import run_rebalance
from workers.risk_check_worker import run_risk_check

logger = logging.getLogger(__name__)

JOBS: Dict[str, Callable] = {
    'risk_check': run_risk_check,
    'rebalance': run_rebalance,
    'disconnect_check': run_disconnect_check,
    'daily_summary': run_daily_summary,
}


class AutomationScheduler:
    """Schedules the automation jobs and records their last result"""

    def __init__(self, automation=None, redis_client=None):
        self.automation = automation
        self.redis = redis_client
        self.scheduler = BackgroundScheduler(timezone='UTC')
        # One run per job at a time
        self._job_locks = {name: threading.Lock() for name in JOBS}
        self.lock = threading.Lock()
        self._running = False
        self.last_results: Dict[str, Dict] = {}

    def start(self):
        """Start the scheduler"""
        with self.lock:
            if self._running:
                logger.warning("Scheduler already running")
                return

            self.scheduler.add_job(
                func=self.run_job, args=['risk_check'],
                trigger=IntervalTrigger(minutes=config.RISK_CHECK_INTERVAL_MINUTES),
                id='risk_check', name='Drawdown Risk Check',
                replace_existing=True, max_instances=1, coalesce=True
            )
            self.scheduler.add_job(
                func=self.run_job, args=['disconnect_check'],
                trigger=IntervalTrigger(minutes=config.DISCONNECT_CHECK_INTERVAL_MINUTES),
                id='disconnect_check', name='Auto-Disconnect Check',
                replace_existing=True, max_instances=1, coalesce=True
            )
            self.scheduler.add_job(
                func=self.run_job, args=['rebalance'],
                trigger=IntervalTrigger(hours=config.REBALANCE_INTERVAL_HOURS),
                id='rebalance', name='Risk Multiplier Rebalance',
                replace_existing=True, max_instances=1, coalesce=True
            )
            self.scheduler.add_job(
                func=self.run_job, args=['daily_summary'],
                trigger=CronTrigger(hour=config.DAILY_SUMMARY_HOUR_UTC, minute=0),
                id='daily_summary', name='Daily Performance Summary',
                replace_existing=True, max_instances=1, coalesce=True
            )

            self.scheduler.start()
            self._running = True
            logger.info(
                f"✅ Automation Scheduler started (risk every {config.RISK_CHECK_INTERVAL_MINUTES}m, "
                f"disconnect check every {config.DISCONNECT_CHECK_INTERVAL_MINUTES}m, "
                f"rebalance every {config.REBALANCE_INTERVAL_HOURS}h, "
                f"daily summary at {config.DAILY_SUMMARY_HOUR_UTC:02d}:00 UTC)"
            )

    def stop(self):
        """Stop the scheduler"""
        with self.lock:
            if self._running:
                self.scheduler.shutdown(wait=False)
                self._running = False
                logger.info("🛑 Automation Scheduler stopped")

    @property
    def running(self) -> bool:
        return self._running

    def run_job(self, name: str) -> Dict:
        """
        Run a job now (scheduler callback and manual/cron trigger)

        Returns:
            Job result dict; {'skipped': True, ...} if the job is already running
        """
        if name not in JOBS:
            raise KeyError(f"Unknown automation job '{name}'")

        job_lock = self._job_locks[name]
        if not job_lock.acquire(blocking=False):
            logger.warning(f"⏭️ Job {name} already running, trigger ignored")
            return {'job': name, 'skipped': True, 'reason': 'Job already running'}

        try:
            logger.info(f"🚀 Running automation job {name}")
            result = JOBS[name](self.automation)
        except Exception as e:
            logger.error(f"❌ Automation job {name} failed: {e}", exc_info=True)
            result = {'job': name, 'failed': True, 'error': str(e)}
        finally:
            job_lock.release()

        self.last_results[name] = result
        if self.redis is not None:
            try:
                self.redis.store_job_metrics(name, {
                    'processed': result.get('processed', 0),
                    'actions': len(result.get('actions', [])),
                    'errors': len(result.get('errors', [])),
                    'skipped': result.get('skipped', False),
                    'failed': result.get('failed', False),
                })
            except Exception as e:
                logger.warning(f"Could not store metrics of job {name}: {e}")
        return result


# Global scheduler instance
_scheduler_instance = None


def get_scheduler() -> AutomationScheduler:
    """Get or create global scheduler instance"""
    global _scheduler_instance
    if _scheduler_instance is None:
        _scheduler_instance = AutomationScheduler()
    return _scheduler_instance


def start_scheduler(automation=None, redis_client=None) -> AutomationScheduler:
    """Start the global scheduler"""
    scheduler = get_scheduler()
    if automation is not None:
        scheduler.automation = automation
    if redis_client is not None:
        scheduler.redis = redis_client
    scheduler.start()
    return scheduler


def stop_scheduler():
    """Stop the global scheduler"""
    scheduler = get_scheduler()
    scheduler.stop()
