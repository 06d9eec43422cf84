"""
Settlement scheduler.

Background jobs:
- Settlement batch: drain the settlement queue (every SETTLEMENT_INTERVAL_SECONDS)
- Settlement maintenance: release stale locks, requeue due failures, enqueue
  orphaned FINAL games, drop expired job locks (every SETTLEMENT_MAINTENANCE_MINUTES)

Both jobs hold a table-backed job lock, so several app replicas can run the
scheduler without draining the queue twice at the same moment. The work is
synchronous SQLAlchemy, so jobs run it in a worker thread.

Scheduler: APScheduler (lightweight, FastAPI-compatible)
"""
import asyncio
import logging
import uuid
from typing import Callable, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from settlement_engine.core import database
from settlement_engine.core.config import settings
from settlement_engine.core.job_lock import JobLockManager, with_job_lock
from settlement_engine.core.logging import clear_correlation_id, set_correlation_id
from settlement_engine.services.settlement import process_all_settlements, run_health_checks, run_maintenance

logger = logging.getLogger(__name__)

SETTLE_JOB_LOCK = "settle"
MAINTENANCE_JOB_LOCK = "settlement-maintenance"


def _session_factory(session_factory: Optional[Callable[[], Session]]) -> Callable[[], Session]:
    return session_factory or database.SessionLocal


def run_settlement_batch(
    session_factory: Optional[Callable[[], Session]] = None,
    max_items: Optional[int] = None,
    worker_id: Optional[str] = None,
) -> Dict:
    """
    One settlement batch under the ``settle`` job lock.

    Returns:
        ``{"skipped": True, "reason": ...}`` when another instance holds the
        lock, else ``{"skipped": False, **BatchResult.to_dict()}``
    """
    token = set_correlation_id(f"settle-{uuid.uuid4().hex[:12]}")
    db = _session_factory(session_factory)()
    try:
        outcome = with_job_lock(
            db,
            SETTLE_JOB_LOCK,
            lambda: process_all_settlements(db, max_items=max_items, worker_id=worker_id),
            owner=worker_id,
        )
        if outcome.skipped:
            logger.info(f"Settlement batch skipped: {outcome.error}")
            return {"skipped": True, "reason": outcome.error}
        return {"skipped": False, **outcome.result.to_dict()}
    finally:
        db.close()
        clear_correlation_id(token)


def run_settlement_maintenance(
    session_factory: Optional[Callable[[], Session]] = None,
    enqueue_orphans: Optional[bool] = None,
) -> Dict:
    """One maintenance pass under its own job lock, followed by a health summary log."""
    token = set_correlation_id(f"maintenance-{uuid.uuid4().hex[:12]}")
    db = _session_factory(session_factory)()
    try:
        outcome = with_job_lock(
            db,
            MAINTENANCE_JOB_LOCK,
            lambda: run_maintenance(db, enqueue_orphans=enqueue_orphans),
        )
        if outcome.skipped:
            logger.info(f"Settlement maintenance skipped: {outcome.error}")
            return {"skipped": True, "reason": outcome.error}

        result = dict(outcome.result)
        result["expired_job_locks"] = JobLockManager(db).cleanup_expired()

        health = run_health_checks(db, include_items=False)
        result["health_status"] = health["status"]
        if health["status"] != "healthy":
            flagged = [name for name, check in health["checks"].items() if check["status"] != "ok"]
            logger.warning(f"Lifecycle health {health['status']}: {', '.join(flagged)}")

        return {"skipped": False, **result}
    finally:
        db.close()
        clear_correlation_id(token)


class AutomationScheduler:
    """
    Scheduler for the settlement background jobs.

    All scheduled jobs are defined here with their schedules and error handling.
    """

    def __init__(self):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.running = False

    async def start(self):
        """Start the scheduler."""
        if self.running:
            logger.warning("Scheduler already running")
            return

        logger.info("Starting settlement scheduler...")

        self.scheduler = AsyncIOScheduler(
            timezone=settings.SCHEDULER_TIMEZONE,
            job_defaults={
                'coalesce': True,  # Combine missed runs into one
                'max_instances': 1,  # Only one instance of each job
                'misfire_grace_time': 300
            }
        )

        self._schedule_settlement_batch()
        self._schedule_maintenance()

        self.scheduler.start()
        self.running = True

        logger.info("✅ Scheduler started with %d jobs", len(self.scheduler.get_jobs()))
        self._log_scheduled_jobs()

    async def stop(self):
        """Stop the scheduler."""
        if not self.running:
            return

        logger.info("Stopping scheduler...")
        self.scheduler.shutdown(wait=True)
        self.running = False
        logger.info("✅ Scheduler stopped")

    def _schedule_settlement_batch(self):
        """
        Schedule: Drain the settlement queue.

        Frequency: Every SETTLEMENT_INTERVAL_SECONDS (default 60s)
        Purpose: Pay out or refund finished games soon after they are queued
        """
        if self.scheduler is None:
            return

        interval = settings.SETTLEMENT_INTERVAL_SECONDS

        @self.scheduler.scheduled_job(
            trigger=IntervalTrigger(seconds=interval),
            id='settlement_batch',
            name='Process Settlement Queue',
            misfire_grace_time=max(interval, 30)
        )
        async def settlement_batch_job():
            try:
                result = await asyncio.to_thread(run_settlement_batch)
                if not result["skipped"] and result["processed"]:
                    logger.info(
                        f"✅ Settlement batch: {result['succeeded']}/{result['processed']} "
                        f"settled ({result['duration_ms']}ms)"
                    )
            except Exception as e:
                logger.error(f"❌ Settlement batch failed: {e}")

        logger.info(f"💰 Scheduled: Settlement batch (every {interval}s)")

    def _schedule_maintenance(self):
        """
        Schedule: Settlement queue maintenance.

        Frequency: Every SETTLEMENT_MAINTENANCE_MINUTES (default 5m)
        Purpose: Recover items from crashed workers and failures whose
        backoff elapsed, and queue FINAL games the decider missed
        """
        if self.scheduler is None:
            return

        minutes = settings.SETTLEMENT_MAINTENANCE_MINUTES

        @self.scheduler.scheduled_job(
            trigger=IntervalTrigger(minutes=minutes),
            id='settlement_maintenance',
            name='Settlement Queue Maintenance',
            misfire_grace_time=600
        )
        async def maintenance_job():
            try:
                result = await asyncio.to_thread(run_settlement_maintenance)
                if not result["skipped"]:
                    logger.info(
                        f"✅ Maintenance: {result['released_stale_locks']} stale locks released, "
                        f"{result['requeued_failures']} failures requeued, "
                        f"{result['enqueued_orphans']} orphans enqueued"
                    )
            except Exception as e:
                logger.error(f"❌ Settlement maintenance failed: {e}")

        logger.info(f"🧹 Scheduled: Settlement maintenance (every {minutes}m)")

    def _log_scheduled_jobs(self):
        """Log all scheduled jobs for visibility."""
        jobs = self.scheduler.get_jobs()

        logger.info("=" * 60)
        logger.info("SCHEDULED SETTLEMENT JOBS")
        logger.info("=" * 60)

        for job in jobs:
            next_run = job.next_run_time
            next_run_str = next_run.strftime('%Y-%m-%d %H:%M:%S %Z') if next_run else 'Pending'
            logger.info(f"  • {job.name}")
            logger.info(f"    ID: {job.id}")
            logger.info(f"    Next run: {next_run_str}")

        logger.info("=" * 60)


# Global scheduler instance
_scheduler: Optional[AutomationScheduler] = None


async def start_scheduler():
    """Start the global scheduler."""
    global _scheduler
    if _scheduler is None:
        _scheduler = AutomationScheduler()
        await _scheduler.start()
    return _scheduler


async def stop_scheduler():
    """Stop the global scheduler."""
    global _scheduler
    if _scheduler is not None:
        await _scheduler.stop()
        _scheduler = None


def get_scheduler() -> Optional[AutomationScheduler]:
    """Get the global scheduler instance."""
    return _scheduler
