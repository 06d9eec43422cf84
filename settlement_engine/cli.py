"""
Command-line runner for the settlement scheduler.

Usage:
    settlement-scheduler                    # Run the scheduler in the foreground
    settlement-scheduler --once             # Process one settlement batch and exit
    settlement-scheduler --once --max-items 10
    settlement-scheduler --maintenance      # Run one maintenance pass and exit
    settlement-scheduler --stats            # Print queue stats and exit
    settlement-scheduler --list-jobs        # Print the job schedule and exit
"""
import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from settlement_engine.core.config import settings
from settlement_engine.core.database import SessionLocal
from settlement_engine.core.logging import configure_logging
from settlement_engine.core.scheduler import (
    AutomationScheduler,
    run_settlement_batch,
    run_settlement_maintenance,
)
from settlement_engine.repositories import SettlementQueueRepository

logger = logging.getLogger(__name__)


class SchedulerRunner:
    """Runs the settlement scheduler until SIGINT/SIGTERM."""

    def __init__(self):
        self.scheduler: Optional[AutomationScheduler] = None
        self.shutdown = False

    async def start(self):
        """Start the scheduler and run until shutdown."""
        logger.info("🚀 Starting settlement scheduler runner...")

        self.scheduler = AutomationScheduler()
        await self.scheduler.start()

        logger.info("✅ Scheduler is now running")
        logger.info("Press Ctrl+C to stop")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._set_shutdown)

        while not self.shutdown:
            await asyncio.sleep(1)

        await self.scheduler.stop()
        logger.info("✅ Scheduler runner stopped")

    def _set_shutdown(self):
        logger.info("⏹️  Shutdown signal received")
        self.shutdown = True


def print_queue_stats() -> None:
    db = SessionLocal()
    try:
        stats = SettlementQueueRepository(db).get_queue_stats()
    finally:
        db.close()

    print("=" * 40)
    print("SETTLEMENT QUEUE")
    print("=" * 40)
    for status, count in stats.items():
        print(f"  {status:<12} {count}")


def print_job_schedule() -> None:
    print("=" * 60)
    print("SCHEDULED SETTLEMENT JOBS")
    print("=" * 60)
    print("📋 Process Settlement Queue")
    print("   ID: settlement_batch")
    print(f"   Schedule: every {settings.SETTLEMENT_INTERVAL_SECONDS}s, up to {settings.SETTLEMENT_MAX_ITEMS} items")
    print()
    print("📋 Settlement Queue Maintenance")
    print("   ID: settlement_maintenance")
    print(f"   Schedule: every {settings.SETTLEMENT_MAINTENANCE_MINUTES}m")
    print("=" * 60)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Run the settlement scheduler')
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--once', action='store_true', help='Process one settlement batch and exit')
    mode.add_argument('--maintenance', action='store_true', help='Run one maintenance pass and exit')
    mode.add_argument('--stats', action='store_true', help='Print settlement queue stats and exit')
    mode.add_argument('--list-jobs', action='store_true', help='List scheduled jobs and exit')
    parser.add_argument('--max-items', type=int, default=None, help='Batch cap for --once')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(level=settings.LOG_LEVEL, json_output=settings.LOG_JSON)

    if args.stats:
        print_queue_stats()
        return 0

    if args.list_jobs:
        print_job_schedule()
        return 0

    if args.once:
        result = run_settlement_batch(max_items=args.max_items)
        if result["skipped"]:
            print(f"⏭️  Skipped: {result['reason']}")
            return 0
        print(f"✅ Processed {result['processed']}: {result['succeeded']} succeeded, {result['failed']} failed")
        return 0 if result["failed"] == 0 else 1

    if args.maintenance:
        result = run_settlement_maintenance()
        if result["skipped"]:
            print(f"⏭️  Skipped: {result['reason']}")
            return 0
        print(
            f"✅ Released {result['released_stale_locks']} stale locks, "
            f"requeued {result['requeued_failures']} failures, "
            f"enqueued {result['enqueued_orphans']} orphans "
            f"(health: {result['health_status']})"
        )
        return 0

    runner = SchedulerRunner()
    try:
        asyncio.run(runner.start())
    except KeyboardInterrupt:
        logger.info("🛑 Received interrupt, shutting down...")
    return 0


if __name__ == '__main__':
    sys.exit(main())
