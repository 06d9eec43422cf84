"""Worker driver: drains the settlement queue one item at a time."""
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from settlement_engine.core import metrics
from settlement_engine.core.config import settings
from settlement_engine.repositories import SettlementQueueRepository
from settlement_engine.services.settlement.orchestrator import SettlementOrchestrator, SettlementResult

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    results: List[SettlementResult] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> Dict:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "duration_ms": self.duration_ms,
            "results": [r.to_dict() for r in self.results],
        }


class SettlementWorker:
    """
    Claims queue items and hands each to the orchestrator, sequentially.

    Safe to run in several processes at once: claiming is atomic and every
    settlement step is idempotent.
    """

    def __init__(self, db: Session, worker_id: Optional[str] = None):
        self.db = db
        self.worker_id = worker_id or settings.WORKER_ID
        self.queue = SettlementQueueRepository(db)
        self.orchestrator = SettlementOrchestrator(db, worker_id=self.worker_id)

    def claim_next(self):
        return self.queue.claim_next(self.worker_id)

    def process_next(self) -> Optional[SettlementResult]:
        """Claim and settle a single item; None when the queue has nothing due."""
        item = self.claim_next()
        if item is None:
            return None
        return self.orchestrator.process_settlement(item)

    def process_all_settlements(self, max_items: Optional[int] = None) -> BatchResult:
        """
        Settle items until the queue is empty or ``max_items`` is reached.

        Args:
            max_items: Batch cap (defaults to SETTLEMENT_MAX_ITEMS)

        Returns:
            BatchResult with counts and the per-item results
        """
        limit = settings.SETTLEMENT_MAX_ITEMS if max_items is None else max_items
        batch = BatchResult()
        started = time.monotonic()

        while batch.processed < limit:
            result = self.process_next()
            if result is None:
                break

            batch.processed += 1
            batch.results.append(result)
            if result.success:
                batch.succeeded += 1
            else:
                batch.failed += 1

        batch.duration_ms = int((time.monotonic() - started) * 1000)
        metrics.update_queue_metrics(self.queue.get_queue_stats())

        if batch.processed:
            logger.info(
                f"Settlement batch by {self.worker_id}: {batch.processed} processed, "
                f"{batch.succeeded} succeeded, {batch.failed} failed ({batch.duration_ms}ms)"
            )
        else:
            logger.debug(f"Settlement batch by {self.worker_id}: queue empty")
        return batch


def process_all_settlements(db: Session, max_items: Optional[int] = None, worker_id: Optional[str] = None) -> BatchResult:
    """Run one batch with a fresh worker on ``db``."""
    return SettlementWorker(db, worker_id=worker_id).process_all_settlements(max_items=max_items)
