"""
Prometheus metrics for the settlement engine.

Metrics exposed:
- Settlement item results and receipt counters
- Settled amount by receipt type
- Safety violations (markets found unlocked at settlement time)
- Queue depth by status
- Scheduler status gauges
"""
from decimal import Decimal
from typing import Dict

from prometheus_client import Counter, Gauge, Histogram

# Settlement Metrics
settlement_items_total = Counter(
    "settlement_items_total",
    "Settlement queue items processed",
    ["result"]  # success, failure
)

settlement_item_duration_seconds = Histogram(
    "settlement_item_duration_seconds",
    "Time spent settling one queue item"
)

settlement_receipts_total = Counter(
    "settlement_receipts_total",
    "Settlement receipts by type and final status",
    ["receipt_type", "status"]  # status: confirmed, failed, skipped
)

settlement_amount_total = Counter(
    "settlement_amount_total",
    "Amount confirmed by settlement, by receipt type",
    ["receipt_type"]
)

settlement_safety_violations_total = Counter(
    "settlement_safety_violations_total",
    "Markets found unlocked when settlement started"
)

settlement_claim_errors_total = Counter(
    "settlement_claim_errors_total",
    "Queue claims that failed on a store error"
)

# Queue Metrics
settlement_queue_items = Gauge(
    "settlement_queue_items",
    "Settlement queue items by status",
    ["status"]
)

# Scheduler Metrics
scheduler_running = Gauge(
    "scheduler_running",
    "Whether the settlement scheduler is running (1=running, 0=stopped)"
)

scheduler_jobs_total = Gauge(
    "scheduler_jobs_total",
    "Total number of scheduled jobs"
)


def record_item_result(success: bool, duration_seconds: float) -> None:
    settlement_items_total.labels(result="success" if success else "failure").inc()
    settlement_item_duration_seconds.observe(duration_seconds)


def record_receipt(receipt_type: str, status: str, amount: Decimal = None) -> None:
    """Record a receipt outcome; confirmed amounts also feed the amount counter."""
    settlement_receipts_total.labels(receipt_type=receipt_type, status=status).inc()
    if amount is not None and status == "confirmed":
        settlement_amount_total.labels(receipt_type=receipt_type).inc(float(amount))


def record_safety_violation(count: int = 1) -> None:
    settlement_safety_violations_total.inc(count)


def record_claim_error() -> None:
    settlement_claim_errors_total.inc()


def update_queue_metrics(stats: Dict[str, int]) -> None:
    """Set queue gauges from ``SettlementQueueRepository.get_queue_stats()``."""
    for status, count in stats.items():
        if status != "total":
            settlement_queue_items.labels(status=status).set(count)


def update_scheduler_metrics() -> None:
    """
    Update scheduler metrics.

    Call this periodically to update scheduler status.
    """
    from settlement_engine.core.scheduler import get_scheduler

    scheduler = get_scheduler()
    if scheduler and scheduler.running:
        scheduler_running.set(1)
        if scheduler.scheduler:
            scheduler_jobs_total.set(len(scheduler.scheduler.get_jobs()))
    else:
        scheduler_running.set(0)
        scheduler_jobs_total.set(0)
