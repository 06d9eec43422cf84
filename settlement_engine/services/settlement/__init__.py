"""
Settlement services.

Usage:
    from settlement_engine.services.settlement import process_all_settlements

    batch = process_all_settlements(db, max_items=25)
"""
from settlement_engine.services.settlement.orchestrator import (
    SettlementError,
    SettlementOrchestrator,
    SettlementResult,
)
from settlement_engine.services.settlement.worker import (
    BatchResult,
    SettlementWorker,
    process_all_settlements,
)
from settlement_engine.services.settlement.preview import (
    get_treasury_balance,
    get_treasury_ledger,
    is_settlement_processed,
    preview_settlement,
)
from settlement_engine.services.settlement.reconciliation import build_reconciliation_report
from settlement_engine.services.settlement.health import (
    determine_outcome,
    enqueue_orphaned_final_games,
    release_stale_processing_locks,
    requeue_due_failures,
    run_health_checks,
    run_maintenance,
)

__all__ = [
    "SettlementError",
    "SettlementOrchestrator",
    "SettlementResult",
    "BatchResult",
    "SettlementWorker",
    "process_all_settlements",
    "preview_settlement",
    "is_settlement_processed",
    "get_treasury_balance",
    "get_treasury_ledger",
    "build_reconciliation_report",
    "determine_outcome",
    "enqueue_orphaned_final_games",
    "release_stale_processing_locks",
    "requeue_due_failures",
    "run_health_checks",
    "run_maintenance",
]
