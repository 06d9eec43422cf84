"""
Repository layer for settlement data access.

Usage:
    from settlement_engine.repositories import SettlementQueueRepository
    from settlement_engine.core.database import SessionLocal

    db = SessionLocal()
    stats = SettlementQueueRepository(db).get_queue_stats()
    db.close()
"""

from settlement_engine.repositories.base import BaseRepository
from settlement_engine.repositories.game_repository import GameRepository
from settlement_engine.repositories.ledger_repository import LedgerRepository
from settlement_engine.repositories.market_repository import (
    MarketRepository,
    MarketSettlementRepository,
    SAFETY_LOCK_REASON,
)
from settlement_engine.repositories.queue_repository import (
    SettlementQueueRepository,
    BACKOFF_SCHEDULE_MINUTES,
    backoff_minutes,
)
from settlement_engine.repositories.receipt_repository import ReceiptRepository
from settlement_engine.repositories.treasury_repository import TreasuryRepository

__all__ = [
    "BaseRepository",
    "GameRepository",
    "LedgerRepository",
    "MarketRepository",
    "MarketSettlementRepository",
    "SAFETY_LOCK_REASON",
    "SettlementQueueRepository",
    "BACKOFF_SCHEDULE_MINUTES",
    "backoff_minutes",
    "ReceiptRepository",
    "TreasuryRepository",
]
