"""
Settlement models.

Usage:
    from settlement_engine.models import SettlementQueueItem, QueueStatus

    queued = db.query(SettlementQueueItem).filter(
        SettlementQueueItem.status == QueueStatus.QUEUED
    ).all()
"""
from settlement_engine.models.models import (
    Base,
    Money,
    QueueStatus,
    ReceiptType,
    ReceiptStatus,
    MarketStatus,
    EntryType,
    TreasuryEntryType,
    GameStatus,
    SportsGame,
    Market,
    LedgerEntry,
    Payout,
    SettlementQueueItem,
    SettlementReceipt,
    MarketSettlement,
    TreasuryLedgerEntry,
    JobLock,
)

__all__ = [
    "Base",
    "Money",
    "QueueStatus",
    "ReceiptType",
    "ReceiptStatus",
    "MarketStatus",
    "EntryType",
    "TreasuryEntryType",
    "GameStatus",
    "SportsGame",
    "Market",
    "LedgerEntry",
    "Payout",
    "SettlementQueueItem",
    "SettlementReceipt",
    "MarketSettlement",
    "TreasuryLedgerEntry",
    "JobLock",
]
