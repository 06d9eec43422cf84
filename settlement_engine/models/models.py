"""
Settlement models.

Tables read and written by the settlement engine:
- sports_games: finished games (populated by ingestion, stamped settled_at here)
- markets: bettable propositions tied to a game
- ledger_entries: append-only balance movements (trade_lock / trade_release / payout)
- payouts: queued disbursements for the downstream payout processor
- settlement_queue: one work item per game needing settlement
- settlement_receipts: idempotency records, unique per (market, user, type)
- market_settlements: one close-out summary per market, with its pool and fee breakdown
- treasury_ledger: platform fee income and other treasury movements
- job_locks: named locks for scheduled jobs

Money columns are NUMERIC(18, 6) and round-trip as Decimal.
"""
from sqlalchemy import (
    Column, String, Integer, DateTime, ForeignKey, Boolean, Text,
    Numeric, Index, UniqueConstraint, JSON,
)
from sqlalchemy.orm import declarative_base

from settlement_engine.utils.timezone import utc_now

Base = declarative_base()

Money = Numeric(18, 6, asdecimal=True)


# =============================================================================
# STATUS VOCABULARY
# =============================================================================

class QueueStatus:
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"

    ALL = (QUEUED, PROCESSING, DONE, FAILED, SKIPPED)


class ReceiptType:
    PAYOUT = "PAYOUT"
    REFUND = "REFUND"
    FEE = "FEE"

    ALL = (PAYOUT, REFUND, FEE)


class ReceiptStatus:
    INITIATED = "INITIATED"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


class MarketStatus:
    OPEN = "open"
    SETTLED = "settled"
    VOID = "void"

    TERMINAL = (SETTLED, VOID)


class EntryType:
    TRADE_LOCK = "trade_lock"
    TRADE_RELEASE = "trade_release"
    PAYOUT = "payout"


class TreasuryEntryType:
    SETTLEMENT_FEE = "SETTLEMENT_FEE"
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    ADJUSTMENT = "ADJUSTMENT"

    ALL = (SETTLEMENT_FEE, DEPOSIT, WITHDRAWAL, ADJUSTMENT)


class GameStatus:
    SCHEDULED = "SCHEDULED"
    LIVE = "LIVE"
    FINAL = "FINAL"
    CANCELED = "CANCELED"
    POSTPONED = "POSTPONED"


# =============================================================================
# GAMES & MARKETS
# =============================================================================

class SportsGame(Base):
    """
    A game as stored by ingestion.

    The engine only writes ``settled_at``; ``status_norm``, ``winner_side`` and
    the scores are read by the decider and the lifecycle health checks.
    """
    __tablename__ = "sports_games"

    id = Column(Integer, primary_key=True)
    league = Column(String(20), nullable=False, index=True)
    provider = Column(String(50), nullable=False, default="api-sports")
    external_game_id = Column(String(100), nullable=True, index=True)

    home_team = Column(String(100), nullable=True)
    away_team = Column(String(100), nullable=True)
    home_score = Column(Integer, nullable=True)
    away_score = Column(Integer, nullable=True)

    starts_at = Column(DateTime, nullable=True)
    status_norm = Column(String(20), nullable=False, default=GameStatus.SCHEDULED, index=True)
    winner_side = Column(String(10), nullable=True)  # HOME, AWAY, DRAW
    finalized_at = Column(DateTime, nullable=True)
    settled_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)


class Market(Base):
    """A single bettable proposition tied to one game."""
    __tablename__ = "markets"

    id = Column(String(36), primary_key=True)
    sports_game_id = Column(Integer, ForeignKey("sports_games.id"), nullable=True, index=True)
    # Legacy reference used before sports_games existed
    sportsdata_game_id = Column(Integer, nullable=True)
    league = Column(String(20), nullable=True)
    title = Column(String(255), nullable=True)

    market_status = Column(String(20), nullable=False, default=MarketStatus.OPEN, index=True)
    game_status = Column(String(20), nullable=True)
    final_outcome = Column(String(20), nullable=True)

    is_locked = Column(Boolean, nullable=False, default=False)
    lock_reason = Column(String(100), nullable=True)
    locked_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("ix_markets_legacy_game", "sportsdata_game_id", "league"),
    )


# =============================================================================
# ACCOUNTING
# =============================================================================

class LedgerEntry(Base):
    """
    An accounting movement. Entries are never mutated after insert.

    ``meta`` carries side/position on trade locks and original_trades /
    receipt_id / payout_id / reason on settlement credits.
    """
    __tablename__ = "ledger_entries"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)
    market_id = Column(String(36), ForeignKey("markets.id"), nullable=True, index=True)
    entry_type = Column(String(30), nullable=False, index=True)
    direction = Column(String(10), nullable=False)  # credit, debit
    amount = Column(Money, nullable=False)
    currency = Column(String(10), nullable=False, default="USDC")
    reference_id = Column(String(100), nullable=True, index=True)
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)


class Payout(Base):
    """Queued disbursement. Execution belongs to the downstream payout processor."""
    __tablename__ = "payouts"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=False, index=True)
    market_id = Column(String(36), ForeignKey("markets.id"), nullable=True, index=True)
    amount = Column(Money, nullable=False)
    currency = Column(String(10), nullable=False, default="USDC")
    status = Column(String(20), nullable=False, default="queued", index=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)


# =============================================================================
# SETTLEMENT
# =============================================================================

class SettlementQueueItem(Base):
    """One unit of settlement work per finished game."""
    __tablename__ = "settlement_queue"

    id = Column(String(36), primary_key=True)
    game_id = Column(Integer, ForeignKey("sports_games.id"), nullable=False, unique=True)
    league = Column(String(20), nullable=False)
    external_game_id = Column(String(100), nullable=True)
    provider = Column(String(50), nullable=False, default="api-sports")

    status = Column(String(20), nullable=False, default=QueueStatus.QUEUED)
    outcome = Column(String(20), nullable=True)  # HOME, AWAY, DRAW, CANCELED, POSTPONED
    reason = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime, nullable=False, default=utc_now)

    locked_by = Column(String(100), nullable=True)
    locked_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index("ix_settlement_queue_claim", "status", "next_attempt_at", "created_at"),
        Index("ix_settlement_queue_league", "league"),
    )


class SettlementReceipt(Base):
    """
    Idempotency record for one payout/refund/fee attempt.

    Created INITIATED before any money moves, then CONFIRMED or FAILED.
    Never deleted.
    """
    __tablename__ = "settlement_receipts"

    id = Column(String(36), primary_key=True)
    settlement_queue_id = Column(String(36), ForeignKey("settlement_queue.id"), nullable=True, index=True)
    market_id = Column(String(36), ForeignKey("markets.id"), nullable=False)
    game_id = Column(Integer, nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)

    receipt_type = Column(String(10), nullable=False)
    status = Column(String(20), nullable=False, default=ReceiptStatus.INITIATED, index=True)
    amount = Column(Money, nullable=False)
    currency = Column(String(10), nullable=False, default="USDC")

    payout_id = Column(String(36), nullable=True)
    ledger_entry_id = Column(String(36), nullable=True)
    tx_hash = Column(String(100), nullable=True)

    initiated_at = Column(DateTime, nullable=False, default=utc_now)
    confirmed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("market_id", "user_id", "receipt_type", name="uq_settlement_receipts_market_user_type"),
    )


class MarketSettlement(Base):
    """Close-out summary for one market. Its existence guards re-settlement."""
    __tablename__ = "market_settlements"

    id = Column(String(36), primary_key=True)
    market_id = Column(String(36), ForeignKey("markets.id"), nullable=False, unique=True)
    game_id = Column(Integer, nullable=False, index=True)
    outcome = Column(String(20), nullable=False)
    total_volume = Column(Money, nullable=False, default=0)
    total_payouts = Column(Money, nullable=False, default=0)
    payout_count = Column(Integer, nullable=False, default=0)
    settled_by = Column(String(50), nullable=False, default="system")

    # Pool breakdown; all zero on cancellations except net_distributed_amount
    gross_pool = Column(Money, nullable=False, default=0)
    winning_pool = Column(Money, nullable=False, default=0)
    losing_pool = Column(Money, nullable=False, default=0)
    platform_fee_amount = Column(Money, nullable=False, default=0)
    net_distributed_amount = Column(Money, nullable=False, default=0)
    winners_count = Column(Integer, nullable=False, default=0)
    losers_count = Column(Integer, nullable=False, default=0)
    fee_rate = Column(Numeric(5, 4, asdecimal=True), nullable=True)

    meta = Column(JSON, nullable=True)
    settled_at = Column(DateTime, nullable=False, default=utc_now)


class TreasuryLedgerEntry(Base):
    """
    Append-only treasury movement.

    Settlement writes one SETTLEMENT_FEE entry per market that earned a fee;
    the unique settlement_id keeps a retried market from recording it twice.
    Deposits, withdrawals and adjustments are written by treasury operations
    and only read here.
    """
    __tablename__ = "treasury_ledger"

    id = Column(String(36), primary_key=True)
    settlement_id = Column(String(36), nullable=True, unique=True)
    market_id = Column(String(36), nullable=True, index=True)
    game_id = Column(Integer, nullable=True, index=True)
    entry_type = Column(String(20), nullable=False, index=True)
    amount = Column(Money, nullable=False)
    currency = Column(String(10), nullable=False, default="USDC")
    fee_rate = Column(Numeric(5, 4, asdecimal=True), nullable=True)
    gross_pool = Column(Money, nullable=True)
    losing_pool = Column(Money, nullable=True)
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now, index=True)


class JobLock(Base):
    """Named lock with a TTL, held by one scheduler instance at a time."""
    __tablename__ = "job_locks"

    job_name = Column(String(100), primary_key=True)
    locked_at = Column(DateTime, nullable=False, default=utc_now)
    expires_at = Column(DateTime, nullable=False, index=True)
    locked_by = Column(String(100), nullable=False)
    meta = Column(JSON, nullable=True)
