"""Settlement orchestrator: settles every market of one finished game.

For a claimed queue item this:
1. Loads the game (missing game -> failure with backoff)
2. Short-circuits when the game is already settled, or when market
   settlements already exist for it
3. Resolves the game's markets, force-locking any left unlocked
4. Per market: marks it settled/void, combines each user's stakes into one
   position, then pays winning positions (2x minus 2.5%) or refunds every
   position (cancellation), writing a receipt before each money movement
5. Writes one market_settlements row per market with its pool breakdown,
   records the platform fee in the treasury ledger, stamps the game and
   marks the queue item DONE

Every step is safe to repeat. Receipts are unique per (market, user, type)
and a market_settlements row closes a market for good, so a retried item
never pays the same position twice.
"""
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from settlement_engine.core import metrics
from settlement_engine.core.config import settings
from settlement_engine.core.logging import bind_log_context
from settlement_engine.models import (
    EntryType, Market, MarketStatus, ReceiptType, SettlementQueueItem,
)
from settlement_engine.repositories import (
    GameRepository,
    LedgerRepository,
    MarketRepository,
    MarketSettlementRepository,
    ReceiptRepository,
    SettlementQueueRepository,
    TreasuryRepository,
)
from settlement_engine.services.settlement.payouts import (
    OUTCOMES,
    PLATFORM_FEE_RATE,
    PayoutBreakdown,
    Position,
    calculate_payout,
    group_positions,
    is_cancellation,
    normalize_outcome,
    quantize_money,
)

logger = logging.getLogger(__name__)

SETTLED_BY = "system"


class SettlementError(Exception):
    """Raised when a queue item cannot be settled and must be retried."""


@dataclass
class SettlementResult:
    """Outcome of settling one queue item."""
    success: bool
    queue_item_id: Optional[str]
    game_id: Optional[int]
    markets_settled: int = 0
    markets_failed: int = 0
    payouts_created: int = 0
    refunds_created: int = 0
    total_payout_amount: Decimal = Decimal("0")
    total_refund_amount: Decimal = Decimal("0")
    total_fee_amount: Decimal = Decimal("0")
    receipts_created: int = 0
    receipts_failed: int = 0
    skipped_due_to_receipt: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "success": self.success,
            "queue_item_id": self.queue_item_id,
            "game_id": self.game_id,
            "markets_settled": self.markets_settled,
            "markets_failed": self.markets_failed,
            "payouts_created": self.payouts_created,
            "refunds_created": self.refunds_created,
            "total_payout_amount": str(quantize_money(self.total_payout_amount)),
            "total_refund_amount": str(quantize_money(self.total_refund_amount)),
            "total_fee_amount": str(quantize_money(self.total_fee_amount)),
            "receipts_created": self.receipts_created,
            "receipts_failed": self.receipts_failed,
            "skipped_due_to_receipt": self.skipped_due_to_receipt,
            "error": self.error,
        }


@dataclass
class _ItemContext:
    """Plain copies of the queue item fields; ORM state expires on rollback."""
    item_id: str
    game_id: int
    league: Optional[str]
    external_game_id: Optional[str]
    outcome: str
    cancellation: bool


@dataclass
class _MarketTotals:
    # Credits that actually moved in this run
    paid: Decimal = Decimal("0")
    fees: Decimal = Decimal("0")
    count: int = 0
    failed: int = 0
    skipped: int = 0
    # Pool breakdown of every position, whether or not it was paid in this run
    trades: int = 0
    volume: Decimal = Decimal("0")
    winning_pool: Decimal = Decimal("0")
    platform_fee: Decimal = Decimal("0")
    net_distributed: Decimal = Decimal("0")
    winners: int = 0
    losers: int = 0

    def losing_pool(self, cancellation: bool) -> Decimal:
        return Decimal("0") if cancellation else self.volume - self.winning_pool


def _queue_item_id(item: SettlementQueueItem) -> Optional[str]:
    """Primary key of the item without loading expired attributes."""
    state = inspect(item, raiseerr=False)
    if state is not None and state.identity:
        return state.identity[0]
    return vars(item).get("id")


class SettlementOrchestrator:
    """
    Settles claimed queue items.

    Usage:
        orchestrator = SettlementOrchestrator(db)
        result = orchestrator.process_settlement(item)
    """

    def __init__(self, db: Session, worker_id: Optional[str] = None, default_currency: Optional[str] = None):
        """
        Args:
            db: SQLAlchemy session, used for every store call of the run
            worker_id: Identity written into queue locks
            default_currency: Currency for trades that carry none
        """
        self.db = db
        self.worker_id = worker_id or settings.WORKER_ID
        self.default_currency = default_currency or settings.SETTLEMENT_DEFAULT_CURRENCY

        self.queue = SettlementQueueRepository(db)
        self.receipts = ReceiptRepository(db)
        self.markets = MarketRepository(db)
        self.market_settlements = MarketSettlementRepository(db)
        self.ledger = LedgerRepository(db)
        self.games = GameRepository(db)
        self.treasury = TreasuryRepository(db)

    # ========================================================================
    # Entry point
    # ========================================================================

    def process_settlement(self, item: SettlementQueueItem) -> SettlementResult:
        """
        Settle one claimed queue item end to end.

        Never raises: any exception rolls the session back, records the
        failure on the queue item (with backoff) and comes back in
        ``result.error``.
        """
        item_id = _queue_item_id(item)
        result = SettlementResult(success=False, queue_item_id=item_id, game_id=None)
        started = time.monotonic()

        with bind_log_context(queue_item_id=item_id, worker_id=self.worker_id):
            try:
                ctx = self._context_for(item)
                result.game_id = ctx.game_id
                with bind_log_context(game_id=ctx.game_id):
                    logger.info(f"Processing settlement for game {ctx.game_id} outcome={ctx.outcome}")
                    self._settle(ctx, result)
                result.success = True
            except Exception as e:
                self.db.rollback()
                result.error = str(e) or e.__class__.__name__
                logger.error(
                    f"❌ Settlement failed for queue item {item_id} (game {result.game_id}): {result.error}",
                    exc_info=True,
                )
                if item_id is not None:
                    self._record_failure(item_id, result.error)
            finally:
                metrics.record_item_result(result.success, time.monotonic() - started)

            if result.success:
                logger.info(
                    f"✅ Settled game {result.game_id}: {result.markets_settled} markets, "
                    f"{result.payouts_created} payouts, {result.refunds_created} refunds, "
                    f"{result.skipped_due_to_receipt} skipped, {result.receipts_failed} failed receipts"
                )
        return result

    @staticmethod
    def _context_for(item: SettlementQueueItem) -> _ItemContext:
        outcome = normalize_outcome(item.outcome)
        return _ItemContext(
            item_id=item.id,
            game_id=item.game_id,
            league=item.league,
            external_game_id=item.external_game_id,
            outcome=outcome,
            cancellation=is_cancellation(outcome),
        )

    def _record_failure(self, item_id: str, reason: str) -> None:
        try:
            self.queue.mark_failed(item_id, reason)
        except SQLAlchemyError as e:
            # The stale-lock sweep will hand the item back to the queue
            self.db.rollback()
            logger.error(f"❌ Could not record failure for queue item {item_id}: {e}")

    # ========================================================================
    # Item state machine
    # ========================================================================

    def _settle(self, ctx: _ItemContext, result: SettlementResult) -> None:
        if ctx.outcome not in OUTCOMES:
            raise SettlementError(f"Unknown outcome {ctx.outcome} for game {ctx.game_id}")

        game = self.games.find_by_id(ctx.game_id)
        if game is None:
            raise SettlementError(f"Game not found: {ctx.game_id}")

        if game.settled_at is not None:
            logger.info(f"Game {ctx.game_id} already settled at {game.settled_at.isoformat()}")
            result.markets_settled = self.market_settlements.count_for_game(ctx.game_id)
            self.queue.mark_done(ctx.item_id)
            return

        existing = self.market_settlements.count_for_game(ctx.game_id)
        if existing > 0:
            logger.info(f"Game {ctx.game_id} already has {existing} market settlement(s), closing item")
            self.games.stamp_settled(game)
            self.queue.mark_done(ctx.item_id)
            result.markets_settled = existing
            return

        markets = self.markets.find_for_game(ctx.game_id, ctx.external_game_id, ctx.league)
        if not markets:
            logger.info(f"No markets found for game {ctx.game_id}, nothing to settle")
            self.games.stamp_settled(game)
            self.queue.mark_done(ctx.item_id)
            return

        self._enforce_locks(ctx, markets)

        market_ids = [market.id for market in markets]
        for market_id in market_ids:
            with bind_log_context(market_id=market_id):
                try:
                    if self._settle_market(ctx, market_id, result):
                        result.markets_settled += 1
                except Exception as e:
                    self.db.rollback()
                    result.markets_failed += 1
                    logger.error(f"❌ Market {market_id} settlement error: {e}", exc_info=True)

        game = self.games.find_by_id(ctx.game_id)
        self.games.stamp_settled(game)
        self.queue.mark_done(ctx.item_id)

    def _enforce_locks(self, ctx: _ItemContext, markets: List[Market]) -> None:
        unlocked = [market for market in markets if not market.is_locked]
        if not unlocked:
            return

        unlocked_ids = [market.id for market in unlocked]
        logger.error(
            f"SAFETY_VIOLATION: {len(unlocked_ids)} market(s) still unlocked at settlement "
            f"for game {ctx.game_id}, force-locking",
            extra={"event": "SAFETY_VIOLATION", "market_ids": unlocked_ids},
        )
        metrics.record_safety_violation(len(unlocked_ids))
        self.markets.force_lock(unlocked)

    # ========================================================================
    # Per market
    # ========================================================================

    def _settle_market(self, ctx: _ItemContext, market_id: str, result: SettlementResult) -> bool:
        """Settle one market. Returns True when the market counts as settled."""
        market = self.markets.find_by_id(market_id)
        if market.market_status in MarketStatus.TERMINAL:
            logger.info(f"Market {market_id} already {market.market_status}, skipping")
            return True

        if self.market_settlements.exists_for_market(market_id):
            logger.info(f"Market {market_id} already has a settlement record, skipping")
            return True

        self.markets.resolve(market, ctx.outcome, ctx.cancellation)

        entries = self.ledger.trade_locks_for_market(market_id)
        positions = group_positions(entries, ctx.outcome, self.default_currency)

        totals = _MarketTotals(trades=len(entries))
        for position in positions:
            totals.volume += position.stake
            if ctx.cancellation:
                totals.net_distributed += position.stake
                self._refund_position(ctx, market_id, position, result, totals)
            elif position.is_winner:
                breakdown = calculate_payout(position.winning_stake)
                totals.winners += 1
                totals.winning_pool += position.winning_stake
                totals.platform_fee += breakdown.fee
                totals.net_distributed += breakdown.net
                self._pay_winner(ctx, market_id, position, breakdown, result, totals)
            else:
                totals.losers += 1

        platform_fee = quantize_money(totals.platform_fee)
        losing_pool = totals.losing_pool(ctx.cancellation)
        settlement = self.market_settlements.create_settlement(
            market_id=market_id,
            game_id=ctx.game_id,
            outcome=ctx.outcome,
            total_volume=totals.volume,
            total_payouts=totals.paid,
            payout_count=totals.count,
            settled_by=SETTLED_BY,
            meta={
                "kind": "refund" if ctx.cancellation else "payout",
                "settlement_queue_id": ctx.item_id,
                "trade_count": totals.trades,
                "position_count": len(positions),
                "receipts_failed": totals.failed,
                "receipts_skipped": totals.skipped,
            },
            gross_pool=totals.volume,
            winning_pool=totals.winning_pool,
            losing_pool=losing_pool,
            platform_fee_amount=platform_fee,
            net_distributed_amount=totals.net_distributed,
            winners_count=totals.winners,
            losers_count=totals.losers,
            fee_rate=PLATFORM_FEE_RATE,
        )
        settlement_id = settlement.id

        currency = positions[0].currency if positions else self.default_currency
        self._record_treasury_fee(ctx, market_id, settlement_id, platform_fee, losing_pool, currency, totals)

        logger.info(
            f"Market {market_id} {'voided' if ctx.cancellation else 'settled'}: "
            f"{totals.count} credit(s) totalling {totals.paid} on volume {totals.volume}"
        )
        return True

    def _record_treasury_fee(
        self,
        ctx: _ItemContext,
        market_id: str,
        settlement_id: str,
        fee: Decimal,
        losing_pool: Decimal,
        currency: str,
        totals: _MarketTotals,
    ) -> None:
        """Append the market's fee to the treasury ledger. A failure leaves the market settled."""
        if fee <= 0:
            return

        try:
            entry = self.treasury.record_settlement_fee(
                settlement_id=settlement_id,
                market_id=market_id,
                game_id=ctx.game_id,
                amount=fee,
                currency=currency,
                fee_rate=PLATFORM_FEE_RATE,
                gross_pool=totals.volume,
                losing_pool=losing_pool,
                meta={
                    "outcome": ctx.outcome,
                    "settlement_queue_id": ctx.item_id,
                    "winners_count": totals.winners,
                    "losers_count": totals.losers,
                    "net_distributed": str(quantize_money(totals.net_distributed)),
                },
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Treasury fee entry failed for market {market_id}: {e}")
            return

        if entry is not None:
            logger.info(f"Treasury fee recorded: {fee} from market {market_id}")

    # ========================================================================
    # Per position
    # ========================================================================

    def _refund_position(
        self,
        ctx: _ItemContext,
        market_id: str,
        position: Position,
        result: SettlementResult,
        totals: _MarketTotals,
    ) -> None:
        amount = position.stake
        receipt_id = self._open_receipt(ctx, market_id, position, ReceiptType.REFUND, amount, result, totals)
        if receipt_id is None:
            return

        try:
            entry = self.ledger.append_credit(
                user_id=position.user_id,
                market_id=market_id,
                entry_type=EntryType.TRADE_RELEASE,
                amount=amount,
                currency=position.currency,
                reference_id=f"refund-{ctx.item_id}-{position.trade_ids[0]}",
                meta={
                    "reason": "game_postponed" if ctx.outcome == "POSTPONED" else "game_canceled",
                    "original_trades": list(position.trade_ids),
                    "receipt_id": receipt_id,
                },
            )
            self.receipts.confirm_receipt(receipt_id, ledger_entry_id=entry.id)
            self.db.commit()
        except Exception as e:
            self._fail_position(receipt_id, ReceiptType.REFUND, position, e, result, totals)
            return

        totals.paid += amount
        totals.count += 1
        result.refunds_created += 1
        result.total_refund_amount += amount
        metrics.record_receipt(ReceiptType.REFUND, "confirmed", amount)

    def _pay_winner(
        self,
        ctx: _ItemContext,
        market_id: str,
        position: Position,
        breakdown: PayoutBreakdown,
        result: SettlementResult,
        totals: _MarketTotals,
    ) -> None:
        receipt_id = self._open_receipt(ctx, market_id, position, ReceiptType.PAYOUT, breakdown.net, result, totals)
        if receipt_id is None:
            return

        # Payout row, ledger credit and confirmation commit together
        try:
            payout = self.ledger.create_payout(
                user_id=position.user_id,
                market_id=market_id,
                amount=breakdown.net,
                currency=position.currency,
            )
            entry = self.ledger.append_credit(
                user_id=position.user_id,
                market_id=market_id,
                entry_type=EntryType.PAYOUT,
                amount=breakdown.net,
                currency=position.currency,
                reference_id=f"settlement-{ctx.item_id}-{position.winning_trade_ids[0]}",
                meta={
                    "outcome": ctx.outcome,
                    "original_trades": list(position.winning_trade_ids),
                    "receipt_id": receipt_id,
                    "payout_id": payout.id,
                    "stake": str(breakdown.stake),
                    "gross": str(breakdown.gross),
                    "fee": str(breakdown.fee),
                },
            )
            self.receipts.confirm_receipt(receipt_id, ledger_entry_id=entry.id, payout_id=payout.id)
            self.db.commit()
        except Exception as e:
            self._fail_position(receipt_id, ReceiptType.PAYOUT, position, e, result, totals)
            return

        totals.paid += breakdown.net
        totals.fees += breakdown.fee
        totals.count += 1
        result.payouts_created += 1
        result.total_payout_amount += breakdown.net
        result.total_fee_amount += breakdown.fee
        metrics.record_receipt(ReceiptType.PAYOUT, "confirmed", breakdown.net)

    def _open_receipt(
        self,
        ctx: _ItemContext,
        market_id: str,
        position: Position,
        receipt_type: str,
        amount: Decimal,
        result: SettlementResult,
        totals: _MarketTotals,
    ) -> Optional[str]:
        """Create the INITIATED receipt; None means this position is already handled."""
        if self.receipts.receipt_exists(market_id, position.user_id, receipt_type):
            logger.info(f"{receipt_type} receipt exists for user {position.user_id}, skipping position")
            self._count_skip(receipt_type, result, totals)
            return None

        receipt = self.receipts.create_receipt(
            settlement_queue_id=ctx.item_id,
            market_id=market_id,
            game_id=ctx.game_id,
            user_id=position.user_id,
            receipt_type=receipt_type,
            amount=amount,
            currency=position.currency,
        )
        if receipt is None:
            self._count_skip(receipt_type, result, totals)
            return None

        result.receipts_created += 1
        return receipt.id

    def _count_skip(self, receipt_type: str, result: SettlementResult, totals: _MarketTotals) -> None:
        result.skipped_due_to_receipt += 1
        totals.skipped += 1
        metrics.record_receipt(receipt_type, "skipped")

    def _fail_position(
        self,
        receipt_id: str,
        receipt_type: str,
        position: Position,
        error: Exception,
        result: SettlementResult,
        totals: _MarketTotals,
    ) -> None:
        self.db.rollback()
        reason = str(error) or error.__class__.__name__
        logger.error(
            f"❌ {receipt_type} failed for user {position.user_id} "
            f"(trades {', '.join(position.trade_ids)}, receipt {receipt_id}): {reason}"
        )
        self.receipts.fail_receipt(receipt_id, reason)
        result.receipts_failed += 1
        totals.failed += 1
        metrics.record_receipt(receipt_type, "failed")
