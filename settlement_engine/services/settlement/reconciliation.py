"""
Reconciliation report for settlement operators.

Lists what settlement could not finish on its own:
- FAILED receipts (ledger or payout insert failed; no money moved)
- INITIATED receipts older than the threshold (worker died between receipt
  and money movement; re-runs will skip these positions)
- Markets marked settled/void that have no market_settlements row
- Open markets on games already stamped settled (market-level error)

Nothing here is retried automatically.
"""
import logging
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from settlement_engine.core.config import settings
from settlement_engine.models import Market, MarketStatus, SettlementReceipt, SportsGame
from settlement_engine.repositories import MarketRepository, ReceiptRepository
from settlement_engine.services.settlement.payouts import quantize_money, to_money
from settlement_engine.utils.timezone import to_iso

logger = logging.getLogger(__name__)


def _receipt_row(receipt: SettlementReceipt) -> Dict:
    return {
        "receipt_id": receipt.id,
        "settlement_queue_id": receipt.settlement_queue_id,
        "game_id": receipt.game_id,
        "market_id": receipt.market_id,
        "user_id": receipt.user_id,
        "receipt_type": receipt.receipt_type,
        "status": receipt.status,
        "amount": str(quantize_money(to_money(receipt.amount))),
        "currency": receipt.currency,
        "initiated_at": to_iso(receipt.initiated_at),
        "failed_at": to_iso(receipt.failed_at),
        "failure_reason": receipt.failure_reason,
    }


def _market_row(market: Market) -> Dict:
    return {
        "market_id": market.id,
        "game_id": market.sports_game_id,
        "market_status": market.market_status,
        "final_outcome": market.final_outcome,
    }


def _totals_by_type(receipts: List[SettlementReceipt]) -> Dict[str, Dict]:
    totals: Dict[str, Dict] = {}
    for receipt in receipts:
        bucket = totals.setdefault(receipt.receipt_type, {"count": 0, "amount": Decimal("0")})
        bucket["count"] += 1
        bucket["amount"] += to_money(receipt.amount)
    return {
        receipt_type: {"count": bucket["count"], "amount": str(quantize_money(bucket["amount"]))}
        for receipt_type, bucket in totals.items()
    }


def build_reconciliation_report(
    db: Session,
    stale_minutes: Optional[int] = None,
    game_id: Optional[int] = None,
) -> Dict:
    """
    Build the report.

    Args:
        stale_minutes: Age after which an INITIATED receipt is reported
            (defaults to SETTLEMENT_RECONCILE_AFTER_MINUTES)
        game_id: Restrict to one game
    """
    threshold = settings.SETTLEMENT_RECONCILE_AFTER_MINUTES if stale_minutes is None else stale_minutes
    receipts = ReceiptRepository(db)
    markets = MarketRepository(db)

    failed = receipts.find_failed(game_id=game_id)
    stale = receipts.find_stale_initiated(threshold, game_id=game_id)
    orphaned_markets = markets.find_resolved_without_settlement(game_id=game_id)

    open_query = (
        db.query(Market)
        .join(SportsGame, SportsGame.id == Market.sports_game_id)
        .filter(
            SportsGame.settled_at.isnot(None),
            Market.market_status.notin_(MarketStatus.TERMINAL),
        )
    )
    if game_id is not None:
        open_query = open_query.filter(Market.sports_game_id == game_id)
    open_on_settled = open_query.all()

    issue_count = len(failed) + len(stale) + len(orphaned_markets) + len(open_on_settled)
    if issue_count:
        logger.warning(
            f"Reconciliation: {len(failed)} failed receipts, {len(stale)} stale initiated, "
            f"{len(orphaned_markets)} markets without settlement, {len(open_on_settled)} open on settled games"
        )

    return {
        "stale_after_minutes": threshold,
        "issue_count": issue_count,
        "failed_receipts": [_receipt_row(r) for r in failed],
        "stale_initiated_receipts": [_receipt_row(r) for r in stale],
        "markets_without_settlement": [_market_row(m) for m in orphaned_markets],
        "open_markets_on_settled_games": [_market_row(m) for m in open_on_settled],
        "totals": {
            "failed": _totals_by_type(failed),
            "stale_initiated": _totals_by_type(stale),
        },
    }
