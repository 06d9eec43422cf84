"""Read-only settlement views: dry-run preview, processed check and treasury reads."""
import logging
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from settlement_engine.models import Market, SportsGame, TreasuryLedgerEntry
from settlement_engine.repositories import (
    GameRepository,
    LedgerRepository,
    MarketRepository,
    MarketSettlementRepository,
    SettlementQueueRepository,
    TreasuryRepository,
)
from settlement_engine.services.settlement.payouts import (
    calculate_payout,
    group_positions,
    is_cancellation,
    normalize_outcome,
    quantize_money,
)
from settlement_engine.utils.timezone import to_iso

logger = logging.getLogger(__name__)

_TOTAL_KEYS = (
    "total_volume", "winning_stake", "losing_stake",
    "gross_payout", "platform_fee", "net_payout", "refund_total",
)


def _money(value: Decimal) -> str:
    return str(quantize_money(value))


def preview_settlement(db: Session, game_id: int, outcome: Optional[str] = None) -> Optional[Dict]:
    """
    Compute what settling a game would pay, without writing anything.

    Outcome precedence: explicit argument, the queued item's outcome, the
    game's winner_side, then CANCELED.

    Returns:
        Preview dict, or None when the game does not exist
    """
    game = GameRepository(db).find_by_id(game_id)
    if game is None:
        logger.warning(f"Preview requested for unknown game {game_id}")
        return None

    item = SettlementQueueRepository(db).find_by_game(game_id)
    resolved = normalize_outcome(outcome or (item.outcome if item else None) or game.winner_side)
    cancellation = is_cancellation(resolved)

    markets = MarketRepository(db).find_for_game(game.id, game.external_game_id, game.league)
    ledger = LedgerRepository(db)

    totals = {key: Decimal("0") for key in _TOTAL_KEYS}
    winners_total = 0
    losers_total = 0
    market_previews = []

    for market in markets:
        row = {key: Decimal("0") for key in _TOTAL_KEYS}
        winners = losers = 0
        trades = ledger.trade_locks_for_market(market.id)

        # Same per-user grouping as settlement, so the rounding matches too
        for position in group_positions(trades, resolved):
            row["total_volume"] += position.stake
            if cancellation:
                row["refund_total"] += position.stake
                continue
            row["losing_stake"] += position.stake - position.winning_stake
            if position.is_winner:
                breakdown = calculate_payout(position.winning_stake)
                winners += 1
                row["winning_stake"] += position.winning_stake
                row["gross_payout"] += breakdown.gross
                row["platform_fee"] += breakdown.fee
                row["net_payout"] += breakdown.net
            else:
                losers += 1

        for key in _TOTAL_KEYS:
            totals[key] += row[key]
        winners_total += winners
        losers_total += losers

        market_previews.append({
            "market_id": market.id,
            "title": market.title,
            "market_status": market.market_status,
            "is_locked": market.is_locked,
            "trade_count": len(trades),
            "winners_count": winners,
            "losers_count": losers,
            **{key: _money(value) for key, value in row.items()},
        })

    return {
        "game_id": game.id,
        "league": game.league,
        "outcome": resolved,
        "is_cancellation": cancellation,
        "already_settled": game.settled_at is not None,
        "markets": market_previews,
        "totals": {
            "markets": len(market_previews),
            "winners_count": winners_total,
            "losers_count": losers_total,
            **{key: _money(value) for key, value in totals.items()},
        },
    }


def is_settlement_processed(db: Session, game_id: int) -> Dict:
    """Whether a game has been settled, and how many markets were closed out."""
    game = GameRepository(db).find_by_id(game_id)
    market_count = MarketSettlementRepository(db).count_for_game(game_id)
    settled_at = game.settled_at if game is not None else None
    return {
        "game_id": game_id,
        "processed": settled_at is not None,
        "settled_at": to_iso(settled_at),
        "market_count": market_count,
    }


def get_treasury_balance(db: Session) -> Dict:
    """Fee income, withdrawals and the current treasury balance."""
    balance = TreasuryRepository(db).get_balance()
    return {
        "total_fees_collected": _money(balance["total_fees_collected"]),
        "total_withdrawn": _money(balance["total_withdrawn"]),
        "total_adjustments": _money(balance["total_adjustments"]),
        "current_balance": _money(balance["current_balance"]),
        "total_entries": balance["total_entries"],
        "last_updated": to_iso(balance["last_updated"]),
    }


def get_treasury_ledger(db: Session, limit: int = 50, entry_type: Optional[str] = None) -> List[Dict]:
    """Recent treasury entries, newest first, with their market and game."""
    entries = TreasuryRepository(db).list_entries(limit=limit, entry_type=entry_type)

    market_ids = {e.market_id for e in entries if e.market_id}
    game_ids = {e.game_id for e in entries if e.game_id is not None}
    markets = {}
    games = {}
    if market_ids:
        markets = {m.id: m for m in db.query(Market).filter(Market.id.in_(market_ids)).all()}
    if game_ids:
        games = {g.id: g for g in db.query(SportsGame).filter(SportsGame.id.in_(game_ids)).all()}

    return [_serialize_treasury_entry(e, markets.get(e.market_id), games.get(e.game_id)) for e in entries]


def _serialize_treasury_entry(
    entry: TreasuryLedgerEntry,
    market: Optional[Market],
    game: Optional[SportsGame],
) -> Dict:
    return {
        "id": entry.id,
        "settlement_id": entry.settlement_id,
        "market_id": entry.market_id,
        "game_id": entry.game_id,
        "entry_type": entry.entry_type,
        "amount": _money(entry.amount),
        "currency": entry.currency,
        "fee_rate": str(entry.fee_rate) if entry.fee_rate is not None else None,
        "gross_pool": _money(entry.gross_pool) if entry.gross_pool is not None else None,
        "losing_pool": _money(entry.losing_pool) if entry.losing_pool is not None else None,
        "meta": entry.meta or {},
        "created_at": to_iso(entry.created_at),
        "market": {"id": market.id, "title": market.title} if market else None,
        "game": {
            "id": game.id,
            "home_team": game.home_team,
            "away_team": game.away_team,
            "home_score": game.home_score,
            "away_score": game.away_score,
        } if game else None,
    }
