"""
Market store and market settlement summaries.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from settlement_engine.models import Market, MarketSettlement, MarketStatus
from settlement_engine.repositories.base import BaseRepository, new_id
from settlement_engine.utils.timezone import utc_now

logger = logging.getLogger(__name__)

SAFETY_LOCK_REASON = "SETTLEMENT_SAFETY"

POOL_COLUMNS = frozenset({
    "gross_pool", "winning_pool", "losing_pool", "platform_fee_amount",
    "net_distributed_amount", "winners_count", "losers_count", "fee_rate",
})


class MarketRepository(BaseRepository[Market]):
    """Data access for markets."""

    def __init__(self, db: Session):
        super().__init__(Market, db)

    def find_for_game(
        self,
        game_id: int,
        external_game_id: Optional[str] = None,
        league: Optional[str] = None,
    ) -> List[Market]:
        """
        Markets for a game.

        Looks up by the internal game reference first; markets created before
        sports_games existed only carry the legacy numeric external id plus
        league, so those are the fallback.
        """
        markets = self.query().filter(Market.sports_game_id == game_id).order_by(Market.created_at).all()
        if markets or not external_game_id or not league:
            return markets

        try:
            legacy_id = int(external_game_id)
        except (TypeError, ValueError):
            return []

        return (
            self.query()
            .filter(Market.sportsdata_game_id == legacy_id, Market.league == league)
            .order_by(Market.created_at)
            .all()
        )

    def force_lock(self, markets: List[Market], reason: str = SAFETY_LOCK_REASON) -> List[str]:
        """Lock the given markets and commit. Returns the ids that were locked."""
        now = utc_now()
        locked = []
        for market in markets:
            market.is_locked = True
            market.lock_reason = reason
            market.locked_at = now
            market.updated_at = now
            locked.append(market.id)
        if locked:
            self.db.commit()
        return locked

    def resolve(self, market: Market, outcome: str, is_cancellation: bool) -> None:
        """Move the market to void (cancellation) or settled and commit."""
        market.market_status = MarketStatus.VOID if is_cancellation else MarketStatus.SETTLED
        market.game_status = "final"
        market.final_outcome = outcome
        market.updated_at = utc_now()
        self.db.commit()

    def find_resolved_without_settlement(self, game_id: Optional[int] = None) -> List[Market]:
        """Settled/void markets that never got a market_settlements row."""
        query = (
            self.query()
            .outerjoin(MarketSettlement, MarketSettlement.market_id == Market.id)
            .filter(
                Market.market_status.in_(MarketStatus.TERMINAL),
                MarketSettlement.id.is_(None),
            )
        )
        if game_id is not None:
            query = query.filter(Market.sports_game_id == game_id)
        return query.all()


class MarketSettlementRepository(BaseRepository[MarketSettlement]):
    """Data access for market_settlements."""

    def __init__(self, db: Session):
        super().__init__(MarketSettlement, db)

    def exists_for_market(self, market_id: str) -> bool:
        return self.exists_where(MarketSettlement.market_id == market_id)

    def count_for_game(self, game_id: int) -> int:
        return self.count(MarketSettlement.game_id == game_id)

    def create_settlement(
        self,
        market_id: str,
        game_id: int,
        outcome: str,
        total_volume: Decimal,
        total_payouts: Decimal,
        payout_count: int,
        settled_by: str = "system",
        meta: Optional[Dict[str, Any]] = None,
        **pools: Any,
    ) -> MarketSettlement:
        """
        Insert the close-out row for a market and commit.

        ``pools`` carries the fee breakdown columns (gross_pool, winning_pool,
        losing_pool, platform_fee_amount, net_distributed_amount,
        winners_count, losers_count, fee_rate).
        """
        unknown = set(pools) - POOL_COLUMNS
        if unknown:
            raise ValueError(f"Unknown market settlement columns: {', '.join(sorted(unknown))}")

        settlement = self.create(
            id=new_id(),
            market_id=market_id,
            game_id=game_id,
            outcome=outcome,
            total_volume=total_volume,
            total_payouts=total_payouts,
            payout_count=payout_count,
            settled_by=settled_by,
            meta=meta,
            settled_at=utc_now(),
            **pools,
        )
        self.db.commit()
        return settlement
