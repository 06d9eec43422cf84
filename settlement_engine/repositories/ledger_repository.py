"""
Ledger/accounting store.

Settlement reads trade_lock debits to find open positions and appends
credit entries (trade_release for refunds, payout for wins). Entries are
never updated once written.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from settlement_engine.models import EntryType, LedgerEntry, Payout
from settlement_engine.repositories.base import BaseRepository, new_id
from settlement_engine.utils.timezone import utc_now

logger = logging.getLogger(__name__)


class LedgerRepository(BaseRepository[LedgerEntry]):
    """Data access for ledger_entries and payouts."""

    def __init__(self, db: Session):
        super().__init__(LedgerEntry, db)

    def trade_locks_for_market(self, market_id: str) -> List[LedgerEntry]:
        """Open positions on a market, oldest first."""
        return (
            self.query()
            .filter(
                LedgerEntry.market_id == market_id,
                LedgerEntry.entry_type == EntryType.TRADE_LOCK,
            )
            .order_by(LedgerEntry.created_at.asc())
            .all()
        )

    def append_credit(
        self,
        user_id: str,
        market_id: str,
        entry_type: str,
        amount: Decimal,
        currency: str,
        reference_id: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> LedgerEntry:
        """Add a credit entry and flush it (the caller owns the commit)."""
        entry = self.create(
            id=new_id(),
            user_id=user_id,
            market_id=market_id,
            entry_type=entry_type,
            direction="credit",
            amount=amount,
            currency=currency,
            reference_id=reference_id,
            meta=meta or {},
            created_at=utc_now(),
        )
        self.db.flush()
        return entry

    def create_payout(
        self,
        user_id: str,
        market_id: str,
        amount: Decimal,
        currency: str,
    ) -> Payout:
        """Queue a disbursement record and flush it (the caller owns the commit)."""
        payout = Payout(
            id=new_id(),
            user_id=user_id,
            market_id=market_id,
            amount=amount,
            currency=currency,
            status="queued",
            created_at=utc_now(),
        )
        self.db.add(payout)
        self.db.flush()
        return payout
