"""
Treasury ledger.

Settlement appends one SETTLEMENT_FEE entry per market settlement. The
balance is derived from the entries on read, never stored.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement_engine.core.database import is_unique_violation
from settlement_engine.models import TreasuryEntryType, TreasuryLedgerEntry
from settlement_engine.repositories.base import BaseRepository, new_id
from settlement_engine.utils.timezone import utc_now

logger = logging.getLogger(__name__)


def _decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class TreasuryRepository(BaseRepository[TreasuryLedgerEntry]):
    """Data access for treasury_ledger."""

    def __init__(self, db: Session):
        super().__init__(TreasuryLedgerEntry, db)

    def record_settlement_fee(
        self,
        settlement_id: str,
        market_id: str,
        game_id: int,
        amount: Decimal,
        currency: str,
        fee_rate: Decimal,
        gross_pool: Decimal,
        losing_pool: Decimal,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Optional[TreasuryLedgerEntry]:
        """
        Append the fee a market settlement earned and commit.

        Returns:
            The entry, or None when the settlement already has one
        """
        try:
            with self.db.begin_nested():
                entry = self.create(
                    id=new_id(),
                    settlement_id=settlement_id,
                    market_id=market_id,
                    game_id=game_id,
                    entry_type=TreasuryEntryType.SETTLEMENT_FEE,
                    amount=amount,
                    currency=currency,
                    fee_rate=fee_rate,
                    gross_pool=gross_pool,
                    losing_pool=losing_pool,
                    meta=meta or {},
                    created_at=utc_now(),
                )
        except IntegrityError as e:
            if not is_unique_violation(e):
                raise
            logger.info(f"Treasury fee already recorded for settlement {settlement_id}, skipping")
            return None

        self.db.commit()
        return entry

    def get_balance(self) -> Dict[str, Any]:
        """
        Totals per entry type and the resulting balance.

        Fees and deposits are income, withdrawals are stored as positive
        amounts and subtracted, adjustments carry their own sign.
        """
        rows = (
            self.db.query(TreasuryLedgerEntry.entry_type, func.sum(TreasuryLedgerEntry.amount), func.count())
            .group_by(TreasuryLedgerEntry.entry_type)
            .all()
        )
        sums = {entry_type: _decimal(total) for entry_type, total, _ in rows}
        fees = sums.get(TreasuryEntryType.SETTLEMENT_FEE, Decimal("0"))
        deposits = sums.get(TreasuryEntryType.DEPOSIT, Decimal("0"))
        withdrawn = sums.get(TreasuryEntryType.WITHDRAWAL, Decimal("0"))
        adjustments = sums.get(TreasuryEntryType.ADJUSTMENT, Decimal("0"))

        last_updated = self.db.query(func.max(TreasuryLedgerEntry.created_at)).scalar()

        return {
            "total_fees_collected": fees + deposits,
            "total_withdrawn": withdrawn,
            "total_adjustments": adjustments,
            "current_balance": fees + deposits + adjustments - withdrawn,
            "total_entries": sum(count for _, _, count in rows),
            "last_updated": last_updated,
        }

    def list_entries(self, limit: int = 50, entry_type: Optional[str] = None) -> List[TreasuryLedgerEntry]:
        """Most recent entries first."""
        query = self.query()
        if entry_type:
            query = query.filter(TreasuryLedgerEntry.entry_type == entry_type)
        return query.order_by(TreasuryLedgerEntry.created_at.desc()).limit(limit).all()
