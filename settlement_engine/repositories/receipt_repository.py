"""
Receipt ledger.

Every payout/refund/fee attempt gets exactly one receipt per
(market_id, user_id, receipt_type), enforced by a unique constraint. A
duplicate insert is the normal "already handled" signal, not an error.
"""
import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement_engine.core.database import is_unique_violation
from settlement_engine.models import ReceiptStatus, SettlementReceipt
from settlement_engine.repositories.base import BaseRepository, new_id
from settlement_engine.utils.timezone import utc_now, minutes_ago

logger = logging.getLogger(__name__)


class ReceiptRepository(BaseRepository[SettlementReceipt]):
    """Data access for settlement_receipts."""

    def __init__(self, db: Session):
        super().__init__(SettlementReceipt, db)

    def receipt_exists(self, market_id: str, user_id: str, receipt_type: str) -> bool:
        """Point lookup on the unique triple, whatever the receipt's status."""
        return self.exists_where(
            SettlementReceipt.market_id == market_id,
            SettlementReceipt.user_id == user_id,
            SettlementReceipt.receipt_type == receipt_type,
        )

    def create_receipt(
        self,
        settlement_queue_id: Optional[str],
        market_id: str,
        game_id: int,
        user_id: str,
        receipt_type: str,
        amount: Decimal,
        currency: str,
    ) -> Optional[SettlementReceipt]:
        """
        Insert an INITIATED receipt and commit it.

        The receipt must be durable before the caller moves any money, so this
        commits on success.

        Returns:
            The receipt, or None when one already exists for the triple

        Raises:
            IntegrityError: for any constraint failure other than the duplicate key
        """
        try:
            with self.db.begin_nested():
                receipt = self.create(
                    id=new_id(),
                    settlement_queue_id=settlement_queue_id,
                    market_id=market_id,
                    game_id=game_id,
                    user_id=user_id,
                    receipt_type=receipt_type,
                    status=ReceiptStatus.INITIATED,
                    amount=amount,
                    currency=currency,
                    initiated_at=utc_now(),
                )
        except IntegrityError as e:
            if not is_unique_violation(e):
                raise
            logger.info(
                f"{receipt_type} receipt already exists for market {market_id} user {user_id}, skipping"
            )
            return None

        self.db.commit()
        return receipt

    def confirm_receipt(
        self,
        receipt_id: str,
        ledger_entry_id: Optional[str] = None,
        payout_id: Optional[str] = None,
        tx_hash: Optional[str] = None,
    ) -> SettlementReceipt:
        """Mark CONFIRMED and merge whichever references were given (not committed)."""
        receipt = self.find_by_id(receipt_id)
        receipt.status = ReceiptStatus.CONFIRMED
        receipt.confirmed_at = utc_now()
        if ledger_entry_id is not None:
            receipt.ledger_entry_id = ledger_entry_id
        if payout_id is not None:
            receipt.payout_id = payout_id
        if tx_hash is not None:
            receipt.tx_hash = tx_hash
        return receipt

    def fail_receipt(self, receipt_id: str, reason: str) -> None:
        """Mark FAILED with the reason and commit."""
        receipt = self.find_by_id(receipt_id)
        if receipt is None:
            logger.error(f"Cannot fail missing receipt {receipt_id}: {reason}")
            return
        receipt.status = ReceiptStatus.FAILED
        receipt.failed_at = utc_now()
        receipt.failure_reason = reason
        self.db.commit()

    # ========================================================================
    # Reporting
    # ========================================================================

    def find_failed(self, game_id: Optional[int] = None) -> List[SettlementReceipt]:
        criteria = [SettlementReceipt.status == ReceiptStatus.FAILED]
        if game_id is not None:
            criteria.append(SettlementReceipt.game_id == game_id)
        return (
            self.query()
            .filter(*criteria)
            .order_by(SettlementReceipt.failed_at.desc())
            .all()
        )

    def find_stale_initiated(self, older_than_minutes: int, game_id: Optional[int] = None) -> List[SettlementReceipt]:
        """INITIATED receipts that outlived their settlement attempt."""
        criteria = [
            SettlementReceipt.status == ReceiptStatus.INITIATED,
            SettlementReceipt.initiated_at < minutes_ago(older_than_minutes),
        ]
        if game_id is not None:
            criteria.append(SettlementReceipt.game_id == game_id)
        return (
            self.query()
            .filter(*criteria)
            .order_by(SettlementReceipt.initiated_at.asc())
            .all()
        )
