"""Tests for the reconciliation report."""
from datetime import timedelta
from decimal import Decimal

from settlement_engine.models import MarketStatus, ReceiptType, SettlementReceipt
from settlement_engine.repositories import ReceiptRepository
from settlement_engine.services.settlement import build_reconciliation_report
from settlement_engine.utils.timezone import utc_now


def open_receipt(db, market, user_id, receipt_type=ReceiptType.PAYOUT, amount="195"):
    return ReceiptRepository(db).create_receipt(
        settlement_queue_id=None,
        market_id=market.id,
        game_id=market.sports_game_id,
        user_id=user_id,
        receipt_type=receipt_type,
        amount=Decimal(amount),
        currency="USDC",
    )


class TestReconciliationReport:
    """What settlement left for an operator."""

    def test_clean_database(self, db_session):
        """Should report no issues when nothing is wrong."""
        report = build_reconciliation_report(db_session)

        assert report["issue_count"] == 0
        assert report["failed_receipts"] == []
        assert report["stale_after_minutes"] == 30

    def test_failed_and_stale_receipts(self, db_session, make_game, make_market):
        """Should list FAILED receipts and INITIATED ones past the threshold, with totals."""
        market = make_market(make_game())
        failed = open_receipt(db_session, market, "user-1")
        ReceiptRepository(db_session).fail_receipt(failed.id, "ledger insert failed")
        stale = open_receipt(db_session, market, "user-2", ReceiptType.REFUND, "25")
        stale.initiated_at = utc_now() - timedelta(minutes=45)
        db_session.commit()
        open_receipt(db_session, market, "user-3")

        report = build_reconciliation_report(db_session, stale_minutes=30)

        assert report["issue_count"] == 2
        assert report["failed_receipts"][0]["receipt_id"] == failed.id
        assert report["failed_receipts"][0]["failure_reason"] == "ledger insert failed"
        assert report["failed_receipts"][0]["amount"] == "195.000000"
        assert report["stale_initiated_receipts"][0]["receipt_id"] == stale.id
        assert report["totals"]["failed"] == {"PAYOUT": {"count": 1, "amount": "195.000000"}}
        assert report["totals"]["stale_initiated"] == {"REFUND": {"count": 1, "amount": "25.000000"}}

    def test_markets_without_settlement(self, db_session, make_game, make_market):
        """Should flag settled/void markets missing their market_settlements row."""
        game = make_game()
        orphan = make_market(game, market_status=MarketStatus.VOID)
        make_market(game)

        report = build_reconciliation_report(db_session, game_id=game.id)

        assert [m["market_id"] for m in report["markets_without_settlement"]] == [orphan.id]

    def test_open_markets_on_settled_games(self, db_session, make_game, make_market):
        """Should flag markets still open after their game was stamped settled."""
        game = make_game(settled_at=utc_now())
        stuck = make_market(game)

        report = build_reconciliation_report(db_session)

        assert [m["market_id"] for m in report["open_markets_on_settled_games"]] == [stuck.id]
        assert report["issue_count"] == 1

    def test_game_filter(self, db_session, make_game, make_market):
        """Should restrict every section to the requested game."""
        first = make_market(make_game())
        second = make_market(make_game())
        for market in (first, second):
            receipt = open_receipt(db_session, market, "user-1")
            ReceiptRepository(db_session).fail_receipt(receipt.id, "boom")

        report = build_reconciliation_report(db_session, game_id=first.sports_game_id)

        assert len(report["failed_receipts"]) == 1
        assert db_session.query(SettlementReceipt).count() == 2
