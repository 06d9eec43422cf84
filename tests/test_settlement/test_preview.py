"""Tests for the dry-run preview and processed check."""
from settlement_engine.models import LedgerEntry, MarketStatus, Market
from settlement_engine.services.settlement import is_settlement_processed, preview_settlement, process_all_settlements


class TestPreviewSettlement:
    """Preview computes payouts without writing."""

    def test_preview_winner_totals(self, db_session, make_game, make_market, make_trade, make_queue_item):
        """Should report winners, losers and the 2x-minus-fee amounts."""
        game = make_game()
        market = make_market(game)
        make_trade(market, "user-1", "100", side="HOME")
        make_trade(market, "user-2", "50", side="AWAY")
        make_queue_item(game, outcome="HOME")

        preview = preview_settlement(db_session, game.id)

        assert preview["outcome"] == "HOME"
        assert preview["is_cancellation"] is False
        assert preview["already_settled"] is False
        row = preview["markets"][0]
        assert row["winners_count"] == 1
        assert row["losers_count"] == 1
        assert row["total_volume"] == "150.000000"
        assert row["gross_payout"] == "200.000000"
        assert row["platform_fee"] == "5.000000"
        assert row["net_payout"] == "195.000000"
        assert preview["totals"]["markets"] == 1
        assert preview["totals"]["net_payout"] == "195.000000"

    def test_preview_writes_nothing(self, db_session, make_game, make_market, make_trade):
        """Should leave markets and the ledger untouched."""
        game = make_game()
        market = make_market(game)
        make_trade(market, "user-1", "100", side="HOME")

        preview_settlement(db_session, game.id)

        assert db_session.query(LedgerEntry).count() == 1
        assert db_session.get(Market, market.id).market_status == MarketStatus.OPEN

    def test_outcome_override_and_cancellation(self, db_session, make_game, make_market, make_trade):
        """Should use an explicit outcome and refund everything for CANCELED."""
        game = make_game()
        market = make_market(game)
        make_trade(market, "user-1", "100", side="HOME")
        make_trade(market, "user-2", "50", side="AWAY")

        preview = preview_settlement(db_session, game.id, outcome="canceled")

        assert preview["outcome"] == "CANCELED"
        assert preview["is_cancellation"] is True
        assert preview["totals"]["refund_total"] == "150.000000"
        assert preview["totals"]["net_payout"] == "0.000000"

    def test_falls_back_to_winner_side(self, db_session, make_game, make_market, make_trade):
        """Should use the game's winner_side when nothing is queued."""
        game = make_game(winner_side="away")
        make_trade(make_market(game), "user-2", "10", side="AWAY")

        preview = preview_settlement(db_session, game.id)

        assert preview["outcome"] == "AWAY"
        assert preview["totals"]["winners_count"] == 1

    def test_unknown_game(self, db_session):
        assert preview_settlement(db_session, 999999) is None


class TestIsSettlementProcessed:
    """Processed check."""

    def test_before_and_after(self, db_session, make_game, make_market, make_trade, make_queue_item):
        """Should flip to processed once the game is settled."""
        game = make_game()
        make_trade(make_market(game), "user-1", "10", side="HOME")
        make_queue_item(game)

        before = is_settlement_processed(db_session, game.id)
        process_all_settlements(db_session, worker_id="test-worker")
        after = is_settlement_processed(db_session, game.id)

        assert before == {"game_id": game.id, "processed": False, "settled_at": None, "market_count": 0}
        assert after["processed"] is True
        assert after["settled_at"].endswith("Z")
        assert after["market_count"] == 1

    def test_unknown_game(self, db_session):
        """Should report unprocessed for a missing game."""
        assert is_settlement_processed(db_session, 424242)["processed"] is False
