"""
HTTP endpoint tests for the settlement admin API.

These tests verify that the admin endpoints:
- Require the admin token
- Drive the settlement queue through the POST actions
- Return the read-only reports (preview, processed, reconciliation, treasury, health)

Uses FastAPI TestClient against a per-test SQLite database.
"""
from datetime import timedelta

import pytest

from settlement_engine.core.config import settings
from settlement_engine.core.job_lock import JobLockManager
from settlement_engine.models import QueueStatus, SettlementQueueItem
from settlement_engine.utils.timezone import utc_now

ADMIN_HEADERS = {"X-Admin-Token": "test-admin-token"}
SETTLEMENTS = "/api/admin/settlements"
LIFECYCLE = "/api/admin/lifecycle"


@pytest.fixture
def settleable_game(make_game, make_market, make_trade, make_queue_item):
    """A FINAL game with a winning and a losing position and a due queue item."""
    game = make_game()
    market = make_market(game)
    make_trade(market, "user-1", "100", side="HOME")
    make_trade(market, "user-2", "50", side="AWAY")
    make_queue_item(game)
    return game


# =============================================================================
# AUTH
# =============================================================================

class TestAdminAuth:
    """Admin token enforcement."""

    def test_missing_token(self, test_client):
        response = test_client.get(SETTLEMENTS)
        assert response.status_code == 401

    def test_wrong_token(self, test_client):
        response = test_client.get(SETTLEMENTS, headers={"X-Admin-Token": "nope"})
        assert response.status_code == 403

    def test_admin_disabled(self, test_client, monkeypatch):
        """Should return 501 when no admin token is configured."""
        monkeypatch.setattr(settings, "ADMIN_TOKEN", "")

        response = test_client.get(f"{LIFECYCLE}/health", headers=ADMIN_HEADERS)

        assert response.status_code == 501


# =============================================================================
# QUEUE LISTING
# =============================================================================

class TestListSettlementQueue:
    """GET /api/admin/settlements."""

    def test_list_with_stats_and_game(self, test_client, make_game, make_queue_item):
        """Should return stats and items with their game summary."""
        game = make_game(home_team="Boston Celtics", away_team="Miami Heat", league="nba")
        make_queue_item(game)

        response = test_client.get(SETTLEMENTS, headers=ADMIN_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["stats"]["queued"] == 1
        assert data["stats"]["total"] == 1
        item = data["items"][0]
        assert item["status"] == QueueStatus.QUEUED
        assert item["outcome"] == "HOME"
        assert item["game"]["home_team"] == "Boston Celtics"

    def test_status_filter(self, test_client, make_game, make_queue_item):
        make_queue_item(make_game())
        make_queue_item(make_game(), status=QueueStatus.FAILED, attempts=2)

        response = test_client.get(SETTLEMENTS, params={"status": "failed"}, headers=ADMIN_HEADERS)

        assert [i["status"] for i in response.json()["items"]] == [QueueStatus.FAILED]

    def test_unknown_status(self, test_client):
        response = test_client.get(SETTLEMENTS, params={"status": "PENDING"}, headers=ADMIN_HEADERS)
        assert response.status_code == 400

    def test_stats(self, test_client):
        response = test_client.get(f"{SETTLEMENTS}/stats", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert response.json() == {
            "queued": 0, "processing": 0, "done": 0, "failed": 0, "skipped": 0, "total": 0,
        }


# =============================================================================
# ACTIONS
# =============================================================================

class TestSettlementActions:
    """POST /api/admin/settlements."""

    def test_process_one_empty(self, test_client):
        """Should report nothing to do on an empty queue."""
        response = test_client.post(SETTLEMENTS, json={"action": "process-one"}, headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert response.json()["processed"] == 0

    def test_process_one(self, test_client, settleable_game):
        """Should settle the next item and return its result."""
        response = test_client.post(SETTLEMENTS, json={"action": "process-one"}, headers=ADMIN_HEADERS)

        data = response.json()
        assert data["success"] is True
        assert data["result"]["game_id"] == settleable_game.id
        assert data["result"]["payouts_created"] == 1
        assert data["result"]["total_payout_amount"] == "195.000000"

    def test_process_all(self, test_client, settleable_game, make_game, make_queue_item):
        """Should settle up to maxItems items."""
        make_queue_item(make_game())

        response = test_client.post(
            SETTLEMENTS, json={"action": "process-all", "maxItems": 10}, headers=ADMIN_HEADERS
        )

        data = response.json()
        assert data["success"] is True
        assert data["processed"] == 2
        assert data["succeeded"] == 2
        assert len(data["results"]) == 2

    def test_max_items_bounds(self, test_client):
        response = test_client.post(
            SETTLEMENTS, json={"action": "process-batch", "maxItems": 0}, headers=ADMIN_HEADERS
        )
        assert response.status_code == 422

    def test_retry_failed(self, test_client, db_session, make_game, make_queue_item):
        """Should requeue every FAILED item whether or not its backoff elapsed."""
        item = make_queue_item(
            make_game(), status=QueueStatus.FAILED, attempts=3,
            next_attempt_at=utc_now() + timedelta(hours=2),
        )
        item_id = item.id

        response = test_client.post(SETTLEMENTS, json={"action": "retry-failed"}, headers=ADMIN_HEADERS)

        assert response.json() == {"success": True, "reset": 1}
        assert db_session.get(SettlementQueueItem, item_id, populate_existing=True).status == QueueStatus.QUEUED

    def test_release_stale(self, test_client, make_game, make_queue_item):
        make_queue_item(
            make_game(), status=QueueStatus.PROCESSING, locked_by="dead-worker",
            locked_at=utc_now() - timedelta(minutes=45),
        )

        response = test_client.post(SETTLEMENTS, json={"action": "release-stale"}, headers=ADMIN_HEADERS)

        assert response.json() == {"success": True, "released": 1}

    def test_enqueue(self, test_client, make_game):
        """Should queue a game once, deriving the outcome from the score."""
        game = make_game(home_score=10, away_score=20)
        body = {"action": "enqueue", "gameId": game.id}

        first = test_client.post(SETTLEMENTS, json=body, headers=ADMIN_HEADERS).json()
        second = test_client.post(SETTLEMENTS, json=body, headers=ADMIN_HEADERS).json()

        assert first["created"] is True
        assert first["item"]["outcome"] == "AWAY"
        assert first["item"]["reason"] == "admin_enqueue"
        assert second["created"] is False
        assert second["item"]["id"] == first["item"]["id"]

    def test_enqueue_explicit_outcome(self, test_client, make_game):
        """Should accept an explicit outcome for a game without a result."""
        game = make_game(home_score=None, away_score=None, winner_side=None)

        response = test_client.post(
            SETTLEMENTS, json={"action": "enqueue", "gameId": game.id, "outcome": "canceled"},
            headers=ADMIN_HEADERS,
        )

        assert response.json()["item"]["outcome"] == "CANCELED"

    def test_enqueue_errors(self, test_client, make_game):
        """Should reject a missing gameId, an unknown game and an undeterminable outcome."""
        undecided = make_game(home_score=None, away_score=None, winner_side=None)

        missing = test_client.post(SETTLEMENTS, json={"action": "enqueue"}, headers=ADMIN_HEADERS)
        unknown = test_client.post(
            SETTLEMENTS, json={"action": "enqueue", "gameId": 987654}, headers=ADMIN_HEADERS
        )
        no_outcome = test_client.post(
            SETTLEMENTS, json={"action": "enqueue", "gameId": undecided.id}, headers=ADMIN_HEADERS
        )

        assert missing.status_code == 400
        assert unknown.status_code == 404
        assert no_outcome.status_code == 400

    def test_enqueue_rejects_unknown_outcome(self, test_client, db_session, make_game):
        """Should return 400 for a misspelled outcome and queue nothing."""
        game = make_game()

        response = test_client.post(
            SETTLEMENTS, json={"action": "enqueue", "gameId": game.id, "outcome": "HOMEE"},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 400
        assert "HOMEE" in response.json()["detail"]
        assert "POSTPONED" in response.json()["detail"]
        assert db_session.query(SettlementQueueItem).count() == 0

    def test_unknown_action(self, test_client):
        response = test_client.post(SETTLEMENTS, json={"action": "settle-everything"}, headers=ADMIN_HEADERS)

        assert response.status_code == 400
        assert "process-one" in response.json()["detail"]


# =============================================================================
# REPORTS
# =============================================================================

class TestSettlementReports:
    """Preview, processed and reconciliation."""

    def test_preview(self, test_client, settleable_game):
        response = test_client.get(f"{SETTLEMENTS}/preview/{settleable_game.id}", headers=ADMIN_HEADERS)

        assert response.status_code == 200
        data = response.json()
        assert data["outcome"] == "HOME"
        assert data["totals"]["net_payout"] == "195.000000"

    def test_preview_unknown_game(self, test_client):
        response = test_client.get(f"{SETTLEMENTS}/preview/987654", headers=ADMIN_HEADERS)
        assert response.status_code == 404

    def test_preview_outcome_override(self, test_client, settleable_game):
        """Should accept a known outcome in any case and reject anything else."""
        url = f"{SETTLEMENTS}/preview/{settleable_game.id}"

        override = test_client.get(url, params={"outcome": "away"}, headers=ADMIN_HEADERS)
        typo = test_client.get(url, params={"outcome": "HOMEE"}, headers=ADMIN_HEADERS)

        assert override.status_code == 200
        assert override.json()["outcome"] == "AWAY"
        assert override.json()["totals"]["net_payout"] == "97.500000"
        assert typo.status_code == 400

    def test_processed_after_settlement(self, test_client, settleable_game):
        """Should flip to processed once the batch has run."""
        url = f"{SETTLEMENTS}/processed/{settleable_game.id}"

        before = test_client.get(url, headers=ADMIN_HEADERS).json()
        test_client.post(SETTLEMENTS, json={"action": "process-all"}, headers=ADMIN_HEADERS)
        after = test_client.get(url, headers=ADMIN_HEADERS).json()

        assert before["processed"] is False
        assert after["processed"] is True
        assert after["market_count"] == 1

    def test_reconciliation(self, test_client):
        response = test_client.get(
            f"{SETTLEMENTS}/reconciliation", params={"stale_minutes": 15}, headers=ADMIN_HEADERS
        )

        assert response.status_code == 200
        assert response.json()["issue_count"] == 0
        assert response.json()["stale_after_minutes"] == 15


# =============================================================================
# TREASURY
# =============================================================================

class TestTreasuryEndpoints:
    """Treasury balance and fee ledger."""

    def test_fee_shows_up_after_settlement(self, test_client, settleable_game):
        """Should report the 5.00 fee from settling a 100 HOME winner."""
        test_client.post(SETTLEMENTS, json={"action": "process-all"}, headers=ADMIN_HEADERS)

        balance = test_client.get(f"{SETTLEMENTS}/treasury", headers=ADMIN_HEADERS)
        ledger = test_client.get(f"{SETTLEMENTS}/treasury/ledger", headers=ADMIN_HEADERS)

        assert balance.status_code == 200
        assert balance.json()["total_fees_collected"] == "5.000000"
        assert balance.json()["current_balance"] == "5.000000"
        assert balance.json()["total_entries"] == 1
        assert ledger.status_code == 200
        data = ledger.json()
        assert data["count"] == 1
        entry = data["entries"][0]
        assert entry["entry_type"] == "SETTLEMENT_FEE"
        assert entry["amount"] == "5.000000"
        assert entry["game"]["id"] == settleable_game.id

    def test_ledger_entry_type_filter(self, test_client):
        """Should accept a known entry type in any case and reject anything else."""
        known = test_client.get(
            f"{SETTLEMENTS}/treasury/ledger", params={"entry_type": "withdrawal"}, headers=ADMIN_HEADERS
        )
        unknown = test_client.get(
            f"{SETTLEMENTS}/treasury/ledger", params={"entry_type": "BONUS"}, headers=ADMIN_HEADERS
        )

        assert known.status_code == 200
        assert known.json() == {"count": 0, "entries": []}
        assert unknown.status_code == 400

    def test_requires_admin(self, test_client):
        assert test_client.get(f"{SETTLEMENTS}/treasury").status_code == 401


# =============================================================================
# LIFECYCLE
# =============================================================================

class TestLifecycleEndpoints:
    """Health, maintenance and job locks."""

    def test_health(self, test_client, make_game):
        """Should flag a FINAL game nobody queued."""
        make_game()

        response = test_client.get(f"{LIFECYCLE}/health", headers=ADMIN_HEADERS)

        data = response.json()
        assert data["status"] == "warning"
        assert data["checks"]["final_not_queued"]["count"] == 1

    def test_health_without_items(self, test_client):
        response = test_client.get(f"{LIFECYCLE}/health", params={"include_items": False}, headers=ADMIN_HEADERS)

        assert all("items" not in check for check in response.json()["checks"].values())

    def test_maintenance(self, test_client, make_game):
        make_game()

        response = test_client.post(f"{LIFECYCLE}/maintenance", headers=ADMIN_HEADERS)

        assert response.json() == {
            "success": True, "released_stale_locks": 0, "requeued_failures": 0, "enqueued_orphans": 1,
        }

    def test_job_locks(self, test_client, db_session):
        """Should list a held lock and force-release it."""
        JobLockManager(db_session, owner="instance-a").acquire("settle")

        listed = test_client.get(f"{LIFECYCLE}/job-locks", headers=ADMIN_HEADERS).json()
        released = test_client.delete(f"{LIFECYCLE}/job-locks/settle", headers=ADMIN_HEADERS)
        missing = test_client.delete(f"{LIFECYCLE}/job-locks/settle", headers=ADMIN_HEADERS)

        assert listed["count"] == 1
        assert listed["locks"][0]["locked_by"] == "instance-a"
        assert released.json() == {"success": True, "job_name": "settle"}
        assert missing.status_code == 404


# =============================================================================
# APP HEALTH
# =============================================================================

class TestAppHealth:
    """Unauthenticated app endpoints."""

    def test_liveness(self, test_client):
        response = test_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_api_health_with_scheduler_disabled(self, test_client):
        """Should be healthy with the database up and the scheduler disabled."""
        response = test_client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["components"]["database"]["status"] == "connected"
        assert data["components"]["scheduler"]["status"] == "disabled"
        assert data["components"]["settlement_queue"]["total"] == 0

    def test_correlation_id_echoed(self, test_client):
        """Should echo the caller's correlation id, or generate one."""
        echoed = test_client.get("/health", headers={"X-Correlation-ID": "req-123"})
        generated = test_client.get("/health")

        assert echoed.headers["X-Correlation-ID"] == "req-123"
        assert generated.headers["X-Correlation-ID"]

    def test_root_lists_endpoints(self, test_client):
        data = test_client.get("/").json()
        assert data["endpoints"]["settlements"] == SETTLEMENTS
