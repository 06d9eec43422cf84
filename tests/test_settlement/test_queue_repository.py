"""Tests for the settlement queue store.

Covers:
1. Backoff schedule
2. claim_next eligibility and ordering
3. mark_done / mark_failed transitions
4. Stats, listing, stale lock release, requeue and enqueue idempotency
"""
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from settlement_engine.models import QueueStatus, SettlementQueueItem
from settlement_engine.repositories import SettlementQueueRepository
from settlement_engine.repositories.queue_repository import BACKOFF_SCHEDULE_MINUTES, backoff_minutes
from settlement_engine.utils.timezone import utc_now


def reload(db: Session, item_id: str) -> SettlementQueueItem:
    return db.get(SettlementQueueItem, item_id, populate_existing=True)


class TestBackoff:
    """Retry delays by attempt count."""

    @pytest.mark.parametrize("attempts,minutes", [
        (1, 1), (2, 5), (3, 30), (4, 120), (5, 720), (6, 720), (50, 720),
    ])
    def test_schedule(self, attempts, minutes):
        """Should follow 1, 5, 30, 120, 720 and stay on the last step."""
        assert backoff_minutes(attempts) == minutes

    def test_zero_attempts_uses_first_step(self):
        """Should treat a non-positive count as the first attempt."""
        assert backoff_minutes(0) == BACKOFF_SCHEDULE_MINUTES[0]


class TestClaimNext:
    """Atomic claim of the oldest eligible item."""

    def test_claims_oldest_due_item(self, db_session, make_game, make_queue_item):
        """Should claim by created_at ascending and mark PROCESSING with the worker lock."""
        now = utc_now()
        newer = make_queue_item(make_game(), created_at=now - timedelta(minutes=1))
        older = make_queue_item(make_game(), created_at=now - timedelta(minutes=5))

        repo = SettlementQueueRepository(db_session)
        item = repo.claim_next("worker-a")

        assert item.id == older.id
        assert item.status == QueueStatus.PROCESSING
        assert item.locked_by == "worker-a"
        assert item.locked_at is not None
        assert reload(db_session, newer.id).status == QueueStatus.QUEUED

    def test_skips_items_not_yet_due(self, db_session, make_game, make_queue_item):
        """Should ignore items whose next_attempt_at is in the future."""
        make_queue_item(make_game(), next_attempt_at=utc_now() + timedelta(minutes=10))

        assert SettlementQueueRepository(db_session).claim_next("worker-a") is None

    @pytest.mark.parametrize("status", [
        QueueStatus.PROCESSING, QueueStatus.DONE, QueueStatus.FAILED, QueueStatus.SKIPPED,
    ])
    def test_only_queued_items_are_eligible(self, db_session, make_game, make_queue_item, status):
        """Should never claim an item in any status other than QUEUED."""
        make_queue_item(make_game(), status=status)

        assert SettlementQueueRepository(db_session).claim_next("worker-a") is None

    def test_skips_locked_items(self, db_session, make_game, make_queue_item):
        """Should ignore a QUEUED item that still carries a lock."""
        make_queue_item(make_game(), locked_by="worker-b", locked_at=utc_now())

        assert SettlementQueueRepository(db_session).claim_next("worker-a") is None

    def test_empty_queue(self, db_session):
        """Should return None when there is nothing to claim."""
        assert SettlementQueueRepository(db_session).claim_next("worker-a") is None

    def test_second_claim_gets_next_item(self, db_session, make_game, make_queue_item):
        """Should never hand out the same item twice."""
        make_queue_item(make_game())
        make_queue_item(make_game())

        repo = SettlementQueueRepository(db_session)
        first = repo.claim_next("worker-a")
        second = repo.claim_next("worker-b")

        assert first.id != second.id
        assert repo.claim_next("worker-c") is None

    def test_store_error_returns_none(self, db_session, make_game, make_queue_item, monkeypatch):
        """Should roll back and report nothing claimed when the store errors."""
        make_queue_item(make_game())
        repo = SettlementQueueRepository(db_session)

        def boom(*args, **kwargs):
            raise OperationalError("UPDATE settlement_queue", {}, Exception("database is locked"))

        monkeypatch.setattr(db_session, "execute", boom)

        assert repo.claim_next("worker-a") is None


class TestTransitions:
    """mark_done and mark_failed."""

    def test_mark_done_clears_lock(self, db_session, make_game, make_queue_item):
        """Should set DONE and clear locked_by/locked_at."""
        make_queue_item(make_game())
        repo = SettlementQueueRepository(db_session)
        item_id = repo.claim_next("worker-a").id

        repo.mark_done(item_id)

        item = reload(db_session, item_id)
        assert item.status == QueueStatus.DONE
        assert item.locked_by is None
        assert item.locked_at is None

    def test_mark_failed_increments_attempts_and_backs_off(self, db_session, make_game, make_queue_item):
        """Should count the attempt, store the reason and push next_attempt_at out."""
        make_queue_item(make_game(), attempts=2)
        repo = SettlementQueueRepository(db_session)
        item_id = repo.claim_next("worker-a").id
        before = utc_now()

        next_attempt_at = repo.mark_failed(item_id, "Game not found: 1")

        item = reload(db_session, item_id)
        assert item.status == QueueStatus.FAILED
        assert item.attempts == 3
        assert item.reason == "Game not found: 1"
        assert item.locked_by is None
        assert next_attempt_at >= before + timedelta(minutes=30)
        assert next_attempt_at <= utc_now() + timedelta(minutes=30)

    def test_mark_failed_missing_item(self, db_session):
        """Should return None for an unknown id."""
        assert SettlementQueueRepository(db_session).mark_failed("missing", "boom") is None


class TestReadsAndMaintenance:
    """Stats, listing, stale locks, requeue and enqueue."""

    def test_stats_include_every_status(self, db_session, make_game, make_queue_item):
        """Should report zero for absent statuses and a total."""
        make_queue_item(make_game())
        make_queue_item(make_game(), status=QueueStatus.FAILED)
        make_queue_item(make_game(), status=QueueStatus.FAILED)

        stats = SettlementQueueRepository(db_session).get_queue_stats()

        assert stats == {"queued": 1, "processing": 0, "done": 0, "failed": 2, "skipped": 0, "total": 3}

    def test_list_queue_filters(self, db_session, make_game, make_queue_item):
        """Should filter by status list and league, newest first."""
        now = utc_now()
        nfl_failed = make_queue_item(make_game(), status=QueueStatus.FAILED, created_at=now - timedelta(minutes=2))
        nfl_queued = make_queue_item(make_game(), created_at=now - timedelta(minutes=1))
        make_queue_item(make_game(league="nba"), status=QueueStatus.FAILED)

        repo = SettlementQueueRepository(db_session)
        items = repo.list_queue(status=[QueueStatus.QUEUED, QueueStatus.FAILED], league="nfl")

        assert [i.id for i in items] == [nfl_queued.id, nfl_failed.id]
        assert len(repo.list_queue(limit=1)) == 1

    def test_release_stale_locks(self, db_session, make_game, make_queue_item):
        """Should requeue PROCESSING items locked longer than the threshold only."""
        now = utc_now()
        stale = make_queue_item(
            make_game(), status=QueueStatus.PROCESSING, locked_by="dead", locked_at=now - timedelta(minutes=15)
        )
        fresh = make_queue_item(
            make_game(), status=QueueStatus.PROCESSING, locked_by="alive", locked_at=now - timedelta(minutes=2)
        )

        released = SettlementQueueRepository(db_session).release_stale_locks(older_than_minutes=10)

        assert released == 1
        assert reload(db_session, stale.id).status == QueueStatus.QUEUED
        assert reload(db_session, stale.id).locked_by is None
        assert reload(db_session, fresh.id).status == QueueStatus.PROCESSING

    def test_requeue_failed_due_only(self, db_session, make_game, make_queue_item):
        """Should requeue failures whose backoff elapsed, under the attempt cap."""
        now = utc_now()
        due = make_queue_item(make_game(), status=QueueStatus.FAILED, attempts=1,
                              next_attempt_at=now - timedelta(minutes=1))
        waiting = make_queue_item(make_game(), status=QueueStatus.FAILED, attempts=1,
                                  next_attempt_at=now + timedelta(minutes=30))
        exhausted = make_queue_item(make_game(), status=QueueStatus.FAILED, attempts=10,
                                    next_attempt_at=now - timedelta(minutes=1))

        requeued = SettlementQueueRepository(db_session).requeue_failed(due_only=True, max_attempts=10)

        assert requeued == 1
        assert reload(db_session, due.id).status == QueueStatus.QUEUED
        assert reload(db_session, waiting.id).status == QueueStatus.FAILED
        assert reload(db_session, exhausted.id).status == QueueStatus.FAILED

    def test_requeue_failed_all_makes_items_due(self, db_session, make_game, make_queue_item):
        """Should requeue every failure and make it claimable right away."""
        item = make_queue_item(make_game(), status=QueueStatus.FAILED, attempts=4,
                               next_attempt_at=utc_now() + timedelta(hours=2))
        repo = SettlementQueueRepository(db_session)

        assert repo.requeue_failed(due_only=False) == 1
        assert repo.claim_next("worker-a").id == item.id

    def test_enqueue_is_idempotent(self, db_session, make_game):
        """Should create one item per game and return the existing one afterwards."""
        game = make_game()
        repo = SettlementQueueRepository(db_session)

        first, created = repo.enqueue(game, "HOME", reason="finalized")
        again, created_again = repo.enqueue(game, "AWAY")

        assert created is True
        assert created_again is False
        assert again.id == first.id
        assert again.outcome == "HOME"
        assert first.status == QueueStatus.QUEUED

    def test_enqueue_without_outcome_defaults_to_canceled(self, db_session, make_game):
        """Should store CANCELED when no outcome is given."""
        item, _ = SettlementQueueRepository(db_session).enqueue(make_game(), None)

        assert item.outcome == "CANCELED"
