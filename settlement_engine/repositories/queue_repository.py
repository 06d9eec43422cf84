"""
Settlement queue store.

One row per finished game. Workers claim rows with a single conditional
UPDATE ... RETURNING, so two workers can never hold the same item. All other
transitions are plain updates by id.

Lifecycle:
    QUEUED --claim_next--> PROCESSING --mark_done--> DONE
                                      --mark_failed--> FAILED --requeue_failed--> QUEUED
    PROCESSING (stale lock) --release_stale_locks--> QUEUED
"""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from settlement_engine.core import metrics
from settlement_engine.core.database import is_unique_violation
from settlement_engine.models import QueueStatus, SettlementQueueItem, SportsGame
from settlement_engine.repositories.base import BaseRepository, new_id
from settlement_engine.utils.timezone import utc_now, minutes_ago

logger = logging.getLogger(__name__)

# Minutes to wait before the Nth retry (N = attempts after increment).
# Attempts beyond the table stay on the last value.
BACKOFF_SCHEDULE_MINUTES: Tuple[int, ...] = (1, 5, 30, 120, 720)


def backoff_minutes(attempts: int) -> int:
    """Backoff for an item that has now failed ``attempts`` times."""
    index = min(max(attempts, 1) - 1, len(BACKOFF_SCHEDULE_MINUTES) - 1)
    return BACKOFF_SCHEDULE_MINUTES[index]


def _rollback_before_retry(retry_state) -> None:
    repository = retry_state.args[0]
    logger.warning(
        f"Queue bookkeeping attempt {retry_state.attempt_number} failed, retrying: "
        f"{retry_state.outcome.exception()}"
    )
    repository.db.rollback()


# Transient store errors on queue bookkeeping are retried in place; anything
# else (or a third failure) propagates to the caller.
store_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, max=2),
    retry=retry_if_exception_type(OperationalError),
    before_sleep=_rollback_before_retry,
    reraise=True,
)


class SettlementQueueRepository(BaseRepository[SettlementQueueItem]):
    """Data access for the settlement_queue table."""

    def __init__(self, db: Session):
        super().__init__(SettlementQueueItem, db)

    # ========================================================================
    # Reads
    # ========================================================================

    def list_queue(
        self,
        status: Optional[Sequence[str]] = None,
        league: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[SettlementQueueItem]:
        """Queue items, newest first, optionally filtered by status list and league."""
        query = self.query()
        if status:
            query = query.filter(SettlementQueueItem.status.in_(list(status)))
        if league:
            query = query.filter(SettlementQueueItem.league == league)
        query = query.order_by(SettlementQueueItem.created_at.desc())
        if limit:
            query = query.limit(limit)
        return query.all()

    def get_queue_stats(self) -> Dict[str, int]:
        """Counts per status plus total, always including every status key."""
        counts = self.group_by_and_count("status")
        stats = {status.lower(): counts.get(status, 0) for status in QueueStatus.ALL}
        stats["total"] = sum(counts.values())
        return stats

    def find_by_game(self, game_id: int) -> Optional[SettlementQueueItem]:
        return self.where_first(SettlementQueueItem.game_id == game_id)

    # ========================================================================
    # Claim
    # ========================================================================

    def claim_next(self, worker_id: str) -> Optional[SettlementQueueItem]:
        """
        Atomically claim the oldest eligible item for ``worker_id``.

        Eligible means QUEUED, due (next_attempt_at <= now) and unlocked. The
        candidate subquery and the state change run as one UPDATE; the outer
        WHERE re-checks status and lock so a row taken by another worker
        between the two evaluations matches nothing. On Postgres the
        subquery also uses FOR UPDATE SKIP LOCKED so contending workers pick
        different rows instead of queueing on the same one.

        Returns None when nothing is eligible or the claim lost a race.
        """
        now = utc_now()
        candidate = (
            select(SettlementQueueItem.id)
            .where(
                SettlementQueueItem.status == QueueStatus.QUEUED,
                SettlementQueueItem.next_attempt_at <= now,
                SettlementQueueItem.locked_by.is_(None),
            )
            .order_by(SettlementQueueItem.created_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(SettlementQueueItem)
            .where(
                SettlementQueueItem.id == candidate,
                SettlementQueueItem.status == QueueStatus.QUEUED,
                SettlementQueueItem.locked_by.is_(None),
            )
            .values(
                status=QueueStatus.PROCESSING,
                locked_by=worker_id,
                locked_at=now,
                updated_at=now,
            )
            .returning(SettlementQueueItem)
            .execution_options(synchronize_session=False)
        )

        try:
            item = self.db.execute(stmt).scalars().first()
            self.db.commit()
        except OperationalError as e:
            # Lock contention or a timeout: nothing claimed on this poll
            self.db.rollback()
            logger.warning(f"Queue claim failed for {worker_id}: {e}")
            metrics.record_claim_error()
            return None

        if item is not None:
            logger.info(f"Claimed queue item {item.id} (game {item.game_id}) for {worker_id}")
        return item

    # ========================================================================
    # Transitions
    # ========================================================================

    @store_retry
    def mark_done(self, item_id: str) -> None:
        """Set DONE and clear the lock."""
        now = utc_now()
        self.db.execute(
            update(SettlementQueueItem)
            .where(SettlementQueueItem.id == item_id)
            .values(status=QueueStatus.DONE, locked_by=None, locked_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()

    @store_retry
    def mark_failed(self, item_id: str, reason: str) -> Optional[datetime]:
        """
        Record a failed attempt and schedule the next one.

        attempts is incremented, then next_attempt_at = now + backoff(attempts).

        Returns:
            The new next_attempt_at, or None when the item no longer exists
        """
        item = self.db.get(
            SettlementQueueItem, item_id, populate_existing=True, with_for_update=True
        )
        if item is None:
            logger.error(f"Cannot mark missing queue item {item_id} as failed")
            return None

        now = utc_now()
        attempts = (item.attempts or 0) + 1
        item.attempts = attempts
        item.status = QueueStatus.FAILED
        item.reason = reason
        item.next_attempt_at = now + timedelta(minutes=backoff_minutes(attempts))
        item.locked_by = None
        item.locked_at = None
        item.updated_at = now
        next_attempt_at = item.next_attempt_at
        self.db.commit()

        logger.warning(
            f"Queue item {item_id} failed (attempt {attempts}), "
            f"next attempt at {next_attempt_at.isoformat()}: {reason}"
        )
        return next_attempt_at

    # ========================================================================
    # Maintenance
    # ========================================================================

    def release_stale_locks(self, older_than_minutes: int = 10) -> int:
        """
        Requeue PROCESSING items whose lock is older than the threshold.

        A worker that died mid-item leaves its row PROCESSING with no
        heartbeat; every settlement step is idempotent, so handing it to
        another worker is safe.
        """
        now = utc_now()
        result = self.db.execute(
            update(SettlementQueueItem)
            .where(
                SettlementQueueItem.status == QueueStatus.PROCESSING,
                SettlementQueueItem.locked_at < minutes_ago(older_than_minutes, now),
            )
            .values(
                status=QueueStatus.QUEUED,
                locked_by=None,
                locked_at=None,
                reason="Released stale processing lock",
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        released = result.rowcount or 0
        if released:
            logger.warning(f"Released {released} stale processing lock(s) older than {older_than_minutes}m")
        return released

    def requeue_failed(self, due_only: bool = True, max_attempts: Optional[int] = None) -> int:
        """
        Move FAILED items back to QUEUED so claim_next can pick them up.

        Args:
            due_only: Only items whose backoff has elapsed. When False every
                FAILED item is requeued and made due immediately.
            max_attempts: Leave items with at least this many attempts alone.

        Returns:
            Number of items requeued
        """
        now = utc_now()
        criteria = [SettlementQueueItem.status == QueueStatus.FAILED]
        if due_only:
            criteria.append(SettlementQueueItem.next_attempt_at <= now)
        if max_attempts is not None:
            criteria.append(SettlementQueueItem.attempts < max_attempts)

        values = {
            "status": QueueStatus.QUEUED,
            "locked_by": None,
            "locked_at": None,
            "updated_at": now,
        }
        if not due_only:
            values["next_attempt_at"] = now

        result = self.db.execute(
            update(SettlementQueueItem)
            .where(*criteria)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        requeued = result.rowcount or 0
        if requeued:
            logger.info(f"Requeued {requeued} failed settlement item(s) (due_only={due_only})")
        return requeued

    def enqueue(
        self,
        game: SportsGame,
        outcome: Optional[str],
        reason: Optional[str] = None,
    ) -> Tuple[SettlementQueueItem, bool]:
        """
        Queue a game for settlement, at most once per game.

        Returns:
            (item, created); ``created`` is False when the game was already queued
        """
        existing = self.find_by_game(game.id)
        if existing is not None:
            return existing, False

        try:
            with self.db.begin_nested():
                item = self.create(
                    id=new_id(),
                    game_id=game.id,
                    league=game.league,
                    external_game_id=game.external_game_id,
                    provider=game.provider or "api-sports",
                    status=QueueStatus.QUEUED,
                    outcome=outcome or "CANCELED",
                    reason=reason,
                    attempts=0,
                    next_attempt_at=utc_now(),
                )
        except IntegrityError as e:
            if not is_unique_violation(e):
                raise
            self.db.commit()
            return self.find_by_game(game.id), False

        self.db.commit()
        logger.info(f"Enqueued settlement for game {game.id} ({game.league}) outcome={item.outcome}")
        return item, True
