"""Game lifecycle health checks and queue maintenance.

Checks (warning / critical thresholds):
- stuck_live: LIVE games that started > 6h ago and never finalized (1 / 5)
- stuck_scheduled: SCHEDULED games that started > 8h ago (5 / 20)
- final_not_queued: FINAL, unsettled games with no queue item (1 / 3)
- queued_too_long: QUEUED/PROCESSING items untouched for > 30m (3 / 10)
- failed_many: FAILED items with 5+ attempts, needing a human (2 / 5)
- processing_stale: PROCESSING items locked > 10m (1 / 3)

Maintenance:
- release_stale_processing_locks: PROCESSING items past the lock age go back to QUEUED
- requeue_due_failures: FAILED items whose backoff elapsed go back to QUEUED
- enqueue_orphaned_final_games: FINAL games the decider never queued
"""
import logging
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from settlement_engine.core.config import settings
from settlement_engine.models import GameStatus, QueueStatus, SettlementQueueItem, SportsGame
from settlement_engine.repositories import GameRepository, SettlementQueueRepository
from settlement_engine.utils.timezone import minutes_ago, to_iso, utc_now

logger = logging.getLogger(__name__)

THRESHOLDS = {
    "stuck_live": {"warning": 1, "critical": 5},
    "stuck_scheduled": {"warning": 5, "critical": 20},
    "final_not_queued": {"warning": 1, "critical": 3},
    "queued_too_long": {"warning": 3, "critical": 10},
    "failed_many": {"warning": 2, "critical": 5},
    "processing_stale": {"warning": 1, "critical": 3},
}

DESCRIPTIONS = {
    "stuck_live": "LIVE games with start time > 6 hours ago (should be finished)",
    "stuck_scheduled": "SCHEDULED games with start time > 8 hours ago (never started?)",
    "final_not_queued": "FINAL games with no settlement_queue entry and not settled",
    "queued_too_long": "QUEUED/PROCESSING items stale for > 30 minutes",
    "failed_many": "FAILED items with 5+ attempts (need manual intervention)",
    "processing_stale": "PROCESSING items with stale lock (> 10 minutes)",
}

MAX_ITEMS_PER_CHECK = 20
FAILED_MANY_ATTEMPTS = 5
QUEUED_TOO_LONG_MINUTES = 30


def get_check_status(count: int, thresholds: Dict[str, int]) -> str:
    if count >= thresholds["critical"]:
        return "critical"
    if count >= thresholds["warning"]:
        return "warning"
    return "ok"


def determine_outcome(game: SportsGame) -> Optional[str]:
    """Winner from the final score, falling back to the stored winner_side."""
    if game.home_score is not None and game.away_score is not None:
        if game.home_score > game.away_score:
            return "HOME"
        if game.away_score > game.home_score:
            return "AWAY"
        return "DRAW"
    return game.winner_side.upper() if game.winner_side else None


def _game_row(game: SportsGame) -> Dict:
    return {
        "id": game.id,
        "league": game.league,
        "external_game_id": game.external_game_id,
        "home_team": game.home_team,
        "away_team": game.away_team,
        "starts_at": to_iso(game.starts_at),
        "status_norm": game.status_norm,
        "updated_at": to_iso(game.updated_at),
    }


def _queue_row(item: SettlementQueueItem, game: Optional[SportsGame]) -> Dict:
    return {
        "id": item.game_id,
        "queue_item_id": item.id,
        "league": item.league,
        "external_game_id": item.external_game_id,
        "home_team": game.home_team if game else None,
        "away_team": game.away_team if game else None,
        "starts_at": to_iso(game.starts_at) if game else None,
        "status": item.status,
        "updated_at": to_iso(item.updated_at),
        "locked_by": item.locked_by,
        "attempts": item.attempts,
        "reason": item.reason,
    }


class LifecycleHealthChecker:
    """Runs the lifecycle checks against one session."""

    def __init__(self, db: Session):
        self.db = db

    def run(self, include_items: bool = True) -> Dict:
        checks = {
            "stuck_live": self._run_check("stuck_live", self._stuck_live, include_items),
            "stuck_scheduled": self._run_check("stuck_scheduled", self._stuck_scheduled, include_items),
            "final_not_queued": self._run_check("final_not_queued", self._final_not_queued, include_items),
            "queued_too_long": self._run_check("queued_too_long", self._queued_too_long, include_items),
            "failed_many": self._run_check("failed_many", self._failed_many, include_items),
            "processing_stale": self._run_check("processing_stale", self._processing_stale, include_items),
        }

        critical_count = sum(1 for c in checks.values() if c["status"] == "critical")
        warning_count = sum(1 for c in checks.values() if c["status"] == "warning")

        status = "healthy"
        if critical_count:
            status = "critical"
        elif warning_count:
            status = "warning"

        return {
            "status": status,
            "checks": checks,
            "summary": {
                "total_issues": sum(c["count"] for c in checks.values()),
                "critical_count": critical_count,
                "warning_count": warning_count,
            },
            "checked_at": to_iso(utc_now()),
        }

    def _run_check(self, name: str, query: Callable[[], List[Dict]], include_items: bool) -> Dict:
        thresholds = THRESHOLDS[name]
        try:
            rows = query()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"[health] {name} check failed: {e}")
            return {
                "status": "warning",
                "count": 0,
                "threshold": thresholds["warning"],
                "description": DESCRIPTIONS[name],
                "error": str(e),
            }

        check = {
            "status": get_check_status(len(rows), thresholds),
            "count": len(rows),
            "threshold": thresholds["warning"],
            "description": DESCRIPTIONS[name],
        }
        if include_items:
            check["items"] = rows[:MAX_ITEMS_PER_CHECK]
        return check

    # ------------------------------------------------------------------
    # Game checks
    # ------------------------------------------------------------------

    def _stale_games(self, status_norm: str, hours: int) -> List[Dict]:
        games = (
            self.db.query(SportsGame)
            .filter(
                SportsGame.status_norm == status_norm,
                SportsGame.starts_at < minutes_ago(hours * 60),
                SportsGame.finalized_at.is_(None),
            )
            .all()
        )
        return [_game_row(g) for g in games]

    def _stuck_live(self) -> List[Dict]:
        return self._stale_games(GameStatus.LIVE, 6)

    def _stuck_scheduled(self) -> List[Dict]:
        return self._stale_games(GameStatus.SCHEDULED, 8)

    def _final_not_queued(self) -> List[Dict]:
        return [_game_row(g) for g in GameRepository(self.db).find_final_unqueued(limit=100)]

    # ------------------------------------------------------------------
    # Queue checks
    # ------------------------------------------------------------------

    def _queue_rows(self, *criteria) -> List[Dict]:
        rows = (
            self.db.query(SettlementQueueItem, SportsGame)
            .outerjoin(SportsGame, SportsGame.id == SettlementQueueItem.game_id)
            .filter(*criteria)
            .order_by(SettlementQueueItem.updated_at.asc())
            .all()
        )
        return [_queue_row(item, game) for item, game in rows]

    def _queued_too_long(self) -> List[Dict]:
        return self._queue_rows(
            SettlementQueueItem.status.in_([QueueStatus.QUEUED, QueueStatus.PROCESSING]),
            SettlementQueueItem.updated_at < minutes_ago(QUEUED_TOO_LONG_MINUTES),
        )

    def _failed_many(self) -> List[Dict]:
        return self._queue_rows(
            SettlementQueueItem.status == QueueStatus.FAILED,
            SettlementQueueItem.attempts >= FAILED_MANY_ATTEMPTS,
        )

    def _processing_stale(self) -> List[Dict]:
        return self._queue_rows(
            SettlementQueueItem.status == QueueStatus.PROCESSING,
            SettlementQueueItem.locked_at < minutes_ago(settings.SETTLEMENT_STALE_LOCK_MINUTES),
        )


def run_health_checks(db: Session, include_items: bool = True) -> Dict:
    return LifecycleHealthChecker(db).run(include_items=include_items)


# =============================================================================
# MAINTENANCE
# =============================================================================

def release_stale_processing_locks(db: Session, older_than_minutes: Optional[int] = None) -> int:
    minutes = settings.SETTLEMENT_STALE_LOCK_MINUTES if older_than_minutes is None else older_than_minutes
    return SettlementQueueRepository(db).release_stale_locks(older_than_minutes=minutes)


def requeue_due_failures(db: Session) -> int:
    return SettlementQueueRepository(db).requeue_failed(
        due_only=True,
        max_attempts=settings.SETTLEMENT_MAX_AUTO_RETRIES,
    )


def enqueue_orphaned_final_games(db: Session, limit: int = 100) -> int:
    """
    Queue FINAL games that were never queued.

    Games whose winner cannot be determined are left alone: queueing them
    without an outcome would settle them as canceled and refund every stake.
    """
    queue = SettlementQueueRepository(db)
    enqueued = 0
    for game in GameRepository(db).find_final_unqueued(limit=limit):
        outcome = determine_outcome(game)
        if outcome is None:
            logger.warning(f"[health] FINAL game {game.id} has no score or winner, not enqueuing")
            continue
        _, created = queue.enqueue(game, outcome, reason="orphaned_final_game")
        if created:
            enqueued += 1
            logger.info(f"[health] Enqueued orphaned FINAL game {game.id} outcome={outcome}")
    return enqueued


def run_maintenance(db: Session, enqueue_orphans: Optional[bool] = None) -> Dict[str, int]:
    """One maintenance pass: stale locks, due failures, then orphaned games."""
    released = release_stale_processing_locks(db)
    requeued = requeue_due_failures(db)
    orphans = 0
    if settings.SETTLEMENT_ENQUEUE_ORPHANS if enqueue_orphans is None else enqueue_orphans:
        orphans = enqueue_orphaned_final_games(db)
    return {
        "released_stale_locks": released,
        "requeued_failures": requeued,
        "enqueued_orphans": orphans,
    }
