"""
Game repository: the slice of sports_games the settlement engine touches.
"""
from typing import List

from sqlalchemy.orm import Session

from settlement_engine.models import GameStatus, SettlementQueueItem, SportsGame
from settlement_engine.repositories.base import BaseRepository
from settlement_engine.utils.timezone import utc_now


class GameRepository(BaseRepository[SportsGame]):
    """Data access for sports_games."""

    def __init__(self, db: Session):
        super().__init__(SportsGame, db)

    def stamp_settled(self, game: SportsGame) -> None:
        """Set settled_at (if missing) and commit."""
        if game.settled_at is None:
            now = utc_now()
            game.settled_at = now
            game.updated_at = now
        self.db.commit()

    def find_final_unqueued(self, limit: int = 100) -> List[SportsGame]:
        """FINAL games that are not settled and have no queue item."""
        return (
            self.query()
            .outerjoin(SettlementQueueItem, SettlementQueueItem.game_id == SportsGame.id)
            .filter(
                SportsGame.status_norm == GameStatus.FINAL,
                SportsGame.settled_at.is_(None),
                SettlementQueueItem.id.is_(None),
            )
            .order_by(SportsGame.finalized_at.asc())
            .limit(limit)
            .all()
        )
