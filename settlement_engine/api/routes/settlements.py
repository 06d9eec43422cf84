"""Admin settlement queue routes.

Provides endpoints for:
- Listing queue items with stats
- Running settlement (one item or a batch)
- Requeueing failed items and releasing stale locks
- Manually enqueueing a game
- Dry-run previews, processed checks and the reconciliation report
- Treasury balance and fee ledger reads
"""
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from settlement_engine.core.auth import require_admin
from settlement_engine.core.config import settings
from settlement_engine.core.database import get_db
from settlement_engine.core.rate_limit import ADMIN_ACTION_LIMIT, limiter
from settlement_engine.models import QueueStatus, SettlementQueueItem, SportsGame, TreasuryEntryType
from settlement_engine.repositories import GameRepository, SettlementQueueRepository
from settlement_engine.services.settlement import (
    SettlementWorker,
    build_reconciliation_report,
    determine_outcome,
    get_treasury_balance,
    get_treasury_ledger,
    is_settlement_processed,
    preview_settlement,
    release_stale_processing_locks,
)
from settlement_engine.services.settlement.payouts import OUTCOMES, is_valid_outcome, normalize_outcome
from settlement_engine.utils.timezone import to_iso

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/settlements",
    tags=["admin-settlements"],
    dependencies=[Depends(require_admin)],
)

ACTIONS = ("process-one", "process-all", "process-batch", "retry-failed", "release-stale", "enqueue")


class SettlementActionRequest(BaseModel):
    """Body for POST /settlements."""
    model_config = ConfigDict(populate_by_name=True)

    action: str
    max_items: Optional[int] = Field(None, alias="maxItems", ge=1, le=500)
    game_id: Optional[int] = Field(None, alias="gameId")
    outcome: Optional[str] = None


def get_queue_repository(db: Session = Depends(get_db)) -> SettlementQueueRepository:
    """Dependency to get the settlement queue repository."""
    return SettlementQueueRepository(db)


def _game_summary(game: Optional[SportsGame]) -> Optional[Dict]:
    if game is None:
        return None
    return {
        "id": game.id,
        "home_team": game.home_team,
        "away_team": game.away_team,
        "starts_at": to_iso(game.starts_at),
        "status_norm": game.status_norm,
        "winner_side": game.winner_side,
    }


def serialize_queue_item(item: SettlementQueueItem, game: Optional[SportsGame] = None) -> Dict:
    return {
        "id": item.id,
        "game_id": item.game_id,
        "league": item.league,
        "external_game_id": item.external_game_id,
        "provider": item.provider,
        "status": item.status,
        "outcome": item.outcome,
        "reason": item.reason,
        "attempts": item.attempts,
        "next_attempt_at": to_iso(item.next_attempt_at),
        "locked_by": item.locked_by,
        "locked_at": to_iso(item.locked_at),
        "created_at": to_iso(item.created_at),
        "updated_at": to_iso(item.updated_at),
        "game": _game_summary(game),
    }


def _parse_statuses(status: Optional[str]) -> Optional[List[str]]:
    if not status:
        return None
    statuses = [s.strip().upper() for s in status.split(",") if s.strip()]
    unknown = [s for s in statuses if s not in QueueStatus.ALL]
    if unknown:
        raise HTTPException(
            status_code=400,
            detail=f"Unknown status {', '.join(unknown)}. Options: {', '.join(QueueStatus.ALL)}"
        )
    return statuses


def _validated_outcome(outcome: Optional[str]) -> Optional[str]:
    """Normalized outcome, None when not given; 400 for anything unknown."""
    if outcome is None or not outcome.strip():
        return None
    if not is_valid_outcome(outcome):
        raise HTTPException(
            status_code=400,
            detail=f"Unknown outcome {outcome!r}. Options: {', '.join(sorted(OUTCOMES))}"
        )
    return normalize_outcome(outcome)


@router.get("")
async def list_settlement_queue(
    status: Optional[str] = Query(None, description="Comma-separated statuses, e.g. QUEUED,FAILED"),
    league: Optional[str] = Query(None, description="Filter by league"),
    limit: int = Query(50, ge=1, le=500),
    queue: SettlementQueueRepository = Depends(get_queue_repository),
    db: Session = Depends(get_db),
) -> Dict:
    """
    List settlement queue items, newest first, with queue stats.

    Each item carries a summary of its game (teams, start, status, winner).
    """
    items = queue.list_queue(status=_parse_statuses(status), league=league, limit=limit)

    game_ids = [item.game_id for item in items]
    games = {}
    if game_ids:
        games = {g.id: g for g in db.query(SportsGame).filter(SportsGame.id.in_(game_ids)).all()}

    return {
        "stats": queue.get_queue_stats(),
        "items": [serialize_queue_item(item, games.get(item.game_id)) for item in items],
    }


@router.get("/stats")
async def get_settlement_stats(
    queue: SettlementQueueRepository = Depends(get_queue_repository),
) -> Dict:
    """Queue counts per status plus total."""
    return queue.get_queue_stats()


@router.post("")
@limiter.limit(ADMIN_ACTION_LIMIT)
def run_settlement_action(
    request: Request,
    body: SettlementActionRequest,
    db: Session = Depends(get_db),
) -> Dict:
    """
    Run a settlement action.

    Actions:
    - process-one: claim and settle the next due item
    - process-all / process-batch: settle up to maxItems items
    - retry-failed: move every FAILED item back to QUEUED, due now
    - release-stale: return PROCESSING items with stale locks to QUEUED
    - enqueue: queue gameId for settlement (outcome from the body or the final score)
    """
    action = body.action
    logger.info(f"Admin settlement action: {action}")

    if action == "process-one":
        result = SettlementWorker(db).process_next()
        if result is None:
            return {"success": True, "message": "No items available for processing", "processed": 0}
        return {"success": result.success, "result": result.to_dict()}

    if action in ("process-all", "process-batch"):
        batch = SettlementWorker(db).process_all_settlements(
            max_items=body.max_items or settings.SETTLEMENT_MAX_ITEMS
        )
        return {"success": True, **batch.to_dict()}

    if action == "retry-failed":
        reset = SettlementQueueRepository(db).requeue_failed(due_only=False)
        return {"success": True, "reset": reset}

    if action == "release-stale":
        released = release_stale_processing_locks(db)
        return {"success": True, "released": released}

    if action == "enqueue":
        return _enqueue_game(db, body)

    raise HTTPException(
        status_code=400,
        detail=f"Unknown action. Options: {', '.join(ACTIONS)}"
    )


def _enqueue_game(db: Session, body: SettlementActionRequest) -> Dict:
    if body.game_id is None:
        raise HTTPException(status_code=400, detail="gameId is required for enqueue")

    outcome = _validated_outcome(body.outcome)

    game = GameRepository(db).find_by_id(body.game_id)
    if game is None:
        raise HTTPException(status_code=404, detail=f"Game {body.game_id} not found")

    outcome = outcome or determine_outcome(game)
    if outcome is None:
        raise HTTPException(
            status_code=400,
            detail=f"Game {game.id} has no final score or winner; pass an explicit outcome"
        )

    item, created = SettlementQueueRepository(db).enqueue(game, outcome, reason="admin_enqueue")
    return {"success": True, "created": created, "item": serialize_queue_item(item, game)}


@router.get("/preview/{game_id}")
async def get_settlement_preview(
    game_id: int,
    outcome: Optional[str] = Query(None, description="Override the outcome, e.g. HOME or CANCELED"),
    db: Session = Depends(get_db),
) -> Dict:
    """Dry run: what settling this game would pay, without writing anything."""
    preview = preview_settlement(db, game_id, outcome=_validated_outcome(outcome))
    if preview is None:
        raise HTTPException(status_code=404, detail=f"Game {game_id} not found")
    return preview


@router.get("/processed/{game_id}")
async def get_settlement_processed(game_id: int, db: Session = Depends(get_db)) -> Dict:
    """Whether a game has been settled."""
    return is_settlement_processed(db, game_id)


@router.get("/reconciliation")
async def get_reconciliation_report(
    stale_minutes: Optional[int] = Query(None, ge=1, description="Age after which INITIATED receipts are reported"),
    game_id: Optional[int] = Query(None, description="Restrict to one game"),
    db: Session = Depends(get_db),
) -> Dict:
    """Failed receipts, stale receipts and markets settlement left inconsistent."""
    return build_reconciliation_report(db, stale_minutes=stale_minutes, game_id=game_id)


@router.get("/treasury")
async def get_treasury(db: Session = Depends(get_db)) -> Dict:
    """Platform fees collected, withdrawals and the current treasury balance."""
    return get_treasury_balance(db)


@router.get("/treasury/ledger")
async def list_treasury_ledger(
    limit: int = Query(50, ge=1, le=500),
    entry_type: Optional[str] = Query(None, description="e.g. SETTLEMENT_FEE or WITHDRAWAL"),
    db: Session = Depends(get_db),
) -> Dict:
    """Recent treasury ledger entries, newest first."""
    if entry_type is not None:
        entry_type = entry_type.strip().upper()
        if entry_type not in TreasuryEntryType.ALL:
            raise HTTPException(
                status_code=400,
                detail=f"Unknown entry type {entry_type}. Options: {', '.join(TreasuryEntryType.ALL)}"
            )
    entries = get_treasury_ledger(db, limit=limit, entry_type=entry_type)
    return {"count": len(entries), "entries": entries}
