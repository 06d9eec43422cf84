"""Shared pytest fixtures for settlement engine tests."""
import os

# Settings are read at import time, so the test environment goes first
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("ADMIN_WORKER_ID", "test-worker")

from datetime import timedelta
from decimal import Decimal
from typing import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from settlement_engine.core.database import create_db_engine, get_db
from settlement_engine.models import (
    Base,
    EntryType,
    GameStatus,
    LedgerEntry,
    Market,
    MarketStatus,
    QueueStatus,
    SettlementQueueItem,
    SportsGame,
)
from settlement_engine.repositories.base import new_id
from settlement_engine.utils.timezone import utc_now

ADMIN_HEADERS = {"X-Admin-Token": "test-admin-token"}


@pytest.fixture(scope="function")
def db_engine(tmp_path) -> Generator[Engine, None, None]:
    """
    File-backed SQLite database per test.

    A file (not :memory:) so that separate sessions, threads and the
    TestClient all see the same data.
    """
    engine = create_db_engine(f"sqlite:///{tmp_path / 'settlement.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Create a fresh session on the per-test database."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def test_client(db_session: Session) -> Generator[TestClient, None, None]:
    """
    TestClient whose requests share the test session.

    Note: We don't use context manager (with TestClient) so the lifespan,
    and with it the scheduler, never starts.
    """
    from settlement_engine.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


# =============================================================================
# FACTORIES
# =============================================================================

@pytest.fixture
def make_game(db_session: Session) -> Callable[..., SportsGame]:
    """Create a FINAL game; any column can be overridden."""
    def _make_game(**overrides) -> SportsGame:
        now = utc_now()
        values = {
            "league": "nfl",
            "provider": "api-sports",
            "external_game_id": "9001",
            "home_team": "Kansas City Chiefs",
            "away_team": "Buffalo Bills",
            "home_score": 27,
            "away_score": 24,
            "starts_at": now - timedelta(hours=4),
            "status_norm": GameStatus.FINAL,
            "winner_side": "HOME",
            "finalized_at": now - timedelta(minutes=30),
        }
        values.update(overrides)
        game = SportsGame(**values)
        db_session.add(game)
        db_session.commit()
        return game
    return _make_game


@pytest.fixture
def make_market(db_session: Session) -> Callable[..., Market]:
    """Create a locked, open market for a game."""
    def _make_market(game: SportsGame = None, **overrides) -> Market:
        values = {
            "id": new_id(),
            "sports_game_id": game.id if game is not None else None,
            "league": game.league if game is not None else "nfl",
            "title": "Who wins?",
            "market_status": MarketStatus.OPEN,
            "is_locked": True,
            "lock_reason": "GAME_STARTED",
            "locked_at": utc_now() - timedelta(hours=4),
        }
        values.update(overrides)
        market = Market(**values)
        db_session.add(market)
        db_session.commit()
        return market
    return _make_market


@pytest.fixture
def make_trade(db_session: Session) -> Callable[..., LedgerEntry]:
    """Create a trade_lock entry (an open position) on a market."""
    def _make_trade(market: Market, user_id: str, amount, side: str = "HOME", **meta) -> LedgerEntry:
        entry = LedgerEntry(
            id=new_id(),
            user_id=user_id,
            market_id=market.id,
            entry_type=EntryType.TRADE_LOCK,
            direction="debit",
            amount=Decimal(str(amount)),
            currency="USDC",
            reference_id=f"trade-{new_id()[:8]}",
            meta={"side": side, **meta} if side is not None else meta,
        )
        db_session.add(entry)
        db_session.commit()
        return entry
    return _make_trade


@pytest.fixture
def make_queue_item(db_session: Session) -> Callable[..., SettlementQueueItem]:
    """Create a due QUEUED item for a game."""
    def _make_queue_item(game: SportsGame, outcome: str = "HOME", **overrides) -> SettlementQueueItem:
        now = utc_now()
        values = {
            "id": new_id(),
            "game_id": game.id,
            "league": game.league,
            "external_game_id": game.external_game_id,
            "provider": game.provider,
            "status": QueueStatus.QUEUED,
            "outcome": outcome,
            "attempts": 0,
            "next_attempt_at": now - timedelta(seconds=1),
            "created_at": now,
        }
        values.update(overrides)
        item = SettlementQueueItem(**values)
        db_session.add(item)
        db_session.commit()
        return item
    return _make_queue_item
