"""
Database configuration and session management.
"""
import os
import sqlite3
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool

from settlement_engine.core.config import settings

# SQLSTATE for unique_violation on Postgres
PG_UNIQUE_VIOLATION = "23505"


def create_db_engine(database_url: str) -> Engine:
    """
    Build an engine for the given URL.

    Postgres gets a pooled engine with a per-statement timeout so a hung
    store call surfaces as an OperationalError. SQLite (local runs and tests)
    gets SQLAlchemy-managed transactions so SAVEPOINTs behave.
    """
    echo = os.getenv("SQL_ECHO", "false").lower() == "true"

    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 5},
            echo=echo,
        )
        _configure_sqlite(engine)
        return engine

    connect_args = {}
    if settings.DB_STATEMENT_TIMEOUT_MS and database_url.startswith("postgresql"):
        connect_args["options"] = f"-c statement_timeout={settings.DB_STATEMENT_TIMEOUT_MS}"

    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_pre_ping=True,
        connect_args=connect_args,
        echo=echo,
    )


def _configure_sqlite(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself instead of pysqlite
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def is_unique_violation(exc: IntegrityError) -> bool:
    """True when the integrity error is a duplicate key, not some other constraint."""
    orig = getattr(exc, "orig", None)
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code is not None:
        return code == PG_UNIQUE_VIOLATION
    if isinstance(orig, sqlite3.IntegrityError):
        message = str(orig)
        return "UNIQUE constraint failed" in message or "PRIMARY KEY" in message
    return False


engine = create_db_engine(settings.DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency that provides a database session.

    Usage in FastAPI:
    ```python
    @router.get("/endpoint")
    def endpoint(db: Session = Depends(get_db)):
        ...
    ```
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
