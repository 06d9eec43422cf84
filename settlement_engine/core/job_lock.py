"""
Table-backed job locks.

Keeps overlapping scheduler instances (several app replicas, a cron run
colliding with the in-process scheduler) from running the same job at once.
A lock is a row in job_locks keyed by job name with an expiry; expired rows
are deleted before each acquisition, so a crashed holder blocks the job for
at most its TTL.

Usage:
    outcome = with_job_lock(db, "settle", lambda: worker.process_all_settlements())
    if outcome.skipped:
        ...
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import delete, insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from settlement_engine.core.config import settings
from settlement_engine.core.database import is_unique_violation
from settlement_engine.models import JobLock
from settlement_engine.utils.timezone import to_iso, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class LockResult:
    acquired: bool
    existing_lock: Optional[JobLock] = None
    error: Optional[str] = None


@dataclass
class JobRunResult:
    skipped: bool
    result: Any = None
    error: Optional[str] = None


class JobLockManager:
    """Acquire, extend and release named locks for one owner."""

    def __init__(self, db: Session, owner: Optional[str] = None):
        self.db = db
        self.owner = owner or settings.WORKER_ID

    def acquire(self, job_name: str, ttl_minutes: Optional[int] = None) -> LockResult:
        """
        Take the lock unless another owner holds an unexpired one.

        Store errors count as not acquired, so the job is skipped this round.
        """
        ttl = settings.JOB_LOCK_TTL_MINUTES if ttl_minutes is None else ttl_minutes
        now = utc_now()

        try:
            self.db.execute(
                delete(JobLock)
                .where(JobLock.job_name == job_name, JobLock.expires_at < now)
                .execution_options(synchronize_session=False)
            )
            with self.db.begin_nested():
                self.db.execute(
                    insert(JobLock).values(
                        job_name=job_name,
                        locked_at=now,
                        expires_at=now + timedelta(minutes=ttl),
                        locked_by=self.owner,
                        meta={"started_at": to_iso(now)},
                    )
                )
            self.db.commit()
        except IntegrityError as e:
            if not is_unique_violation(e):
                self.db.rollback()
                logger.error(f"[job-lock] Failed to acquire lock for {job_name}: {e}")
                return LockResult(acquired=False, error=str(e))
            self.db.commit()
            existing = self.db.get(JobLock, job_name, populate_existing=True)
            if existing is not None and existing.locked_by == self.owner:
                # Re-entrant for the same owner
                existing.expires_at = now + timedelta(minutes=ttl)
                self.db.commit()
                return LockResult(acquired=True, existing_lock=existing)
            logger.info(
                f"[job-lock] Job {job_name} already locked by "
                f"{existing.locked_by if existing else 'unknown'} until "
                f"{to_iso(existing.expires_at) if existing else '?'}"
            )
            return LockResult(acquired=False, existing_lock=existing)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"[job-lock] Failed to acquire lock for {job_name}: {e}")
            return LockResult(acquired=False, error=str(e))

        logger.debug(f"[job-lock] Acquired lock for {job_name} (ttl {ttl}m)")
        return LockResult(acquired=True)

    def release(self, job_name: str) -> bool:
        """Drop this owner's lock. Returns False when it was not held."""
        result = self.db.execute(
            delete(JobLock)
            .where(JobLock.job_name == job_name, JobLock.locked_by == self.owner)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return (result.rowcount or 0) > 0

    def extend(self, job_name: str, ttl_minutes: Optional[int] = None) -> bool:
        """Push this owner's lock expiry out by another TTL."""
        ttl = settings.JOB_LOCK_TTL_MINUTES if ttl_minutes is None else ttl_minutes
        lock = self.db.get(JobLock, job_name, populate_existing=True)
        if lock is None or lock.locked_by != self.owner:
            return False
        lock.expires_at = utc_now() + timedelta(minutes=ttl)
        self.db.commit()
        return True

    def force_release(self, job_name: str) -> bool:
        """Drop the lock whoever holds it (admin use)."""
        result = self.db.execute(
            delete(JobLock)
            .where(JobLock.job_name == job_name)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        released = (result.rowcount or 0) > 0
        if released:
            logger.warning(f"[job-lock] Force-released lock for {job_name}")
        return released

    def cleanup_expired(self) -> int:
        result = self.db.execute(
            delete(JobLock)
            .where(JobLock.expires_at < utc_now())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount or 0

    def list_locks(self) -> List[Dict]:
        now = utc_now()
        return [
            {
                "job_name": lock.job_name,
                "locked_by": lock.locked_by,
                "locked_at": to_iso(lock.locked_at),
                "expires_at": to_iso(lock.expires_at),
                "expired": lock.expires_at < now,
                "meta": lock.meta or {},
            }
            for lock in self.db.query(JobLock).order_by(JobLock.job_name).all()
        ]


def with_job_lock(
    db: Session,
    job_name: str,
    job: Callable[[], T],
    ttl_minutes: Optional[int] = None,
    owner: Optional[str] = None,
) -> JobRunResult:
    """Run ``job`` while holding ``job_name``; skip it when the lock is taken."""
    manager = JobLockManager(db, owner=owner)
    lock = manager.acquire(job_name, ttl_minutes=ttl_minutes)
    if not lock.acquired:
        holder = lock.existing_lock.locked_by if lock.existing_lock else None
        reason = lock.error or f"Job {job_name} is already running (locked by {holder})"
        return JobRunResult(skipped=True, error=reason)

    try:
        return JobRunResult(skipped=False, result=job())
    finally:
        try:
            manager.release(job_name)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"[job-lock] Failed to release lock for {job_name}: {e}")
