"""Admin lifecycle routes: health checks, maintenance and job locks."""
import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from settlement_engine.core.auth import require_admin
from settlement_engine.core.database import get_db
from settlement_engine.core.job_lock import JobLockManager
from settlement_engine.core.rate_limit import ADMIN_ACTION_LIMIT, limiter
from settlement_engine.services.settlement import run_health_checks, run_maintenance

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/lifecycle",
    tags=["admin-lifecycle"],
    dependencies=[Depends(require_admin)],
)


@router.get("/health")
async def get_lifecycle_health(
    include_items: bool = Query(True, description="Include up to 20 offending rows per check"),
    db: Session = Depends(get_db),
) -> Dict:
    """
    Game lifecycle health.

    Overall status is critical if any check is critical, warning if any
    check is warning, else healthy.
    """
    return run_health_checks(db, include_items=include_items)


@router.post("/maintenance")
@limiter.limit(ADMIN_ACTION_LIMIT)
def run_lifecycle_maintenance(
    request: Request,
    enqueue_orphans: bool = Query(True, description="Also enqueue FINAL games missing from the queue"),
    db: Session = Depends(get_db),
) -> Dict:
    """Release stale locks, requeue due failures and (optionally) enqueue orphans now."""
    result = run_maintenance(db, enqueue_orphans=enqueue_orphans)
    logger.info(f"Admin maintenance run: {result}")
    return {"success": True, **result}


@router.get("/job-locks")
async def get_job_locks(db: Session = Depends(get_db)) -> Dict:
    """Current job locks, including expired ones not yet cleaned up."""
    locks = JobLockManager(db).list_locks()
    return {"count": len(locks), "locks": locks}


@router.delete("/job-locks/{job_name}")
async def force_release_job_lock(job_name: str, db: Session = Depends(get_db)) -> Dict:
    """Drop a job lock whoever holds it."""
    if not JobLockManager(db).force_release(job_name):
        raise HTTPException(status_code=404, detail=f"No lock held for job {job_name}")
    return {"success": True, "job_name": job_name}
