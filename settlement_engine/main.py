"""
Main FastAPI application for the sports settlement engine.

Runs the settlement scheduler in-process and exposes the admin API used
to inspect and drive the settlement queue.
"""
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from settlement_engine.core import metrics
from settlement_engine.core.config import settings
from settlement_engine.core.database import get_db
from settlement_engine.core.logging import configure_logging, get_logger
from settlement_engine.core.middleware import CorrelationIdMiddleware
from settlement_engine.core.rate_limit import limiter
from settlement_engine.core.scheduler import get_scheduler, start_scheduler, stop_scheduler
from settlement_engine.api.routes import lifecycle, settlements
from settlement_engine.repositories import SettlementQueueRepository

configure_logging(level=settings.LOG_LEVEL, json_output=settings.LOG_JSON)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Application lifespan events."""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION} ({settings.ENVIRONMENT})")

    missing = settings.validate_required_secrets()
    if missing:
        if settings.is_production():
            raise RuntimeError(f"Missing required secrets: {', '.join(missing)}")
        logger.warning(f"Missing secrets (non-production): {', '.join(missing)}")

    if settings.SCHEDULER_ENABLED:
        await start_scheduler()
        logger.info("Settlement scheduler started")
    else:
        logger.info("Settlement scheduler disabled (SCHEDULER_ENABLED=false)")

    metrics.update_scheduler_metrics()
    logger.info("Application started")

    yield

    await stop_scheduler()
    metrics.update_scheduler_metrics()
    logger.info("Shutting down application")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Idempotent settlement of sports prediction markets: payouts, refunds and receipts",
    lifespan=lifespan
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add correlation ID middleware (must be added before CORS for proper header handling)
app.add_middleware(CorrelationIdMiddleware)

# Prometheus metrics must be initialized before routes are added
instrumentator = Instrumentator()
instrumentator.instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Admin routes - not versioned (admin tools don't follow API versioning)
app.include_router(settlements.router, prefix="/api/admin")
app.include_router(lifecycle.router, prefix="/api/admin")


@app.get("/")
@limiter.limit("60/minute")
async def root(request: Request):
    """Root endpoint with API information."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "endpoints": {
            "settlements": "/api/admin/settlements",
            "stats": "/api/admin/settlements/stats",
            "preview": "/api/admin/settlements/preview/{game_id}",
            "processed": "/api/admin/settlements/processed/{game_id}",
            "reconciliation": "/api/admin/settlements/reconciliation",
            "lifecycle_health": "/api/admin/lifecycle/health",
            "job_locks": "/api/admin/lifecycle/job-locks",
            "metrics": "/metrics",
            "docs": "/docs",
            "health": "/health"
        }
    }


@app.get("/health")
@limiter.limit("120/minute")  # Higher limit for health checks
async def health_check(request: Request):
    """Liveness check."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION
    }


@app.get("/api/health")
@limiter.limit("60/minute")
async def api_health(request: Request, db: Session = Depends(get_db)):
    """Detailed health check with component-level status."""
    health_status = {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "components": {}
    }
    all_healthy = True

    # 1. Database + settlement queue
    try:
        db.execute(text("SELECT 1"))
        stats = SettlementQueueRepository(db).get_queue_stats()
        metrics.update_queue_metrics(stats)
        health_status["components"]["database"] = {"status": "connected"}
        health_status["components"]["settlement_queue"] = stats
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database health check failed: {e}")
        health_status["components"]["database"] = {
            "status": "unhealthy",
            "error": str(e)
        }
        all_healthy = False

    # 2. Scheduler
    scheduler = get_scheduler()
    if scheduler and scheduler.running:
        jobs = scheduler.scheduler.get_jobs() if scheduler.scheduler else []
        health_status["components"]["scheduler"] = {
            "status": "running",
            "jobs_count": len(jobs),
            "jobs": [{"id": j.id, "name": j.name} for j in jobs]
        }
    elif settings.SCHEDULER_ENABLED:
        health_status["components"]["scheduler"] = {"status": "stopped"}
        all_healthy = False
    else:
        health_status["components"]["scheduler"] = {"status": "disabled"}
    metrics.update_scheduler_metrics()

    if not all_healthy:
        health_status["status"] = "degraded"

    status_code = 200 if health_status["status"] == "healthy" else 503
    return JSONResponse(
        status_code=status_code,
        content=health_status
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "detail": str(exc)}
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("settlement_engine.main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG)
