from __future__ import annotations
from fastapi import APIRouter, Depends
import sqlalchemy
from sqlalchemy.exc import SQLAlchemyError

from civicwatch.cache import KEY_PREFIX, invalidate_pattern, get_cache_stats, ping_redis
from civicwatch.config import settings
from civicwatch.database import engine
from civicwatch.dependencies import get_scheduler, require_api_key
from civicwatch.schemas import HealthResponse, MetricsResponse
from civicwatch.services.scheduler import Scheduler

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse)
async def health(scheduler: Scheduler = Depends(get_scheduler)):
    """Unauthenticated so load balancer health checks can reach it."""
    redis_ok = await ping_redis()
    try:
        async with engine.connect() as conn:
            await conn.execute(sqlalchemy.text("SELECT 1"))
        db_status = "ok"
    except (SQLAlchemyError, OSError):
        db_status = "error"

    return HealthResponse(
        status="ok" if (redis_ok and db_status == "ok") else "degraded",
        database=db_status,
        redis="ok" if redis_ok else "error",
        scheduler="running" if scheduler.running else "stopped",
        version=settings.APP_VERSION,
    )


@router.get("/metrics", response_model=MetricsResponse, dependencies=[Depends(require_api_key)])
async def metrics(scheduler: Scheduler = Depends(get_scheduler)):
    stats = await get_cache_stats()
    return MetricsResponse(
        cache_hits=stats["hits"],
        cache_misses=stats["misses"],
        stale_hits=stats["stale_hits"],
        hit_rate=stats["hit_rate"],
        total_requests=stats["total_requests"],
        running_modules=scheduler.running_modules,
    )


@router.delete("/cache", status_code=204, dependencies=[Depends(require_api_key)])
async def bust_cache():
    await invalidate_pattern(f"{KEY_PREFIX}:*")
