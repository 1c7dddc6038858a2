from __future__ import annotations

import asyncio
from typing import AsyncIterator, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from civicwatch.database import get_db
from civicwatch.dependencies import get_progress_hub, get_scheduler, require_api_key
from civicwatch.models import ModuleConfig
from civicwatch.repositories.modules import ModuleRepository
from civicwatch.repositories.runs import RunRepository
from civicwatch.schemas import (
    ModuleOut, ModuleUpdate, RunResult, SchedulerRunResponse, ScraperRunOut,
)
from civicwatch.services.progress import ProgressHub, Subscription
from civicwatch.services.scheduler import Scheduler

router = APIRouter(prefix="/api/v1", tags=["modules"], dependencies=[Depends(require_api_key)])

KEEPALIVE_SECONDS = 15.0


def _module_out(module: ModuleConfig, scheduler: Scheduler) -> ModuleOut:
    out = ModuleOut.model_validate(module)
    return out.model_copy(update={"running": scheduler.is_running(module.key)})


@router.get("/modules", response_model=List[ModuleOut])
async def list_modules(
    db: AsyncSession = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
):
    return [_module_out(m, scheduler) for m in await ModuleRepository(db).list_all()]


@router.get("/modules/{key}", response_model=ModuleOut)
async def get_module(
    key: str,
    db: AsyncSession = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
):
    return _module_out(await ModuleRepository(db).require(key), scheduler)


@router.patch("/modules/{key}", response_model=ModuleOut)
async def update_module(
    key: str,
    body: ModuleUpdate,
    db: AsyncSession = Depends(get_db),
    scheduler: Scheduler = Depends(get_scheduler),
):
    module = await ModuleRepository(db).update_settings(
        key,
        enabled=body.enabled,
        interval_minutes=body.interval_minutes,
    )
    await db.commit()
    return _module_out(module, scheduler)


@router.post("/modules/{key}/run", response_model=RunResult)
async def run_module(key: str, scheduler: Scheduler = Depends(get_scheduler)):
    """Runs the crawl inline and answers once it has finished."""
    return await scheduler.run_module(key, triggered_by="manual")


async def _sse(subscription: Subscription, request: Request) -> AsyncIterator[str]:
    try:
        while True:
            try:
                snapshot = await asyncio.wait_for(subscription.get(), timeout=KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                if await request.is_disconnected():
                    break
                yield ": keepalive\n\n"
                continue
            yield f"data: {snapshot.model_dump_json()}\n\n"
            if snapshot.is_terminal:
                break
    finally:
        subscription.close()


@router.get("/modules/{key}/progress")
async def stream_progress(
    key: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    hub: ProgressHub = Depends(get_progress_hub),
):
    """Server-sent progress snapshots; the stream ends after ``completed`` or ``error``."""
    await ModuleRepository(db).require(key)
    subscription = hub.subscribe(key)
    return StreamingResponse(
        _sse(subscription, request),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/scheduler/run", response_model=SchedulerRunResponse)
async def run_due_modules(scheduler: Scheduler = Depends(get_scheduler)):
    results = await scheduler.tick()
    return SchedulerRunResponse(modules_run=len(results), results=results)


@router.get("/runs", response_model=List[ScraperRunOut])
async def recent_runs(
    module_key: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    rows = await RunRepository(db).recent(limit, module_key)
    return [ScraperRunOut.model_validate(r) for r in rows]
