from __future__ import annotations
from datetime import timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession

from civicwatch.cache import get_or_load, invalidate_records, records_key
from civicwatch.config import settings
from civicwatch.database import get_db, utcnow
from civicwatch.dependencies import get_enricher, require_api_key
from civicwatch.exceptions import EnrichmentUnavailableError, NotFoundError
from civicwatch.models import RECORD_KINDS, RecordKind
from civicwatch.repositories.records import IdeaRepository, RecordRepository, row_to_dict
from civicwatch.repositories.runs import RunRepository
from civicwatch.repositories.summaries import SummaryRepository
from civicwatch.schemas import (
    BatchEnhanceResponse,
    EnhanceResponse,
    HashtagsResponse,
    KindStats,
    PaginatedRecords,
    ScraperRunOut,
    StatsResponse,
    SummaryOut,
)
from civicwatch.services.enrichment import EnrichmentClient, enhance_ideas, enhance_stored_idea

router = APIRouter(prefix="/api/v1", tags=["records"], dependencies=[Depends(require_api_key)])


def _kind(kind: str) -> RecordKind:
    try:
        return RECORD_KINDS[kind]
    except KeyError:
        raise NotFoundError(f"Unknown record kind {kind}", {"kind": kind}) from None


@router.get("/records/{kind}", response_model=PaginatedRecords)
async def list_records(
    kind: str,
    category: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    record_kind = _kind(kind)

    async def load(session: AsyncSession) -> Dict[str, Any]:
        total, rows = await RecordRepository(session, record_kind).get_paginated(
            page, page_size, category=category, status=status
        )
        return {
            "kind": kind, "total": total, "page": page, "page_size": page_size,
            "items": jsonable_encoder([row_to_dict(r) for r in rows]),
        }

    value = await get_or_load(
        records_key(kind, category, status, page, page_size), settings.CACHE_TTL_WARM, load, db
    )
    return PaginatedRecords(**value)


@router.get("/records/{kind}/{record_id}")
async def get_record(kind: str, record_id: int, db: AsyncSession = Depends(get_db)) -> Dict[str, Any]:
    record_kind = _kind(kind)

    async def load(session: AsyncSession) -> Optional[Dict[str, Any]]:
        row = await RecordRepository(session, record_kind).get_by_id(record_id)
        return jsonable_encoder(row_to_dict(row)) if row is not None else None

    value = await get_or_load(records_key(kind, "id", record_id), settings.CACHE_TTL_COLD, load, db)
    if value is None:
        raise NotFoundError(f"Record {kind}/{record_id} not found", {"kind": kind, "id": record_id})
    return value


@router.get("/records/{kind}/{record_id}/history")
async def get_record_history(
    kind: str, record_id: int, db: AsyncSession = Depends(get_db)
) -> List[Dict[str, Any]]:
    """Prior versions of a record, newest first."""
    repo = RecordRepository(db, _kind(kind))
    if await repo.get_by_id(record_id) is None:
        raise NotFoundError(f"Record {kind}/{record_id} not found", {"kind": kind, "id": record_id})
    return jsonable_encoder([row_to_dict(h) for h in await repo.history(record_id)])


@router.get("/summaries/{module_key}", response_model=SummaryOut)
async def current_summary(module_key: str, db: AsyncSession = Depends(get_db)):
    row = await SummaryRepository(db).current(module_key)
    if row is None:
        raise NotFoundError(f"No current summary for {module_key}", {"module": module_key})
    return SummaryOut.model_validate(row)


# ── Ideas: hashtags and AI fields ─────────────────────────────────────────────

def _require_enricher(enricher: Optional[EnrichmentClient]) -> EnrichmentClient:
    if enricher is None:
        raise EnrichmentUnavailableError("Text enrichment is not configured")
    return enricher


@router.get("/ideas/hashtags", response_model=HashtagsResponse)
async def idea_hashtags(db: AsyncSession = Depends(get_db)):
    """Every AI hashtag across ideas with the number of ideas carrying it."""

    async def load(session: AsyncSession) -> Dict[str, Any]:
        tags = await IdeaRepository(session).hashtag_counts()
        return {"hashtags": tags, "total": len(tags)}

    value = await get_or_load(records_key("ideas", "hashtags"), settings.CACHE_TTL_WARM, load, db)
    return HashtagsResponse(**value)


@router.post("/ideas/batch-enhance", response_model=BatchEnhanceResponse)
async def batch_enhance_ideas(
    limit: int = Query(10, ge=1, le=100),
    force: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    enricher: Optional[EnrichmentClient] = Depends(get_enricher),
):
    """Fill AI fields for ideas missing them; ``force`` redoes ideas that have them."""
    client = _require_enricher(enricher)
    repo = IdeaRepository(db)
    ideas = await repo.needing_enhancement(limit, force=force)
    if not ideas:
        return BatchEnhanceResponse(processed=0, failed=0)

    outcome = await enhance_ideas(client, repo, ideas, pause=settings.ENRICH_PAUSE_SECONDS)
    await db.commit()
    if outcome.processed:
        await invalidate_records("ideas")
    return BatchEnhanceResponse(
        processed=outcome.processed, failed=outcome.failed, errors=outcome.errors
    )


@router.post("/ideas/{record_id}/enhance", response_model=EnhanceResponse)
async def enhance_idea(
    record_id: int,
    db: AsyncSession = Depends(get_db),
    enricher: Optional[EnrichmentClient] = Depends(get_enricher),
):
    client = _require_enricher(enricher)
    repo = IdeaRepository(db)
    idea = await repo.get_by_id(record_id)
    if idea is None:
        raise NotFoundError(f"Record ideas/{record_id} not found", {"kind": "ideas", "id": record_id})

    enhancement = await enhance_stored_idea(client, repo, idea)
    await db.commit()
    await invalidate_records("ideas")
    return EnhanceResponse(
        idea=jsonable_encoder(row_to_dict(idea)),
        ai_title=enhancement.title,
        ai_summary=enhancement.summary,
        ai_hashtags=enhancement.hashtags,
    )


# ── Platform statistics ───────────────────────────────────────────────────────

@router.get("/stats", response_model=StatsResponse)
async def platform_stats(
    hours: int = Query(24, ge=1, le=24 * 30),
    db: AsyncSession = Depends(get_db),
):
    """Per-kind totals and groupings, records new or changed in the window, latest runs."""
    since = utcnow() - timedelta(hours=hours)
    kinds = {
        name: KindStats(**await RecordRepository(db, kind).stats(since))
        for name, kind in RECORD_KINDS.items()
    }
    runs = await RunRepository(db).recent(limit=5)
    return StatsResponse(
        since=since,
        kinds=kinds,
        recent_runs=[ScraperRunOut.model_validate(r) for r in runs],
    )
