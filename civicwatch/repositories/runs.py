from __future__ import annotations
from typing import List, Optional
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from civicwatch.database import utcnow
from civicwatch.exceptions import NotFoundError
from civicwatch.models import ScraperRun


class RunRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def start(self, module_key: str, triggered_by: str = "manual") -> int:
        run = ScraperRun(
            module_key=module_key,
            triggered_by=triggered_by,
            started_at=utcnow(),
        )
        self.db.add(run)
        await self.db.flush()
        return run.id

    async def finish(
        self,
        run_id: int,
        items_scraped: int,
        items_new: int,
        items_updated: int,
        success: bool,
        error: str | None = None,
    ) -> ScraperRun:
        run = await self.db.get(ScraperRun, run_id)
        if run is None:
            raise NotFoundError(f"Scraper run {run_id} not found")
        run.ended_at = utcnow()
        run.items_scraped = items_scraped
        run.items_new = items_new
        run.items_updated = items_updated
        run.success = success
        run.error = error
        await self.db.flush()
        return run

    async def finalize_orphans(self, reason: str = "interrupted") -> int:
        """Close every run still open; only valid while no crawl is in flight."""
        result = await self.db.execute(
            update(ScraperRun)
            .where(ScraperRun.ended_at.is_(None))
            .values(ended_at=utcnow(), success=False, error=reason)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def recent(self, limit: int = 50, module_key: Optional[str] = None) -> List[ScraperRun]:
        query = select(ScraperRun)
        if module_key:
            query = query.where(ScraperRun.module_key == module_key)
        rows = await self.db.execute(
            query.order_by(ScraperRun.started_at.desc(), ScraperRun.id.desc()).limit(limit)
        )
        return list(rows.scalars().all())
