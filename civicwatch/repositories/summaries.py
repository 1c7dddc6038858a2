from __future__ import annotations
from datetime import timedelta
from typing import Optional
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from civicwatch.database import utcnow
from civicwatch.models import PlatformSummary


class SummaryRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def save(
        self, module_key: str, summary: str, item_count: int, valid_hours: int = 24
    ) -> PlatformSummary:
        now = utcnow()
        row = PlatformSummary(
            module_key=module_key,
            summary=summary,
            item_count=item_count,
            created_at=now,
            valid_until=now + timedelta(hours=valid_hours),
        )
        self.db.add(row)
        await self.db.flush()
        return row

    async def current(self, module_key: str) -> Optional[PlatformSummary]:
        rows = await self.db.execute(
            select(PlatformSummary)
            .where(
                PlatformSummary.module_key == module_key,
                or_(PlatformSummary.valid_until.is_(None), PlatformSummary.valid_until > utcnow()),
            )
            .order_by(PlatformSummary.created_at.desc(), PlatformSummary.id.desc())
            .limit(1)
        )
        return rows.scalar_one_or_none()
