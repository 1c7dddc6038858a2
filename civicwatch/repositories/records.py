from __future__ import annotations

from dataclasses import dataclass
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel
from sqlalchemy import case, select, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from civicwatch.database import Base, utcnow
from civicwatch.exceptions import InvalidRecordError, StorageError
from civicwatch.models import IDEAS, Idea, RecordKind

_BOOKKEEPING = {"id", "scraped_at", "modified_at", "first_seen_at"}


@dataclass(frozen=True)
class UpsertResult:
    internal_id: int
    is_new: bool
    has_changed: bool


def row_to_dict(row: Base) -> Dict[str, Any]:
    return {c.key: getattr(row, c.key) for c in row.__table__.columns}


class RecordRepository:
    """Current records of one kind plus their append-only history."""

    def __init__(self, db: AsyncSession, kind: RecordKind):
        self.db = db
        self.kind = kind
        self._writable = {
            c.key for c in kind.model.__table__.columns
        } - _BOOKKEEPING

    def _normalize(self, record: Mapping[str, Any] | BaseModel) -> Dict[str, Any]:
        raw = record.model_dump() if isinstance(record, BaseModel) else dict(record)
        values = {}
        for key, value in raw.items():
            if key not in self._writable:
                continue
            if isinstance(value, str):
                value = value.strip() or None
            values[key] = value
        if not values.get("external_id") or not values.get("title"):
            raise InvalidRecordError(
                "Record needs an external id and a title",
                {"kind": self.kind.name, "external_id": values.get("external_id")},
            )
        return values

    async def upsert(self, record: Mapping[str, Any] | BaseModel) -> UpsertResult:
        """
        Insert or update by external id.

        Changed content fields snapshot the previous values into history before
        the row is overwritten. scraped_at moves on every call; modified_at
        only when content changed.
        """
        values = self._normalize(record)
        model = self.kind.model
        now = utcnow()

        try:
            existing = (
                await self.db.execute(
                    select(model).where(model.external_id == values["external_id"])
                )
            ).scalar_one_or_none()

            if existing is None:
                row = model(**values, scraped_at=now, first_seen_at=now, modified_at=None)
                self.db.add(row)
                await self.db.flush()
                return UpsertResult(row.id, is_new=True, has_changed=False)

            if existing.detail_scraped and not values.get("detail_scraped"):
                # partial record; keep what the last full detail fetch stored
                for f in (*self.kind.detail_fields, "detail_scraped", "detail_scraped_at"):
                    values.pop(f, None)

            changed = [
                f for f in self.kind.content_fields
                if f in values and getattr(existing, f) != values[f]
            ]
            if changed:
                snapshot = {f: getattr(existing, f) for f in self.kind.snapshot_fields}
                self.db.add(
                    self.kind.history_model(
                        **snapshot,
                        **{self.kind.owner_column: existing.id},
                        changed_at=now,
                    )
                )
                for key, value in values.items():
                    setattr(existing, key, value)
                existing.modified_at = now
            existing.scraped_at = now
            await self.db.flush()
            return UpsertResult(existing.id, is_new=False, has_changed=bool(changed))
        except SQLAlchemyError as exc:
            raise StorageError(
                f"Upsert failed for {self.kind.name}/{values['external_id']}",
                {"error": str(exc)},
            ) from exc

    async def get_by_id(self, record_id: int) -> Optional[Base]:
        return await self.db.get(self.kind.model, record_id)

    async def get_by_external_id(self, external_id: str) -> Optional[Base]:
        model = self.kind.model
        return (
            await self.db.execute(select(model).where(model.external_id == external_id))
        ).scalar_one_or_none()

    async def history(self, record_id: int) -> List[Base]:
        hist = self.kind.history_model
        owner = getattr(hist, self.kind.owner_column)
        rows = await self.db.execute(
            select(hist).where(owner == record_id).order_by(hist.changed_at.desc(), hist.id.desc())
        )
        return list(rows.scalars().all())

    async def get_paginated(
        self,
        page: int,
        page_size: int,
        category: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Tuple[int, List[Base]]:
        model = self.kind.model
        base = select(model)
        count_q = select(func.count(model.id))
        if category:
            base = base.where(model.category == category)
            count_q = count_q.where(model.category == category)
        if status:
            base = base.where(model.status == status)
            count_q = count_q.where(model.status == status)

        total = (await self.db.execute(count_q)).scalar_one()
        rows = (
            await self.db.execute(
                base.order_by(model.scraped_at.desc(), model.id.desc())
                    .offset((page - 1) * page_size)
                    .limit(page_size)
            )
        ).scalars().all()
        return total, list(rows)

    async def latest(self, limit: int = 30) -> List[Base]:
        model = self.kind.model
        rows = await self.db.execute(
            select(model).order_by(model.id.desc()).limit(limit)
        )
        return list(rows.scalars().all())

    async def counts_by(self, column: str) -> List[Dict[str, Any]]:
        """Row counts grouped by one column, largest group first."""
        field = getattr(self.kind.model, column)
        rows = await self.db.execute(
            select(field, func.count(self.kind.model.id).label("count"))
            .group_by(field)
            .order_by(func.count(self.kind.model.id).desc(), field.asc())
        )
        return [{"value": value, "count": count} for value, count in rows.all()]

    async def stats(self, since: datetime) -> Dict[str, Any]:
        model = self.kind.model
        total, new, modified = (
            await self.db.execute(
                select(
                    func.count(model.id),
                    func.coalesce(func.sum(case((model.first_seen_at >= since, 1), else_=0)), 0),
                    func.coalesce(func.sum(case((model.modified_at >= since, 1), else_=0)), 0),
                )
            )
        ).one()
        return {
            "total": total,
            "new_since": new,
            "modified_since": modified,
            "by_category": await self.counts_by("category"),
            "by_status": await self.counts_by("status"),
        }


class IdeaRepository(RecordRepository):
    """Ideas plus the AI fields that can be filled in after the crawl."""

    def __init__(self, db: AsyncSession):
        super().__init__(db, IDEAS)

    async def hashtag_counts(self) -> List[Dict[str, Any]]:
        rows = await self.db.execute(select(Idea.ai_hashtags).where(Idea.ai_hashtags.is_not(None)))
        counts: Counter = Counter()
        for tags in rows.scalars():
            if isinstance(tags, list):
                counts.update(t for t in tags if isinstance(t, str))
        return [
            {"tag": tag, "count": count}
            for tag, count in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
        ]

    async def needing_enhancement(self, limit: int, force: bool = False) -> List[Idea]:
        query = select(Idea)
        if not force:
            query = query.where(
                or_(Idea.ai_title.is_(None), Idea.ai_summary.is_(None), Idea.ai_hashtags.is_(None))
            )
        rows = await self.db.execute(query.order_by(Idea.id.desc()).limit(limit))
        return list(rows.scalars().all())

    async def store_enhancement(
        self, idea: Idea, title: Optional[str], summary: str, hashtags: Sequence[str]
    ) -> Idea:
        idea.ai_title = title
        idea.ai_summary = summary
        idea.ai_hashtags = list(hashtags)
        await self.db.flush()
        return idea
