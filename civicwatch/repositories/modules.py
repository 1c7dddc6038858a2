from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, List, Mapping, Optional

import structlog
from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from civicwatch.config import INTERVAL_FLOOR_MINUTES, settings
from civicwatch.database import utcnow
from civicwatch.exceptions import ConfigurationError, NotFoundError
from civicwatch.models import ModuleConfig

log = structlog.get_logger(__name__)


class ModuleRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def seed(self, defaults: Iterable[Mapping]) -> int:
        """Insert module rows that do not exist yet; existing rows keep operator edits."""
        existing = set(
            (await self.db.execute(select(ModuleConfig.key))).scalars().all()
        )
        added = 0
        for default in defaults:
            if default["key"] in existing:
                continue
            self.db.add(
                ModuleConfig(
                    key=default["key"],
                    name=default["name"],
                    description=default.get("description"),
                    enabled=default.get("enabled", True),
                    interval_minutes=default["interval_minutes"],
                )
            )
            added += 1
            log.info("module.seeded", module=default["key"])
        await self.db.flush()
        return added

    async def list_all(self) -> List[ModuleConfig]:
        rows = await self.db.execute(select(ModuleConfig).order_by(ModuleConfig.name.asc()))
        return list(rows.scalars().all())

    async def get(self, key: str) -> Optional[ModuleConfig]:
        return (
            await self.db.execute(
                select(ModuleConfig)
                .where(ModuleConfig.key == key)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()

    async def require(self, key: str) -> ModuleConfig:
        module = await self.get(key)
        if module is None:
            raise NotFoundError(f"Module {key} not found", {"module": key})
        return module

    async def update_settings(
        self,
        key: str,
        *,
        enabled: Optional[bool] = None,
        interval_minutes: Optional[int] = None,
        min_interval: Optional[int] = None,
    ) -> ModuleConfig:
        min_interval = max(min_interval or settings.MIN_INTERVAL_MINUTES, INTERVAL_FLOOR_MINUTES)
        if interval_minutes is not None and interval_minutes < min_interval:
            raise ConfigurationError(
                f"interval_minutes must be >= {min_interval}",
                {"module": key, "interval_minutes": interval_minutes},
            )
        module = await self.require(key)
        if enabled is not None:
            module.enabled = enabled
        if interval_minutes is not None:
            module.interval_minutes = interval_minutes
        module.updated_at = utcnow()
        await self.db.flush()
        return module

    async def due(self, now: Optional[datetime] = None) -> List[ModuleConfig]:
        now = now or utcnow()
        rows = await self.db.execute(
            select(ModuleConfig)
            .where(
                ModuleConfig.enabled.is_(True),
                or_(ModuleConfig.next_run.is_(None), ModuleConfig.next_run <= now),
            )
            .order_by(ModuleConfig.next_run.asc().nulls_first(), ModuleConfig.key.asc())
        )
        return list(rows.scalars().all())

    async def claim_due(self, module: ModuleConfig, now: datetime) -> Optional[datetime]:
        """
        Stamp last_run/next_run in one conditional UPDATE.

        Only succeeds while the module is still enabled and due, so two
        callers racing on the same tick cannot both claim it. Returns the
        new next_run, or None when someone else got there first.
        """
        next_run = now + timedelta(minutes=module.interval_minutes)
        result = await self.db.execute(
            update(ModuleConfig)
            .where(
                ModuleConfig.key == module.key,
                ModuleConfig.enabled.is_(True),
                or_(ModuleConfig.next_run.is_(None), ModuleConfig.next_run <= now),
            )
            .values(last_run=now, next_run=next_run, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return next_run if result.rowcount == 1 else None

    async def stamp(self, module: ModuleConfig, now: datetime) -> Optional[datetime]:
        """Unconditional stamp for manual triggers; still refuses disabled modules."""
        next_run = now + timedelta(minutes=module.interval_minutes)
        result = await self.db.execute(
            update(ModuleConfig)
            .where(ModuleConfig.key == module.key, ModuleConfig.enabled.is_(True))
            .values(last_run=now, next_run=next_run, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return next_run if result.rowcount == 1 else None
