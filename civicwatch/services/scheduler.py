"""
Module scheduler.

Every tick walks the enabled modules whose ``next_run`` has passed, stamps
each one (``last_run = now``, ``next_run = now + interval``) in a single
conditional UPDATE and only then starts its crawl. Modules run one after
another inside a tick. Manual triggers go through the same stamp before
running and share the in-process ``running`` set with the tick loop, so
one module key never has two crawls in flight.
"""
from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Set

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import async_sessionmaker

from civicwatch.config import settings
from civicwatch.crawlers.base import CrawlStats, SourceCrawler
from civicwatch.database import utcnow
from civicwatch.exceptions import (
    ConfigurationError,
    ModuleBusyError,
    ModuleDisabledError,
)
from civicwatch.models import ModuleConfig
from civicwatch.repositories.modules import ModuleRepository
from civicwatch.schemas import RunResult
from civicwatch.services.enrichment import EnrichmentClient
from civicwatch.services.progress import ProgressHub

log = structlog.get_logger(__name__)

CrawlerFactory = Callable[..., SourceCrawler]
ChangeHook = Callable[[str], Awaitable[None]]


class Scheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        hub: ProgressHub,
        crawlers: Mapping[str, CrawlerFactory],
        *,
        enricher: Optional[EnrichmentClient] = None,
        on_records_changed: Optional[ChangeHook] = None,
        tick_seconds: Optional[int] = None,
    ) -> None:
        self.session_factory = session_factory
        self.hub = hub
        self.crawlers: Dict[str, CrawlerFactory] = dict(crawlers)
        self.enricher = enricher
        self.on_records_changed = on_records_changed
        self.tick_seconds = tick_seconds or settings.SCHEDULER_TICK_SECONDS
        self._running: Set[str] = set()
        self._lock = asyncio.Lock()
        self._aps: Optional[AsyncIOScheduler] = None

    # ── Queries ───────────────────────────────────────────────────────────────

    def is_running(self, key: str) -> bool:
        return key in self._running

    @property
    def running_modules(self) -> List[str]:
        return sorted(self._running)

    async def due_modules(self, now: Optional[datetime] = None) -> List[ModuleConfig]:
        async with self.session_factory() as db:
            return await ModuleRepository(db).due(now or utcnow())

    # ── Running ───────────────────────────────────────────────────────────────

    async def run_module(self, key: str, triggered_by: str = "manual") -> RunResult:
        """
        Run one module now.

        Raises NotFoundError for unknown keys, ModuleDisabledError when the
        module is switched off and ModuleBusyError while a crawl of the same
        key is in flight. Nothing is stamped in any of those cases.
        """
        async with self.session_factory() as db:
            module = await ModuleRepository(db).require(key)
        if not module.enabled:
            raise ModuleDisabledError(f"Module {key} is disabled", {"module": key})
        self._factory(key)

        await self._reserve(key)
        try:
            now = utcnow()
            async with self.session_factory() as db:
                next_run = await ModuleRepository(db).stamp(module, now)
                await db.commit()
            if next_run is None:
                raise ModuleDisabledError(f"Module {key} is disabled", {"module": key})
            log.info("scheduler.module.stamped", module=key, next_run=next_run.isoformat(),
                     triggered_by=triggered_by)
            stats = await self._crawl(key, triggered_by)
        finally:
            self._release(key)
        return self._result(key, stats, now, next_run)

    async def tick(self, now: Optional[datetime] = None) -> List[RunResult]:
        """Claim and run every due module, one at a time."""
        now = now or utcnow()
        results: List[RunResult] = []
        for module in await self.due_modules(now):
            key = module.key
            if key not in self.crawlers:
                log.warning("scheduler.module.unregistered", module=key)
                continue
            try:
                await self._reserve(key)
            except ModuleBusyError:
                log.info("scheduler.module.busy", module=key)
                continue
            try:
                async with self.session_factory() as db:
                    next_run = await ModuleRepository(db).claim_due(module, now)
                    await db.commit()
                if next_run is None:
                    log.info("scheduler.module.claimed_elsewhere", module=key)
                    continue
                log.info("scheduler.module.stamped", module=key, next_run=next_run.isoformat(),
                         triggered_by="scheduler")
                stats = await self._crawl(key, "scheduler")
                results.append(self._result(key, stats, now, next_run))
            except Exception as exc:
                log.error("scheduler.module.failed", module=key, error=str(exc))
            finally:
                self._release(key)
        log.info("scheduler.tick.done", modules_run=len(results))
        return results

    async def _crawl(self, key: str, triggered_by: str) -> CrawlStats:
        crawler = self._factory(key)(
            session_factory=self.session_factory,
            hub=self.hub,
            enricher=self.enricher,
        )
        stats = await crawler.run(triggered_by)
        if stats.changed and self.on_records_changed is not None:
            await self.on_records_changed(crawler.kind.name)
        return stats

    def _factory(self, key: str) -> CrawlerFactory:
        try:
            return self.crawlers[key]
        except KeyError:
            raise ConfigurationError(f"No crawler registered for {key}", {"module": key}) from None

    async def _reserve(self, key: str) -> None:
        async with self._lock:
            if key in self._running:
                raise ModuleBusyError(f"Module {key} is already running", {"module": key})
            self._running.add(key)

    def _release(self, key: str) -> None:
        self._running.discard(key)

    @staticmethod
    def _result(key: str, stats: CrawlStats, last_run: datetime, next_run: datetime) -> RunResult:
        return RunResult(
            module_key=key,
            success=stats.success,
            items_scraped=stats.items_scraped,
            items_new=stats.items_new,
            items_updated=stats.items_updated,
            duration_ms=stats.duration_ms,
            error=stats.error,
            last_run=last_run,
            next_run=next_run,
        )

    # ── Background loop ───────────────────────────────────────────────────────

    async def _scheduled_tick(self) -> None:
        try:
            await self.tick()
        except Exception as exc:
            log.error("scheduler.tick.failed", error=str(exc))

    def start(self) -> None:
        if not settings.SCHEDULER_ENABLED:
            log.info("scheduler.disabled")
            return

        self._aps = AsyncIOScheduler()
        self._aps.add_job(
            self._scheduled_tick,
            trigger=IntervalTrigger(seconds=self.tick_seconds),
            id="module_tick",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._aps.start()
        log.info("scheduler.started", tick_seconds=self.tick_seconds)

    def stop(self) -> None:
        if self._aps and self._aps.running:
            self._aps.shutdown(wait=False)
            log.info("scheduler.stopped")
        self._aps = None

    @property
    def running(self) -> bool:
        return bool(self._aps and self._aps.running)
