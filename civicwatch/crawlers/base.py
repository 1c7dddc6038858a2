"""
Per-source crawl orchestration.

A ``SourceCrawler`` walks a listing page by page, filters the summary rows,
completes them with detail fetches in small concurrent batches, persists
each item through the Record Store and publishes one progress snapshot per
page. Anything that escapes the per-item boundary (listing navigation,
browser launch) fails the whole run; the ScraperRun row and a terminal
``error`` snapshot record it either way.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

import structlog
from playwright.async_api import (
    Error as PlaywrightError,
    Page,
    TimeoutError as PlaywrightTimeout,
)
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from civicwatch.config import settings
from civicwatch.exceptions import FetchError, StorageError
from civicwatch.models import RecordKind
from civicwatch.repositories.records import RecordRepository, row_to_dict
from civicwatch.repositories.runs import RunRepository
from civicwatch.repositories.summaries import SummaryRepository
from civicwatch.schemas import RECORD_INPUTS, ProgressSnapshot
from civicwatch.services.browser import IMAGE_AND_STYLE, BrowserSession
from civicwatch.services.detail import DetailFetcher, DetailResult
from civicwatch.services.enrichment import EnrichmentClient
from civicwatch.services.extraction import ExtractionStrategy
from civicwatch.services.progress import ProgressHub

log = structlog.get_logger(__name__)

Item = Dict[str, Any]


class CrawlState(str, Enum):
    IDLE = "idle"
    PAGING = "paging"
    EXTRACTING = "extracting_summaries"
    FETCHING = "fetching_details"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class CrawlStats:
    items_scraped: int = 0
    items_new: int = 0
    items_updated: int = 0
    pages: int = 0
    success: bool = False
    error: Optional[str] = None
    duration_ms: int = 0
    run_id: Optional[int] = None

    @property
    def changed(self) -> bool:
        return bool(self.items_new or self.items_updated)


# ── Listing cursors ───────────────────────────────────────────────────────────

class ListingCursor:
    """Current listing view plus a way to move to the next one."""

    async def read(self) -> str:
        raise NotImplementedError

    async def advance(self) -> bool:
        """Move on; False when there is nothing further. Navigation errors raise."""
        raise NotImplementedError


class PagedListing(ListingCursor):
    def __init__(
        self,
        page: Page,
        *,
        row_selector: str = "article",
        next_selector: str = 'a:has-text("Nächste")',
        timeout_ms: Optional[int] = None,
    ) -> None:
        self.page = page
        self.row_selector = row_selector
        self.next_selector = next_selector
        self.timeout_ms = timeout_ms or settings.NAVIGATION_TIMEOUT_MS

    async def read(self) -> str:
        await self.page.wait_for_selector(self.row_selector, timeout=10_000)
        return await self.page.content()

    async def advance(self) -> bool:
        button = await self.page.query_selector(self.next_selector)
        if button is None:
            return False
        try:
            async with self.page.expect_navigation(wait_until="networkidle", timeout=self.timeout_ms):
                await button.click()
        except PlaywrightTimeout:
            # busy pages never go network-idle; settle for the DOM
            log.info("listing.networkidle.timeout", url=self.page.url)
            try:
                await self.page.wait_for_load_state("domcontentloaded", timeout=5_000)
            except PlaywrightError as exc:
                raise FetchError("Next listing page did not load", {"url": self.page.url}) from exc
        return True


class LoadMoreListing(ListingCursor):
    """Single page that grows each time its "load more" control is clicked."""

    def __init__(
        self,
        page: Page,
        *,
        button_selector: str = 'a:has-text("Mehr laden")',
        settle_seconds: float = 1.5,
    ) -> None:
        self.page = page
        self.button_selector = button_selector
        self.settle_seconds = settle_seconds

    async def read(self) -> str:
        return await self.page.content()

    async def advance(self) -> bool:
        button = await self.page.query_selector(self.button_selector)
        if button is None:
            return False
        await button.click()
        await asyncio.sleep(self.settle_seconds)
        return True


# ── Crawler ───────────────────────────────────────────────────────────────────

class SourceCrawler:
    key: str = ""
    name: str = ""
    kind: RecordKind
    listing_url: str = ""
    detail_anchor: str = "h1"
    detail_block: Sequence[str] = IMAGE_AND_STYLE
    default_concurrency: int = settings.DETAIL_CONCURRENCY
    # fields the detail page always wins on, regardless of length
    detail_preferred: frozenset = frozenset()
    summarize_on_change: bool = True

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker,
        hub: ProgressHub,
        enricher: Optional[EnrichmentClient] = None,
        scrape_details: bool = True,
        max_pages: Optional[int] = None,
        concurrency: Optional[int] = None,
        stale_page_limit: Optional[int] = None,
        batch_pause: Optional[float] = None,
        page_pause: Optional[float] = None,
        browser_factory: Callable[[], BrowserSession] = BrowserSession,
    ) -> None:
        self.session_factory = session_factory
        self.hub = hub
        self.enricher = enricher
        self.scrape_details = scrape_details
        self.max_pages = max_pages if max_pages is not None else settings.MAX_PAGES
        self.concurrency = max(1, concurrency or self.default_concurrency)
        self.stale_page_limit = stale_page_limit or settings.STALE_PAGE_LIMIT
        self.batch_pause = settings.BATCH_PAUSE_SECONDS if batch_pause is None else batch_pause
        self.page_pause = settings.PAGE_PAUSE_SECONDS if page_pause is None else page_pause
        self.browser_factory = browser_factory
        self.record_model = RECORD_INPUTS[self.kind.name]
        self._state = CrawlState.IDLE

    @property
    def state(self) -> CrawlState:
        return self._state

    @state.setter
    def state(self, value: CrawlState) -> None:
        if value is not self._state:
            log.debug("crawl.state", module=self.key, state=value.value)
        self._state = value

    # ── Source hooks ──────────────────────────────────────────────────────────

    async def open_listing(self, browser: BrowserSession) -> ListingCursor:
        page = await browser.new_page()
        await page.goto(self.listing_url, wait_until="networkidle", timeout=settings.NAVIGATION_TIMEOUT_MS)
        log.info("crawl.listing.loaded", module=self.key, url=self.listing_url)
        return PagedListing(page)

    def parse_listing(self, html: str) -> List[Item]:
        raise NotImplementedError

    def extraction_strategy(self) -> ExtractionStrategy:
        raise NotImplementedError

    def detail_url(self, summary: Item) -> Optional[str]:
        return summary.get("url")

    async def enrich(self, item: Item) -> Item:
        return item

    def build_detail_fetcher(self, browser: BrowserSession) -> DetailFetcher:
        return DetailFetcher(
            browser,
            self.extraction_strategy(),
            anchor=self.detail_anchor,
            block=self.detail_block,
        )

    def merge_detail(self, summary: Item, detail: DetailResult) -> Item:
        merged = dict(summary)
        for key, value in detail.fields.items():
            if value in (None, "", [], {}):
                continue
            current = merged.get(key)
            if (
                key in self.detail_preferred
                or current in (None, "")
                or not isinstance(value, str)
                or not isinstance(current, str)
                or len(value) > len(current)
            ):
                merged[key] = value
        merged["detail_scraped"] = detail.detail_scraped
        merged["detail_scraped_at"] = detail.detail_scraped_at
        return merged

    # ── Run ───────────────────────────────────────────────────────────────────

    async def run(self, triggered_by: str = "manual") -> CrawlStats:
        t0 = time.monotonic()
        stats = CrawlStats()
        self.state = CrawlState.IDLE
        stats.run_id = await self._start_run(triggered_by)
        self._publish("running", stats, current_page=0, message="Starting browser")
        log.info("crawl.started", module=self.key, run_id=stats.run_id, triggered_by=triggered_by)

        try:
            async with self.browser_factory() as browser:
                await self._crawl(browser, stats)
        except Exception as exc:
            self.state = CrawlState.FAILED
            stats.error = str(exc) or exc.__class__.__name__
            log.error("crawl.failed", module=self.key, run_id=stats.run_id,
                      pages=stats.pages, error=stats.error)
        else:
            self.state = CrawlState.DONE
            stats.success = True

        stats.duration_ms = int((time.monotonic() - t0) * 1000)
        try:
            await self._finish_run(stats)
        except SQLAlchemyError as exc:
            self.state = CrawlState.FAILED
            stats.success = False
            stats.error = stats.error or f"Could not record run: {exc}"
            log.error("crawl.finish_failed", module=self.key, run_id=stats.run_id, error=str(exc))

        try:
            if stats.success:
                await self._maybe_summarize(stats)
        finally:
            self._publish_terminal(stats)
        return stats

    def _publish_terminal(self, stats: CrawlStats) -> None:
        if stats.success:
            self._publish(
                "completed", stats,
                message=(
                    f"Completed: {stats.items_scraped} items "
                    f"({stats.items_new} new, {stats.items_updated} updated)"
                ),
            )
            log.info("crawl.completed", module=self.key, run_id=stats.run_id,
                     scraped=stats.items_scraped, new=stats.items_new,
                     updated=stats.items_updated, pages=stats.pages, ms=stats.duration_ms)
        else:
            self._publish("error", stats, error=stats.error)

    async def _crawl(self, browser: BrowserSession, stats: CrawlStats) -> None:
        self.state = CrawlState.PAGING
        listing = await self.open_listing(browser)
        fetcher = self.build_detail_fetcher(browser) if self.scrape_details else None

        seen: Set[str] = set()
        stale_pages = 0
        page_no = 1
        while True:
            self.state = CrawlState.EXTRACTING
            html = await listing.read()
            summaries = self._fresh_summaries(self.parse_listing(html), seen)
            log.info("crawl.page.read", module=self.key, page=page_no, items=len(summaries))

            stale_pages = 0 if summaries else stale_pages + 1
            await self._process_page(summaries, fetcher, stats)
            stats.pages = page_no
            self._publish(
                "running", stats, current_page=page_no,
                message=f"Page {page_no} done",
            )

            if self.max_pages and page_no >= self.max_pages:
                log.info("crawl.max_pages", module=self.key, max_pages=self.max_pages)
                break
            if stale_pages >= self.stale_page_limit:
                log.info("crawl.caught_up", module=self.key, stale_pages=stale_pages)
                break

            self.state = CrawlState.PAGING
            if not await listing.advance():
                break
            page_no += 1
            if self.page_pause:
                await asyncio.sleep(self.page_pause)

    def _fresh_summaries(self, rows: List[Item], seen: Set[str]) -> List[Item]:
        fresh, dropped = [], 0
        for row in rows:
            ext_id = row.get("external_id")
            if not ext_id or not row.get("title"):
                dropped += 1
                continue
            if ext_id in seen:
                continue
            seen.add(ext_id)
            fresh.append(row)
        if dropped:
            log.debug("crawl.rows.dropped", module=self.key, count=dropped)
        return fresh

    async def _process_page(
        self, summaries: List[Item], fetcher: Optional[DetailFetcher], stats: CrawlStats
    ) -> None:
        for start in range(0, len(summaries), self.concurrency):
            batch = summaries[start:start + self.concurrency]
            self.state = CrawlState.FETCHING
            items = await asyncio.gather(*(self._complete(fetcher, s) for s in batch))

            self.state = CrawlState.PERSISTING
            for item in items:
                await self._persist(item, stats)

            if self.batch_pause and start + self.concurrency < len(summaries):
                await asyncio.sleep(self.batch_pause)

    async def _complete(self, fetcher: Optional[DetailFetcher], summary: Item) -> Item:
        item = dict(summary)
        try:
            url = self.detail_url(summary)
            if fetcher is not None and url:
                item = self.merge_detail(item, await fetcher.fetch(url))
        except Exception as exc:
            log.warning("crawl.item.detail_failed", module=self.key,
                        external_id=summary.get("external_id"), error=str(exc))
            return dict(summary)

        if self.enricher is not None and self.scrape_details:
            try:
                item = await self.enrich(item)
            except Exception as exc:
                log.warning("crawl.item.enrich_failed", module=self.key,
                            external_id=summary.get("external_id"), error=str(exc))
        return item

    async def _persist(self, item: Item, stats: CrawlStats) -> None:
        try:
            record = self.record_model.model_validate(item)
        except ValidationError as exc:
            log.warning("crawl.item.invalid", module=self.key,
                        external_id=item.get("external_id"), error=str(exc))
            return

        try:
            async with self.session_factory() as db:
                result = await RecordRepository(db, self.kind).upsert(record)
                await db.commit()
        except (StorageError, SQLAlchemyError) as exc:
            log.warning("crawl.item.persist_failed", module=self.key,
                        external_id=record.external_id, error=str(exc))
            return

        stats.items_scraped += 1
        if result.is_new:
            stats.items_new += 1
        elif result.has_changed:
            stats.items_updated += 1

    # ── Bookkeeping ───────────────────────────────────────────────────────────

    async def _start_run(self, triggered_by: str) -> int:
        async with self.session_factory() as db:
            run_id = await RunRepository(db).start(self.key, triggered_by)
            await db.commit()
        return run_id

    async def _finish_run(self, stats: CrawlStats) -> None:
        async with self.session_factory() as db:
            await RunRepository(db).finish(
                stats.run_id,
                items_scraped=stats.items_scraped,
                items_new=stats.items_new,
                items_updated=stats.items_updated,
                success=stats.success,
                error=stats.error,
            )
            await db.commit()

    async def _maybe_summarize(self, stats: CrawlStats) -> None:
        if self.enricher is None or not self.summarize_on_change:
            return
        if stats.items_new <= settings.SUMMARY_MIN_NEW and stats.items_updated <= settings.SUMMARY_MIN_UPDATED:
            return
        try:
            async with self.session_factory() as db:
                rows = await RecordRepository(db, self.kind).latest(30)
                text = await self.enricher.summarize(self.key, [row_to_dict(r) for r in rows])
                await SummaryRepository(db).save(
                    self.key, text, len(rows), valid_hours=settings.SUMMARY_VALID_HOURS
                )
                await db.commit()
            log.info("crawl.summary.saved", module=self.key, items=len(rows))
        except Exception as exc:
            log.warning("crawl.summary.failed", module=self.key, error=str(exc))

    def _publish(self, status: str, stats: CrawlStats, **extra: Any) -> None:
        self.hub.publish(
            ProgressSnapshot(
                module_key=self.key,
                status=status,
                items_scraped=stats.items_scraped,
                items_new=stats.items_new,
                items_updated=stats.items_updated,
                **extra,
            )
        )
