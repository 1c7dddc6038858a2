from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Sequence

import structlog

from civicwatch.config import settings
from civicwatch.database import utcnow
from civicwatch.exceptions import ExtractionError
from civicwatch.services.browser import BrowserSession
from civicwatch.services.extraction import ExtractionStrategy
from civicwatch.services.retry import linear_backoff, retry_async

log = structlog.get_logger(__name__)


@dataclass
class DetailResult:
    fields: Dict[str, Any] = field(default_factory=dict)
    detail_scraped: bool = False
    detail_scraped_at: Optional[datetime] = None
    error: Optional[str] = None


class DetailFetcher:
    """
    Loads one record's detail page in an isolated browser context and
    extracts it with the source's strategy.

    Failures are retried ``retries`` more times with a linearly growing
    pause. After the last attempt the fetch degrades to an empty result
    flagged ``detail_scraped=False`` instead of raising.
    """

    def __init__(
        self,
        browser: BrowserSession,
        strategy: ExtractionStrategy,
        *,
        anchor: str = "h1",
        block: Sequence[str] = (),
        timeout_ms: Optional[int] = None,
        anchor_timeout_ms: Optional[int] = None,
        retries: Optional[int] = None,
        delay_unit: Optional[float] = None,
    ) -> None:
        self.browser = browser
        self.strategy = strategy
        self.anchor = anchor
        self.block = tuple(block)
        self.timeout_ms = timeout_ms or settings.DETAIL_TIMEOUT_MS
        self.anchor_timeout_ms = anchor_timeout_ms or settings.ANCHOR_TIMEOUT_MS
        self.retries = settings.DETAIL_RETRIES if retries is None else retries
        self.delay_unit = settings.RETRY_DELAY_SECONDS if delay_unit is None else delay_unit

    async def _fetch_once(self, url: str) -> Dict[str, Any]:
        async with self.browser.isolated_page(block=self.block, timeout_ms=self.timeout_ms) as page:
            await page.goto(url, wait_until="domcontentloaded", timeout=self.timeout_ms)
            await page.wait_for_selector(self.anchor, timeout=self.anchor_timeout_ms)
            fields = await self.strategy.extract(page, url)
        if not fields:
            raise ExtractionError("Detail page yielded no fields", {"url": url})
        return fields

    async def fetch(self, url: str) -> DetailResult:
        try:
            fields = await retry_async(
                lambda: self._fetch_once(url),
                attempts=self.retries + 1,
                wait=linear_backoff(self.delay_unit),
                label=url,
            )
        except Exception as exc:
            log.warning(
                "detail.failed",
                url=url,
                attempts=self.retries + 1,
                strategy=self.strategy.name,
                error=str(exc),
            )
            return DetailResult(detail_scraped=False, error=str(exc))
        return DetailResult(fields=fields, detail_scraped=True, detail_scraped_at=utcnow())
