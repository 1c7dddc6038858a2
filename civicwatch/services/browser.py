"""
Headless browser access for crawlers.

``BrowserSession`` owns one Playwright browser process per crawl. Listing
traversal uses a long-lived page on the default context; every detail
fetch gets its own ``BrowserContext`` (cookies, storage, DOM) through
``isolated_page()``, which is closed on every exit path.

    async with BrowserSession() as browser:
        listing = await browser.new_page()
        async with browser.isolated_page(block=IMAGE_AND_STYLE) as page:
            await page.goto(url)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from types import TracebackType
from typing import Any, AsyncIterator, Dict, Optional, Sequence, Type

import structlog
from playwright.async_api import (
    async_playwright,
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Route,
)

from civicwatch.config import settings

log = structlog.get_logger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36"
)

# Flags that keep Chromium stable inside containers
CONTAINER_LAUNCH_ARGS = (
    "--disable-blink-features=AutomationControlled",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-software-rasterizer",
    "--disable-extensions",
)

IMAGE_AND_STYLE = ("**/*.{png,jpg,jpeg,gif,svg,css,woff,woff2}",)
STYLE_ONLY = ("**/*.{css,woff,woff2}",)


async def _abort(route: Route) -> None:
    await route.abort()


class BrowserSession:
    def __init__(
        self,
        *,
        headless: Optional[bool] = None,
        browser_type: str = "chromium",
        timeout_ms: Optional[int] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        locale: str = "de-DE",
        launch_args: Sequence[str] = CONTAINER_LAUNCH_ARGS,
        extra_context_kwargs: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.headless = settings.BROWSER_HEADLESS if headless is None else headless
        self.browser_type = browser_type.lower()
        self.timeout_ms = timeout_ms or settings.NAVIGATION_TIMEOUT_MS
        self.user_agent = user_agent
        self.locale = locale
        self.launch_args = list(launch_args)
        self._context_kwargs = extra_context_kwargs or {}

        self._playwright = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None

    async def __aenter__(self) -> "BrowserSession":
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        await self.stop()

    def _context_options(self) -> Dict[str, Any]:
        return {
            "viewport": {"width": 1280, "height": 720},
            "user_agent": self.user_agent,
            "locale": self.locale,
            "extra_http_headers": {"Accept-Language": "de-DE,de;q=0.9"},
            **self._context_kwargs,
        }

    async def start(self) -> None:
        if self._browser:
            return
        self._playwright = await async_playwright().start()
        try:
            launcher = getattr(self._playwright, self.browser_type)
            self._browser = await launcher.launch(
                headless=self.headless,
                args=self.launch_args,
                timeout=60_000,
            )
            self._context = await self._browser.new_context(**self._context_options())
        except Exception:
            await self.stop()
            raise
        log.info("browser.started", browser=self.browser_type, headless=self.headless)

    async def stop(self) -> None:
        """Close context, browser and driver; safe to call more than once."""
        try:
            if self._context:
                await self._context.close()
            if self._browser:
                await self._browser.close()
        except PlaywrightError as exc:
            log.warning("browser.close.failed", error=str(exc))
        finally:
            self._context = None
            self._browser = None
            if self._playwright:
                await self._playwright.stop()
                self._playwright = None
                log.info("browser.stopped")

    async def new_page(self) -> Page:
        """Page on the shared default context, for listing traversal."""
        if not self._context:
            await self.start()
        page = await self._context.new_page()
        page.set_default_timeout(self.timeout_ms)
        return page

    @asynccontextmanager
    async def isolated_page(
        self,
        *,
        block: Sequence[str] = (),
        timeout_ms: Optional[int] = None,
    ) -> AsyncIterator[Page]:
        """Page on a fresh context that is torn down when the block exits."""
        if not self._browser:
            await self.start()
        context = await self._browser.new_context(**self._context_options())
        try:
            page = await context.new_page()
            page.set_default_timeout(timeout_ms or self.timeout_ms)
            for pattern in block:
                await page.route(pattern, _abort)
            yield page
        finally:
            try:
                await context.close()
            except PlaywrightError as exc:
                log.warning("browser.context.close.failed", error=str(exc))
