from contextlib import asynccontextmanager

import pytest

from civicwatch.services.detail import DetailFetcher
from civicwatch.services.extraction import (
    ChainedExtraction,
    ExtractionStrategy,
    SelectorExtraction,
    clean_page_text,
)


class FakePage:
    def __init__(self, outcome):
        self.outcome = outcome
        self.visited = []

    async def goto(self, url, wait_until=None, timeout=None):
        self.visited.append(url)
        if self.outcome == "nav-timeout":
            raise TimeoutError("Timeout 15000ms exceeded")

    async def wait_for_selector(self, selector, timeout=None):
        if self.outcome == "no-anchor":
            raise TimeoutError(f"waiting for {selector}")

    async def content(self):
        return "<html><body><h1>Parkbank fehlt</h1><p>Am Teich</p></body></html>"


class FakeBrowser:
    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.opened = 0
        self.closed = 0
        self.blocked = []

    @asynccontextmanager
    async def isolated_page(self, block=(), timeout_ms=None):
        self.opened += 1
        self.blocked.append(tuple(block))
        try:
            yield FakePage(self.outcomes.pop(0))
        finally:
            self.closed += 1


class StaticFields(ExtractionStrategy):
    name = "static"

    def __init__(self, fields):
        self.fields = fields

    async def extract(self, page, url):
        return self.fields


def _fetcher(browser, strategy=None, retries=2):
    return DetailFetcher(
        browser,
        strategy or StaticFields({"title": "Parkbank fehlt"}),
        anchor="h1",
        block=("**/*.css",),
        retries=retries,
        delay_unit=0,
    )


@pytest.mark.asyncio
async def test_success_on_first_attempt():
    browser = FakeBrowser(["ok"])
    result = await _fetcher(browser).fetch("https://example.test/node/1")

    assert result.detail_scraped is True
    assert result.detail_scraped_at is not None
    assert result.fields == {"title": "Parkbank fehlt"}
    assert browser.opened == browser.closed == 1
    assert browser.blocked == [("**/*.css",)]


@pytest.mark.asyncio
async def test_transient_failures_are_retried():
    browser = FakeBrowser(["nav-timeout", "no-anchor", "ok"])
    result = await _fetcher(browser).fetch("https://example.test/node/1")

    assert result.detail_scraped is True
    assert browser.opened == 3


@pytest.mark.asyncio
async def test_exhausted_retries_degrade_to_partial_result():
    browser = FakeBrowser(["nav-timeout"] * 3)
    result = await _fetcher(browser).fetch("https://example.test/node/1")

    assert result.detail_scraped is False
    assert result.fields == {}
    assert "Timeout" in result.error
    # every isolated context was closed, including the failed ones
    assert browser.opened == browser.closed == 3


@pytest.mark.asyncio
async def test_empty_extraction_counts_as_failure():
    browser = FakeBrowser(["ok", "ok"])
    result = await _fetcher(browser, StaticFields(None), retries=1).fetch("https://example.test/x")

    assert result.detail_scraped is False
    assert browser.opened == 2


@pytest.mark.asyncio
async def test_chained_extraction_falls_through_to_selectors():
    def parse(html, url):
        return {"title": "from selectors", "url": url}

    chain = ChainedExtraction([StaticFields(None), SelectorExtraction(parse)])
    result = await _fetcher(FakeBrowser(["ok"]), chain).fetch("https://example.test/e/1")

    assert result.fields == {"title": "from selectors", "url": "https://example.test/e/1"}


def test_clean_page_text_strips_chrome_and_collapses_whitespace():
    html = """
    <html><head><style>h1 {color: red}</style></head>
    <body>
      <header>Menü</header><nav>Start | Kontakt</nav>
      <h1>Sommerfest</h1>
      <p>Am   18. Oktober
         2025</p>
      <script>track()</script>
      <footer>Impressum</footer>
    </body></html>
    """
    assert clean_page_text(html) == "Sommerfest Am 18. Oktober 2025"
