from __future__ import annotations

import re
from typing import Any, Callable, Dict, Optional, Sequence

import structlog
from playwright.async_api import Page
from selectolax.lexbor import LexborHTMLParser

from civicwatch.exceptions import ExtractionError
from civicwatch.services.enrichment import EnrichmentClient, MAX_TEXT_CHARS

log = structlog.get_logger(__name__)

Fields = Dict[str, Any]
HtmlParser = Callable[[str, str], Optional[Fields]]
ResultMapper = Callable[[Dict[str, Any], str], Optional[Fields]]

_NOISE = "script, style, nav, header, footer, noscript"


def clean_page_text(html: str) -> str:
    """Visible body text with page chrome removed and whitespace collapsed."""
    tree = LexborHTMLParser(html)
    for node in tree.css(_NOISE):
        node.decompose()
    body = tree.body
    text = body.text(separator=" ") if body is not None else ""
    return re.sub(r"\s+", " ", text).strip()


class ExtractionStrategy:
    """Turns a loaded detail page into a field dict, or None when it cannot."""

    name = "base"

    async def extract(self, page: Page, url: str) -> Optional[Fields]:
        raise NotImplementedError


class SelectorExtraction(ExtractionStrategy):
    """Fixed-selector parsing of the rendered HTML."""

    name = "selectors"

    def __init__(self, parser: HtmlParser):
        self.parser = parser

    async def extract(self, page: Page, url: str) -> Optional[Fields]:
        return self.parser(await page.content(), url)


class TextServiceExtraction(ExtractionStrategy):
    """Hands cleaned page text to the enrichment service and maps its JSON."""

    name = "text-service"

    def __init__(self, client: EnrichmentClient, mapper: ResultMapper):
        self.client = client
        self.mapper = mapper

    async def extract(self, page: Page, url: str) -> Optional[Fields]:
        text = clean_page_text(await page.content())[:MAX_TEXT_CHARS]
        if not text:
            return None
        result = await self.client.extract_event(text, url)
        if not result:
            return None
        return self.mapper(result, url)


class ChainedExtraction(ExtractionStrategy):
    """First strategy that yields a non-empty result wins."""

    name = "chained"

    def __init__(self, strategies: Sequence[ExtractionStrategy]):
        if not strategies:
            raise ValueError("ChainedExtraction needs at least one strategy")
        self.strategies = list(strategies)

    async def extract(self, page: Page, url: str) -> Optional[Fields]:
        for strategy in self.strategies:
            fields = await strategy.extract(page, url)
            if fields:
                return fields
            log.debug("extraction.fallthrough", strategy=strategy.name, url=url)
        raise ExtractionError("No extraction strategy produced a result", {"url": url})
