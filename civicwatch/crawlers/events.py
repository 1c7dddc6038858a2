"""Regional event calendar; a single growing listing with a "load more" button."""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

import structlog
from selectolax.lexbor import LexborHTMLParser

from civicwatch.config import settings
from civicwatch.crawlers.base import Item, ListingCursor, LoadMoreListing, SourceCrawler
from civicwatch.crawlers.parsing import (
    absolute_url,
    node_text,
    parse_german_date,
    parse_time_range,
)
from civicwatch.models import EVENTS
from civicwatch.services.browser import IMAGE_AND_STYLE, BrowserSession
from civicwatch.services.extraction import (
    ChainedExtraction,
    ExtractionStrategy,
    SelectorExtraction,
    TextServiceExtraction,
)

log = structlog.get_logger(__name__)

SITE = "https://braunschweig.die-region.de/"
EVENT_LINK = 'a[href*="/veranstaltungen-detailseite/event/"]'
EVENT_ID_RE = re.compile(r"/event/(\d+)/")
FREE_RE = re.compile(r"kostenlos|frei", re.I)
DEFAULT_CITY = "Braunschweig"

DATE_SELECTORS = (".event-date", '[class*="date"]', ".article-date", "time")
DESCRIPTION_SELECTORS = (".event-description", '[class*="description"]', ".article-text", "article p")
VENUE_SELECTORS = (".event-location", '[class*="location"]', '[class*="venue"]')
PRICE_SELECTORS = (".event-price", '[class*="price"]', '[class*="eintritt"]')


def parse_event_listing(html: str) -> List[Item]:
    rows: List[Item] = []
    seen = set()
    for link in LexborHTMLParser(html).css(EVENT_LINK):
        href = link.attributes.get("href") or ""
        match = EVENT_ID_RE.search(href)
        if not match or match.group(1) in seen:
            continue
        seen.add(match.group(1))
        img = link.css_first("img")
        title = (
            node_text(link)
            or (img.attributes.get("alt") if img is not None else None)
            or link.attributes.get("title")
            or ""
        )
        rows.append({
            "external_id": match.group(1),
            "title": title.strip(),
            "url": absolute_url(SITE, href),
            "status": "active",
        })
    return rows


def _first_text(tree: LexborHTMLParser, selectors, min_length: int = 3) -> str:
    text = ""
    for selector in selectors:
        node = tree.css_first(selector)
        text = node_text(node)
        if len(text) > min_length:
            return text
    return text


def split_venue(text: str) -> Dict[str, Optional[str]]:
    """'Name, Street 1, 38100, City' -> venue fields; the city defaults to Braunschweig."""
    parts = [p.strip() for p in text.split(",")] if text else []
    parts += [""] * (4 - len(parts))
    return {
        "venue_name": parts[0] or None,
        "venue_address": parts[1] or None,
        "venue_postcode": parts[2] or None,
        "venue_city": parts[3] or DEFAULT_CITY,
    }


def parse_event_detail(html: str, url: str) -> Optional[Dict[str, Any]]:
    tree = LexborHTMLParser(html)
    id_match = EVENT_ID_RE.search(url)
    title = node_text(tree.css_first("h1"))
    if not title:
        return None

    date_text = _first_text(tree, DATE_SELECTORS)
    start_time, end_time = parse_time_range(date_text)

    description = ""
    for selector in DESCRIPTION_SELECTORS:
        parts = [node_text(n) for n in tree.css(selector)]
        description = "\n\n".join(p for p in parts if len(p) > 20)
        if description:
            break

    price = _first_text(tree, PRICE_SELECTORS, min_length=0)
    img = tree.css_first('article img, .event-image img, [class*="event"] img')
    organizer = node_text(tree.css_first('.article-author, [class*="author"]'))

    fields: Dict[str, Any] = {
        "external_id": id_match.group(1) if id_match else None,
        "title": title,
        "description": description or None,
        "start_date": parse_german_date(date_text),
        "start_time": start_time,
        "end_time": end_time,
        "organizer": organizer or None,
        "price": price or None,
        "is_free": bool(FREE_RE.search(price + " " + description)),
        "image_url": absolute_url(url, img.attributes.get("src")) if img is not None else None,
        "status": "active",
    }
    fields.update(split_venue(_first_text(tree, VENUE_SELECTORS)))
    return fields


def map_event_result(data: Dict[str, Any], url: str) -> Optional[Dict[str, Any]]:
    """Map the text service's event JSON onto event columns."""
    dates = []
    for entry in data.get("dates") or []:
        if not isinstance(entry, dict):
            continue
        day = parse_german_date(entry.get("date"))
        if not day:
            continue
        start, end = parse_time_range(entry.get("time"))
        dates.append({"date": day, "start_time": start, "end_time": end})

    location = data.get("location") or {}
    organizer = data.get("organizer") or {}
    price = data.get("price_info") or None
    images = data.get("image_urls") or []
    first = dates[0] if dates else {}

    return {
        "title": data.get("title") or None,
        "description": data.get("description") or None,
        "category": data.get("category") or None,
        "mood_category": data.get("mood_category") or None,
        "start_date": first.get("date"),
        "start_time": first.get("start_time"),
        "end_time": first.get("end_time"),
        "end_date": dates[-1]["date"] if len(dates) > 1 else None,
        "dates": dates or None,
        "venue_name": location.get("name") or None,
        "venue_address": location.get("address") or None,
        "venue_postcode": location.get("postal_code") or None,
        "venue_city": location.get("city") or DEFAULT_CITY,
        "organizer": organizer.get("name") or None,
        "price": price,
        "is_free": bool(data.get("is_free")) or bool(price and FREE_RE.search(price)),
        "ticket_url": data.get("ticket_url") or None,
        "image_url": images[0] if images else None,
        "status": "active",
    }


class EventsCrawler(SourceCrawler):
    key = "events-braunschweig"
    name = "Veranstaltungen Braunschweig"
    kind = EVENTS
    listing_url = SITE
    detail_anchor = "body"
    default_concurrency = 3
    summarize_on_change = False

    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("max_pages", settings.MAX_LOAD_MORE_CLICKS + 1)
        super().__init__(**kwargs)
        # the text service reads the whole page, so nothing gets blocked for it
        self.detail_block = () if self.enricher is not None else IMAGE_AND_STYLE

    async def open_listing(self, browser: BrowserSession) -> ListingCursor:
        page = await browser.new_page()
        await page.goto(self.listing_url, wait_until="domcontentloaded", timeout=settings.NAVIGATION_TIMEOUT_MS)
        await page.wait_for_selector(EVENT_LINK, timeout=10_000)
        log.info("crawl.listing.loaded", module=self.key, url=self.listing_url)
        return LoadMoreListing(page)

    def parse_listing(self, html: str) -> List[Item]:
        return parse_event_listing(html)

    def extraction_strategy(self) -> ExtractionStrategy:
        selectors = SelectorExtraction(parse_event_detail)
        if self.enricher is None:
            return selectors
        return ChainedExtraction([TextServiceExtraction(self.enricher, map_event_result), selectors])
