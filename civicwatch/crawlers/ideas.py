"""Citizen proposals from the municipal participation platform."""
from __future__ import annotations

import asyncio
import re
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from selectolax.lexbor import LexborHTMLParser

from civicwatch.config import settings
from civicwatch.crawlers.base import Item, SourceCrawler
from civicwatch.crawlers.parsing import (
    NODE_ID_RE,
    SAVED_BY_RE,
    WEEKDAY_DATE_RE,
    absolute_url,
    first_known,
    node_text,
    parse_numeric_date,
)
from civicwatch.models import IDEAS
from civicwatch.services.extraction import ExtractionStrategy, SelectorExtraction

SITE = "https://mitreden.braunschweig.de"
LISTING_URL = f"{SITE}/ideenplattform"

IDEA_CATEGORIES = (
    "Finanzen",
    "Verkehr",
    "Schule und Kultur",
    "Allgemeine Verwaltung",
    "Stadtgrün und Umwelt",
    "Wirtschaft",
    "Soziales, Jugend und Gesundheit",
    "Recht, Sicherheit und Ordnung",
    "Bauen und Planung",
)

# longer phrases first so "Keine Idee" does not shadow the specific ones
IDEA_STATUSES = (
    "Die Idee wird den politischen Gremien zur Entscheidung vorgelegt",
    "Zeitraum für Stimmabgabe überschritten",
    "Keine Zuständigkeit der Stadtverwaltung",
    "Wird bei zukünftigen Planungen berücksichtigt",
    "Laufend",
    "Umgesetzt",
    "Abgelehnt",
    "Kein Handlungsbedarf",
    "Keine Idee",
    "Neu",
)
DEFAULT_STATUS = "In Prüfung"

SUPPORTERS_RE = re.compile(r"(\d+)\s+von\s+(\d+)\s+Unterstützern")
COMMENTS_RE = re.compile(r"(\d+)\s+Kommentar")
VOTING_UNTIL_RE = re.compile(r"bis zum\s+(\d{1,2}\.\d{1,2}\.\d{4})")
VOTING_EXPIRED_TEXT = "Zeitraum für Stimmabgabe überschritten"

DESCRIPTION_SELECTORS = (
    ".field--name-body p",
    ".field--type-text-long p",
    ".field--name-field-body p",
    "article .field p",
)


def parse_idea_listing(html: str) -> List[Item]:
    rows: List[Item] = []
    for article in LexborHTMLParser(html).css("article"):
        link = article.css_first("h3 a")
        if link is None:
            continue
        href = link.attributes.get("href") or ""
        match = NODE_ID_RE.search(href)
        text = node_text(article)

        author = SAVED_BY_RE.search(text)
        submitted = WEEKDAY_DATE_RE.search(text)
        supporters = SUPPORTERS_RE.search(text)
        comments = COMMENTS_RE.search(text)
        paragraphs = [node_text(p) for p in article.css("p")]

        rows.append({
            "external_id": match.group(1) if match else None,
            "title": node_text(link),
            "url": absolute_url(SITE, href),
            "description": " ".join(p for p in paragraphs if p) or None,
            "author": author.group(1) if author else None,
            "submitted_at": submitted.group(1) if submitted else None,
            "category": first_known(text, IDEA_CATEGORIES),
            "status": first_known(text, IDEA_STATUSES, DEFAULT_STATUS),
            "supporters": int(supporters.group(1)) if supporters else 0,
            "max_supporters": int(supporters.group(2)) if supporters else 50,
            "comments": int(comments.group(1)) if comments else 0,
        })
    return rows


def parse_voting(text: str, today: Optional[date] = None) -> Tuple[Optional[str], bool]:
    """Voting deadline as ISO date plus whether it has already passed."""
    if VOTING_EXPIRED_TEXT in text:
        return None, True
    match = VOTING_UNTIL_RE.search(text)
    if not match:
        return None, False
    deadline = parse_numeric_date(match.group(1))
    return deadline, deadline < (today or date.today()).isoformat()


def parse_idea_detail(html: str, url: str) -> Optional[Dict[str, Any]]:
    tree = LexborHTMLParser(html)
    fields: Dict[str, Any] = {}

    title = node_text(tree.css_first("h1"))
    if title:
        fields["title"] = title

    for selector in DESCRIPTION_SELECTORS:
        paragraphs = [node_text(p) for p in tree.css(selector)]
        paragraphs = [p for p in paragraphs if p]
        if paragraphs:
            fields["description"] = "\n\n".join(paragraphs)
            break

    supporters = [
        node_text(node)
        for node in tree.css(".field--name-field-supporters li, .supporters-list li")
    ]
    if any(supporters):
        fields["supporters_list"] = [s for s in supporters if s]

    comments = []
    for article in tree.css("article")[1:]:
        meta = article.css_first("div.meta-information")
        if meta is None:
            continue
        author = node_text(meta.css_first("span"))
        body = [node_text(p) for p in article.css("p")]
        comments.append({
            "author": author or None,
            "is_moderator": "Moderator" in node_text(meta),
            "text": " ".join(b for b in body if b),
        })
    if comments:
        fields["comments_data"] = comments
        fields["comments"] = len(comments)

    body_text = node_text(tree.body)
    deadline, expired = parse_voting(body_text)
    if deadline or expired:
        fields["voting_deadline"] = deadline
        fields["voting_expired"] = expired

    status = first_known(body_text, IDEA_STATUSES)
    if status:
        fields["status"] = status
    return fields or None


class IdeasCrawler(SourceCrawler):
    key = "ideenplattform"
    name = "Ideenplattform"
    kind = IDEAS
    listing_url = LISTING_URL

    def parse_listing(self, html: str) -> List[Item]:
        return parse_idea_listing(html)

    def extraction_strategy(self) -> ExtractionStrategy:
        return SelectorExtraction(parse_idea_detail)

    async def enrich(self, item: Item) -> Item:
        description = item.get("description") or ""
        if len(description) <= settings.ENRICH_MIN_DESCRIPTION:
            return item
        enhancement = await self.enricher.enhance_idea(
            item["title"], item.get("category"), description
        )
        item = dict(item)
        item["ai_title"] = enhancement.title
        item["ai_summary"] = enhancement.summary
        item["ai_hashtags"] = enhancement.hashtags
        await asyncio.sleep(settings.ENRICH_PAUSE_SECONDS)
        return item
