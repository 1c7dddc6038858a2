"""Defect reports ("Mängelmelder") filed by residents."""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from selectolax.lexbor import LexborHTMLParser, LexborNode

from civicwatch.crawlers.base import Item, SourceCrawler
from civicwatch.crawlers.parsing import (
    NODE_ID_RE,
    SAVED_BY_RE,
    WEEKDAY_DATE_RE,
    absolute_url,
    first_known,
    node_text,
)
from civicwatch.models import ISSUES
from civicwatch.services.browser import STYLE_ONLY
from civicwatch.services.extraction import ExtractionStrategy, SelectorExtraction

SITE = "https://mitreden.braunschweig.de"
LISTING_URL = f"{SITE}/maengelmelder"

ISSUE_STATUSES = (
    "Das Anliegen ist derzeit nicht Bestandteil des Mängelmelders",
    "In der Arbeitsplanung berücksichtigt",
    "Keine Zuständigkeit der Stadtverwaltung",
    "Erledigt / beauftragt",
    "Kein Handlungsbedarf",
    "in Bearbeitung",
    "Unbearbeitet",
    "Nicht lösbar",
)
DEFAULT_STATUS = "Offen"

ISSUE_CATEGORIES = (
    "Poller defekt",
    "Ampel defekt (Taste/Licht)",
    "Illegale Plakatierung",
    "Wilde Müllkippe, Sperrmüllreste",
    "Straßenschild / Verkehrszeichen defekt",
    "Straßenkanaldeckel defekt",
    "Straßen-, Radweg- und Gehwegschäden",
    "Gully / Bachablauf verstopft",
    "Friedhofsunterhaltung",
    "abgemeldete Fahrzeuge",
    "Fahrradwracks",
    "Straßenbeleuchtung / Laterne defekt",
    "Spielplatzunterhaltung",
)

POSTCODE_RE = re.compile(r"\d{5}\s+Braunschweig")
STREET_RE = re.compile(r"([A-Za-zäöüßÄÖÜ\-\. ]+\s\d+[a-z]?,?\s+\d{5}\s+Braunschweig)")
HISTORY_HEADING = "Bearbeitungshistorie"
PHOTO_EXCLUDES = ("icon", "logo", "openstreetmap", "geofabrik")


def find_location(scope: Optional[LexborNode]) -> Optional[str]:
    """Shortest element text carrying a Braunschweig postcode, trimmed to street and city."""
    if scope is None:
        return None
    best = None
    for node in scope.css("div, span, p, li, address"):
        text = node_text(node)
        if POSTCODE_RE.search(text) and (best is None or len(text) < len(best)):
            best = text
    if best is None:
        return None
    street = STREET_RE.search(best)
    return street.group(1).strip() if street else best


def detail_url_for(external_id: str) -> str:
    return f"{SITE}/node/{external_id}"


def parse_issue_listing(html: str) -> List[Item]:
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
        paragraphs = [node_text(p) for p in article.css("p")]

        rows.append({
            "external_id": match.group(1) if match else None,
            "title": node_text(link),
            "url": absolute_url(SITE, href),
            "description": " ".join(p for p in paragraphs if p) or None,
            "author": author.group(1) if author else None,
            "submitted_at": submitted.group(1) if submitted else None,
            "location": find_location(article),
            "category": first_known(text, ISSUE_CATEGORIES),
            "status": first_known(text, ISSUE_STATUSES, DEFAULT_STATUS),
        })
    return rows


def _history_entries(tree: LexborHTMLParser) -> List[Dict[str, Optional[str]]]:
    heading: Optional[LexborNode] = None
    for h1 in tree.css("h1"):
        if HISTORY_HEADING in node_text(h1):
            heading = h1
            break
    if heading is None:
        return []

    container = heading.parent
    entries = []
    for li in container.css("li") if container is not None else []:
        stamp = node_text(li.css_first("p"))
        status = None
        for h2 in li.css("h2"):
            if "Status" in node_text(h2):
                sibling = h2.next
                while sibling is not None and sibling.tag != "p":
                    sibling = sibling.next
                status = node_text(sibling) or None
                break
        if stamp or status:
            entries.append({"timestamp": stamp or None, "status": status})
    return entries


def _photo_url(tree: LexborHTMLParser) -> Optional[str]:
    for img in tree.css("div.field--field_upload img"):
        src = img.attributes.get("src") or ""
        if src and not any(word in src.lower() for word in PHOTO_EXCLUDES):
            return absolute_url(SITE, src)
    return None


def parse_issue_detail(html: str, url: str) -> Optional[Dict[str, Any]]:
    tree = LexborHTMLParser(html)
    fields: Dict[str, Any] = {}
    article = tree.css_first("article")
    scope = article if article is not None else tree.body
    text = node_text(scope)

    title = node_text(tree.css_first("h1"))
    if title and HISTORY_HEADING not in title:
        fields["title"] = title

    time_node = tree.css_first("time")
    if time_node is not None:
        fields["submitted_at"] = time_node.attributes.get("datetime") or node_text(time_node)

    author = SAVED_BY_RE.search(text)
    if author:
        fields["author"] = author.group(1)

    location = find_location(scope)
    if location:
        fields["location"] = location

    category = first_known(text, ISSUE_CATEGORIES)
    if category:
        fields["category"] = category

    paragraphs = [node_text(p) for p in scope.css("p")] if scope is not None else []
    description = "\n\n".join(p for p in paragraphs if p and not SAVED_BY_RE.search(p))
    if description:
        fields["description"] = description

    history = _history_entries(tree)
    if history:
        fields["status_history"] = history
        # newest entry comes first on the page
        if history[0]["status"]:
            fields["status"] = history[0]["status"]
    if "status" not in fields:
        status = first_known(text, ISSUE_STATUSES)
        if status:
            fields["status"] = status

    photo = _photo_url(tree)
    if photo:
        fields["photo_url"] = photo
    return fields or None


class IssuesCrawler(SourceCrawler):
    key = "maengelmelder"
    name = "Mängelmelder"
    kind = ISSUES
    listing_url = LISTING_URL
    detail_anchor = "article"
    detail_block = STYLE_ONLY
    detail_preferred = frozenset(
        {"status", "description", "author", "category", "location", "submitted_at"}
    )

    def parse_listing(self, html: str) -> List[Item]:
        return parse_issue_listing(html)

    def detail_url(self, summary: Item) -> Optional[str]:
        return detail_url_for(summary["external_id"])

    def extraction_strategy(self) -> ExtractionStrategy:
        return SelectorExtraction(parse_issue_detail)
