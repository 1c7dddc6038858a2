from __future__ import annotations

import re
from datetime import date
from typing import Iterable, Optional, Tuple
from urllib.parse import urljoin

from selectolax.lexbor import LexborNode

NODE_ID_RE = re.compile(r"/node/(\d+)")
SAVED_BY_RE = re.compile(r"Gespeichert von\s+(\S+)\s+am")
WEEKDAY_DATE_RE = re.compile(
    r"am\s+((?:Mo|Di|Mi|Do|Fr|Sa|So)\.,?\s+\d{2}\.\d{2}\.\d{4}\s+-\s+\d{2}:\d{2})"
)
TIME_RANGE_RE = re.compile(r"(\d{1,2}):(\d{2})(?:\s*-\s*(\d{1,2}):(\d{2}))?")

GERMAN_MONTHS = (
    "januar", "februar", "märz", "april", "mai", "juni",
    "juli", "august", "september", "oktober", "november", "dezember",
)


def squash(text: Optional[str]) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def node_text(node: Optional[LexborNode]) -> str:
    if node is None:
        return ""
    return squash(node.text(separator=" "))


def absolute_url(base: str, href: Optional[str]) -> Optional[str]:
    if not href:
        return None
    return urljoin(base, href)


def first_known(text: str, options: Iterable[str], default: Optional[str] = None) -> Optional[str]:
    """First entry of ``options`` that occurs in ``text``; list order is priority order."""
    for option in options:
        if option in text:
            return option
    return default


def parse_german_date(text: Optional[str], today: Optional[date] = None) -> Optional[str]:
    """'18. Oktober 2025' -> '2025-10-18'; a missing year means the current one."""
    if not text:
        return None
    match = re.search(r"(\d{1,2})\.\s*([a-zäöü]+)(?:\s+(\d{4}))?", text.lower())
    if not match:
        return None
    day, month_name, year = match.groups()
    month = next(
        (i for i, name in enumerate(GERMAN_MONTHS, start=1) if name in month_name), None
    )
    if month is None:
        return None
    year = year or str((today or date.today()).year)
    return f"{year}-{month:02d}-{int(day):02d}"


def parse_numeric_date(text: Optional[str]) -> Optional[str]:
    """'31.12.2025' -> '2025-12-31'."""
    match = re.search(r"(\d{1,2})\.(\d{1,2})\.(\d{4})", text or "")
    if not match:
        return None
    day, month, year = match.groups()
    return f"{year}-{int(month):02d}-{int(day):02d}"


def parse_time_range(text: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """'18:00 - 22:00' -> ('18:00', '22:00'); hours are zero padded."""
    match = TIME_RANGE_RE.search(text or "")
    if not match:
        return None, None
    h1, m1, h2, m2 = match.groups()
    start = f"{int(h1):02d}:{m1}"
    end = f"{int(h2):02d}:{m2}" if h2 else None
    return start, end
