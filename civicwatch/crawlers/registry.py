from __future__ import annotations

from typing import Dict, List, Type

from civicwatch.config import settings
from civicwatch.crawlers.base import SourceCrawler
from civicwatch.crawlers.events import EventsCrawler
from civicwatch.crawlers.ideas import IdeasCrawler
from civicwatch.crawlers.issues import IssuesCrawler

CRAWLERS: Dict[str, Type[SourceCrawler]] = {
    cls.key: cls for cls in (IdeasCrawler, IssuesCrawler, EventsCrawler)
}

DEFAULT_MODULES: List[dict] = [
    {
        "key": IdeasCrawler.key,
        "name": IdeasCrawler.name,
        "description": "Bürgerideen der Ideenplattform mitreden.braunschweig.de",
        "interval_minutes": settings.DEFAULT_INTERVAL_MINUTES,
    },
    {
        "key": IssuesCrawler.key,
        "name": IssuesCrawler.name,
        "description": "Mängelmeldungen mit Status und Bearbeitungshistorie",
        "interval_minutes": settings.DEFAULT_INTERVAL_MINUTES,
    },
    {
        "key": EventsCrawler.key,
        "name": EventsCrawler.name,
        "description": "Veranstaltungskalender braunschweig.die-region.de",
        "interval_minutes": 24 * 60,
    },
]
