"""Best-effort text enrichment through an OpenAI-compatible chat endpoint.

Three uses:

- ``enhance_idea``: display title, short summary and hashtags for a proposal
- ``extract_event``: structured event JSON from raw page text
- ``summarize``: a few sentences describing the latest records of a source

``enhance_stored_idea`` and ``enhance_ideas`` fill the AI fields of ideas
that are already stored, outside of a crawl.

Configuration comes from ``OPENAI_API_KEY`` / ``LLM_BASE_URL`` / ``LLM_MODEL``.
Without an API key ``get_enrichment_client()`` returns None and crawlers
skip every enrichment step.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import structlog
from openai import AsyncOpenAI, OpenAIError

from civicwatch.config import settings
from civicwatch.exceptions import ExtractionError
from civicwatch.models import Idea
from civicwatch.repositories.records import IdeaRepository

log = structlog.get_logger(__name__)

MAX_TEXT_CHARS = 30_000

_IDEA_PROMPT = """Analysiere diese Bürgeridee und erstelle:

1. Einen prägnanten Titel (max. 10 Wörter)
2. Eine Zusammenfassung (max. 3 Sätze), die vermittelt, worum es in dieser Idee wirklich geht
3. 5-10 relevante Hashtags für Klassifizierung

Idee:
Originaltitel: {title}
Kategorie: {category}
Inhalt: {description}

Antworte im folgenden Format:
TITEL: [dein Titel hier]
ZUSAMMENFASSUNG: [deine Zusammenfassung hier]
HASHTAGS: #tag1 #tag2 #tag3 ..."""

_EVENT_SYSTEM = """Du extrahierst strukturierte Event-Daten aus Webseiten-Text.
Antworte NUR mit gültigem JSON in dieser Struktur:
{"event": {
  "title": string,
  "description": string,
  "dates": [{"date": "DD. Monat YYYY", "time": "HH:MM - HH:MM"}],
  "location": {"name": string, "address": string, "postal_code": string, "city": string},
  "organizer": {"name": string},
  "category": string,
  "mood_category": string,
  "price_info": string,
  "is_free": boolean,
  "ticket_url": string,
  "image_urls": [string]
}}
Extrahiere nur echte Daten. Fehlende Felder: null oder ""."""

_SUMMARY_PROMPT = """Fasse die folgenden aktuellen Einträge der Plattform "{module}" in 3-4 Sätzen
für Journalisten zusammen. Nenne wiederkehrende Themen und auffällige Häufungen.

{items}"""


@dataclass
class Enhancement:
    summary: str
    hashtags: List[str] = field(default_factory=list)
    title: Optional[str] = None


def parse_enhancement(content: str) -> Enhancement:
    """Parse the TITEL / ZUSAMMENFASSUNG / HASHTAGS answer format."""
    title = re.search(r"TITEL:\s*(.+?)(?=\nZUSAMMENFASSUNG:|$)", content, re.S)
    summary = re.search(r"ZUSAMMENFASSUNG:\s*(.+?)(?=\nHASHTAGS:|$)", content, re.S)
    tags = re.search(r"HASHTAGS:\s*(.+)", content, re.S)

    hashtags: List[str] = []
    for word in (tags.group(1).split() if tags else []):
        tag = word.lower()
        if tag.startswith("#") and tag not in hashtags:
            hashtags.append(tag)

    return Enhancement(
        summary=summary.group(1).strip() if summary else "",
        hashtags=hashtags,
        title=title.group(1).strip() if title else None,
    )


class EnrichmentClient:
    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model = model
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    async def _complete(self, messages: List[Dict[str, str]], **kwargs: Any) -> str:
        response = await self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            **kwargs,
        )
        return (response.choices[0].message.content or "").strip()

    async def enhance_idea(self, title: str, category: Optional[str], description: str) -> Enhancement:
        """Raises on transport or format errors; callers decide how to degrade."""
        content = await self._complete(
            [
                {"role": "system", "content": "Du analysierst und fasst Bürgerideen zusammen."},
                {"role": "user", "content": _IDEA_PROMPT.format(
                    title=title, category=category or "-", description=description,
                )},
            ],
            temperature=0.6,
            max_tokens=300,
        )
        enhancement = parse_enhancement(content)
        if not enhancement.summary:
            raise ExtractionError("Enrichment answer had no summary", {"title": title[:80]})
        return enhancement

    async def extract_event(self, text: str, url: str) -> Optional[Dict[str, Any]]:
        try:
            content = await self._complete(
                [
                    {"role": "system", "content": _EVENT_SYSTEM},
                    {"role": "user", "content": f"Extrahiere alle Event-Daten:\n\n{text[:MAX_TEXT_CHARS]}"},
                ],
                temperature=0.1,
                response_format={"type": "json_object"},
            )
            data = json.loads(content)
        except Exception as exc:
            log.warning("enrichment.extract.failed", url=url, error=str(exc))
            return None
        event = data.get("event") if isinstance(data, dict) else None
        if not isinstance(event, dict):
            log.warning("enrichment.extract.empty", url=url)
            return None
        log.info("enrichment.extract.ok", url=url)
        return event

    async def summarize(self, module_key: str, items: Sequence[Dict[str, Any]]) -> str:
        lines = "\n".join(
            f"- {item.get('title')} ({item.get('category') or 'ohne Kategorie'}, {item.get('status') or '-'})"
            for item in items
        )
        return await self._complete(
            [{"role": "user", "content": _SUMMARY_PROMPT.format(module=module_key, items=lines)}],
            temperature=0.4,
            max_tokens=300,
        )


def get_enrichment_client() -> Optional[EnrichmentClient]:
    if not settings.ENRICHMENT_ENABLED:
        return None
    return EnrichmentClient(
        api_key=settings.OPENAI_API_KEY,
        model=settings.LLM_MODEL,
        base_url=settings.LLM_BASE_URL,
        timeout=settings.LLM_TIMEOUT_SECONDS,
    )


# ── Stored ideas ──────────────────────────────────────────────────────────────

@dataclass
class BatchOutcome:
    processed: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


async def enhance_stored_idea(client: EnrichmentClient, repo: IdeaRepository, idea: Idea) -> Enhancement:
    try:
        enhancement = await client.enhance_idea(idea.title, idea.category, idea.description or "")
    except OpenAIError as exc:
        raise ExtractionError(f"Enrichment request failed: {exc}", {"idea": idea.id}) from exc
    await repo.store_enhancement(idea, enhancement.title, enhancement.summary, enhancement.hashtags)
    log.info("enrichment.idea.stored", idea=idea.id, hashtags=len(enhancement.hashtags))
    return enhancement


async def enhance_ideas(
    client: EnrichmentClient,
    repo: IdeaRepository,
    ideas: Sequence[Idea],
    pause: float = 0.0,
) -> BatchOutcome:
    """One idea at a time; a failed idea is counted and the batch moves on."""
    outcome = BatchOutcome()
    for i, idea in enumerate(ideas):
        try:
            await enhance_stored_idea(client, repo, idea)
            outcome.processed += 1
        except ExtractionError as exc:
            outcome.failed += 1
            outcome.errors.append(f"Idea {idea.id}: {exc.detail}")
            log.warning("enrichment.idea.failed", idea=idea.id, error=exc.detail)
        if pause and i < len(ideas) - 1:
            await asyncio.sleep(pause)
    log.info("enrichment.batch.done", processed=outcome.processed, failed=outcome.failed)
    return outcome
