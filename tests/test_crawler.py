import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from civicwatch.crawlers.base import CrawlState
from civicwatch.models import IDEAS, IdeaHistory, PlatformSummary, ScraperRun
from civicwatch.repositories.records import RecordRepository
from civicwatch.services.enrichment import Enhancement


async def _count(session_factory, model):
    async with session_factory() as s:
        return (await s.execute(select(func.count(model.id)))).scalar_one()


async def _runs(session_factory):
    async with session_factory() as s:
        return list((await s.execute(select(ScraperRun))).scalars().all())


@pytest.mark.asyncio
async def test_two_pages_with_one_known_record(make_crawler, scripted, session_factory, hub):
    known = scripted.row("3", title="Bekannte Idee")
    async with session_factory() as s:
        await RecordRepository(s, IDEAS).upsert(known)
        await s.commit()

    crawler = make_crawler(pages=[[scripted.row("1"), scripted.row("2")], [known]])
    stats = await crawler.run()

    assert (stats.items_scraped, stats.items_new, stats.items_updated) == (3, 2, 0)
    assert stats.success is True
    assert crawler.state is CrawlState.DONE

    [run] = await _runs(session_factory)
    assert run.success is True
    assert run.ended_at is not None
    assert (run.items_scraped, run.items_new, run.items_updated) == (3, 2, 0)

    final = hub.latest("ideenplattform")
    assert final.status == "completed"
    assert final.items_scraped == 3
    assert await _count(session_factory, IdeaHistory) == 0
    assert scripted.Browser.instances[-1].closed


@pytest.mark.asyncio
async def test_listing_failure_on_page_two_fails_the_run(make_crawler, scripted, session_factory, hub):
    crawler = make_crawler(
        pages=[[scripted.row("1"), scripted.row("2")], [scripted.row("3")]],
        fail_on_page=2,
    )
    stats = await crawler.run()

    assert stats.success is False
    assert stats.items_scraped == 2
    assert stats.error
    assert crawler.state is CrawlState.FAILED

    [run] = await _runs(session_factory)
    assert run.success is False
    assert run.error == stats.error
    assert run.items_scraped == 2

    final = hub.latest("ideenplattform")
    assert final.status == "error"
    assert final.error
    assert await _count(session_factory, IdeaHistory) == 0
    # the browser is closed on the failure path too
    assert scripted.Browser.instances[-1].closed


@pytest.mark.asyncio
async def test_failed_detail_fetch_keeps_partial_record(make_crawler, scripted, session_factory):
    rows = [scripted.row("1"), scripted.row("2"), scripted.row("3")]
    crawler = make_crawler(
        pages=[rows],
        concurrency=3,
        details={rows[0]["url"]: {"description": "Ausführliche Beschreibung der Idee"}},
        failing=[rows[1]["url"]],
    )
    stats = await crawler.run()

    assert stats.success is True
    assert stats.items_scraped == 3
    async with session_factory() as s:
        repo = RecordRepository(s, IDEAS)
        partial = await repo.get_by_external_id("2")
        full = await repo.get_by_external_id("1")
    assert partial.detail_scraped is False
    assert partial.title == "Idee 2"
    assert full.detail_scraped is True
    assert full.description == "Ausführliche Beschreibung der Idee"


@pytest.mark.asyncio
async def test_detail_fields_override_only_when_longer(make_crawler, scripted, session_factory):
    row = scripted.row("1", title="Lange Überschrift aus der Liste", description="kurz")
    crawler = make_crawler(
        pages=[[row]],
        details={row["url"]: {"title": "Kurz", "description": "deutlich längere Beschreibung"}},
    )
    await crawler.run()

    async with session_factory() as s:
        stored = await RecordRepository(s, IDEAS).get_by_external_id("1")
    assert stored.title == "Lange Überschrift aus der Liste"
    assert stored.description == "deutlich längere Beschreibung"


@pytest.mark.asyncio
async def test_invalid_rows_are_discarded(make_crawler, scripted):
    crawler = make_crawler(pages=[[
        scripted.row("1"),
        {"external_id": "", "title": "ohne id"},
        {"external_id": "9", "title": ""},
    ]])
    stats = await crawler.run()
    assert stats.items_scraped == 1


@pytest.mark.asyncio
async def test_stops_after_consecutive_pages_without_new_ids(make_crawler, scripted):
    same = [scripted.row("1")]
    crawler = make_crawler(pages=[same, same, same, same, same, [scripted.row("2")]], stale_page_limit=2)
    stats = await crawler.run()

    assert stats.success is True
    assert stats.pages == 3
    assert stats.items_scraped == 1
    assert crawler.listing.reads == 3


@pytest.mark.asyncio
async def test_max_pages_caps_the_crawl(make_crawler, scripted):
    pages = [[scripted.row(str(i))] for i in range(1, 6)]
    stats = await make_crawler(pages=pages, max_pages=2).run()
    assert stats.pages == 2
    assert stats.items_new == 2


@pytest.mark.asyncio
async def test_without_details_no_fetch_happens(make_crawler, scripted):
    crawler = make_crawler(pages=[[scripted.row("1")]], scrape_details=False)
    stats = await crawler.run()
    assert stats.items_scraped == 1
    assert crawler.fetcher.calls == []


@pytest.mark.asyncio
async def test_one_snapshot_per_page(make_crawler, scripted, hub):
    published = []
    original = hub.publish
    hub.publish = lambda snap: (published.append(snap), original(snap))

    await make_crawler(pages=[[scripted.row("1")], [scripted.row("2")]]).run()

    statuses = [(s.status, s.current_page) for s in published]
    assert statuses == [("running", 0), ("running", 1), ("running", 2), ("completed", None)]


@pytest.mark.asyncio
async def test_changed_record_counts_as_updated(make_crawler, scripted, session_factory):
    async with session_factory() as s:
        await RecordRepository(s, IDEAS).upsert(scripted.row("1", status="Neu"))
        await s.commit()

    stats = await make_crawler(pages=[[scripted.row("1", status="Umgesetzt")]]).run()

    assert (stats.items_new, stats.items_updated) == (0, 1)
    assert await _count(session_factory, IdeaHistory) == 1


@pytest.mark.asyncio
async def test_enrichment_failure_does_not_block_persistence(make_crawler, scripted, session_factory):
    enricher = MagicMock()
    enricher.summarize = AsyncMock(return_value="")

    crawler = make_crawler(pages=[[scripted.row("1")]], enricher=enricher)
    crawler.enrich = AsyncMock(side_effect=RuntimeError("rate limited"))
    stats = await crawler.run()

    assert stats.success is True
    assert stats.items_scraped == 1


@pytest.mark.asyncio
async def test_idea_enrichment_stores_ai_fields(session_factory, hub, monkeypatch):
    from civicwatch.crawlers.ideas import IdeasCrawler
    from civicwatch.config import settings

    monkeypatch.setattr(settings, "ENRICH_PAUSE_SECONDS", 0)
    enricher = MagicMock()
    enricher.enhance_idea = AsyncMock(
        return_value=Enhancement(summary="Kurzfassung.", hashtags=["#verkehr"], title="Mehr Bügel")
    )
    crawler = IdeasCrawler(session_factory=session_factory, hub=hub, enricher=enricher)

    short = await crawler.enrich({"title": "t", "description": "zu kurz"})
    assert "ai_summary" not in short
    enricher.enhance_idea.assert_not_called()

    long_text = "Eine ausführliche Beschreibung " * 3
    item = await crawler.enrich({"title": "t", "category": "Verkehr", "description": long_text})
    assert item["ai_summary"] == "Kurzfassung."
    assert item["ai_hashtags"] == ["#verkehr"]
    assert item["ai_title"] == "Mehr Bügel"


@pytest.mark.asyncio
async def test_summary_regenerated_after_many_new_items(make_crawler, scripted, session_factory):
    enricher = MagicMock()
    enricher.summarize = AsyncMock(return_value="Viele neue Ideen zum Radverkehr.")

    rows = [scripted.row(str(i)) for i in range(1, 8)]
    crawler = make_crawler(pages=[rows], enricher=enricher, concurrency=4)
    crawler.enrich = AsyncMock(side_effect=lambda item: item)
    stats = await crawler.run()

    assert stats.items_new == 7
    enricher.summarize.assert_awaited_once()
    assert await _count(session_factory, PlatformSummary) == 1


@pytest.mark.asyncio
async def test_no_summary_below_threshold(make_crawler, scripted, session_factory):
    enricher = MagicMock()
    enricher.summarize = AsyncMock(return_value="x")
    crawler = make_crawler(pages=[[scripted.row("1")]], enricher=enricher)
    crawler.enrich = AsyncMock(side_effect=lambda item: item)
    await crawler.run()

    enricher.summarize.assert_not_awaited()
    assert await _count(session_factory, PlatformSummary) == 0


def _record_published(hub):
    published = []
    original = hub.publish
    hub.publish = lambda snap: (published.append(snap), original(snap))
    return published


@pytest.mark.asyncio
async def test_run_row_write_failure_still_ends_in_error_snapshot(make_crawler, scripted, session_factory, hub):
    published = _record_published(hub)
    crawler = make_crawler(pages=[[scripted.row("1")]])

    failure = OperationalError("UPDATE scraper_runs", {}, Exception("database is locked"))
    with patch("civicwatch.crawlers.base.RunRepository.finish", AsyncMock(side_effect=failure)):
        stats = await crawler.run()

    assert stats.success is False
    assert "Could not record run" in stats.error
    assert crawler.state is CrawlState.FAILED
    # the item itself was persisted before the run row failed
    assert stats.items_scraped == 1

    final = hub.latest("ideenplattform")
    assert final.status == "error"
    assert final.error == stats.error
    assert [s.status for s in published if s.is_terminal] == ["error"]


@pytest.mark.asyncio
async def test_terminal_snapshot_published_when_run_is_cancelled(make_crawler, scripted, hub):
    published = _record_published(hub)
    crawler = make_crawler(pages=[[scripted.row("1")]])
    crawler._maybe_summarize = AsyncMock(side_effect=asyncio.CancelledError())

    with pytest.raises(asyncio.CancelledError):
        await crawler.run()

    terminal = [s for s in published if s.is_terminal]
    assert len(terminal) == 1
    assert terminal[0].status == "completed"
    assert hub.latest("ideenplattform").is_terminal
