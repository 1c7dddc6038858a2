import os

# Set required env vars BEFORE any app imports trigger Settings()
os.environ.setdefault("API_KEY", "test-api-key-for-testing")
os.environ.setdefault("DB_USER", "test")
os.environ.setdefault("DB_PASSWORD", "test")
os.environ.setdefault("DATABASE_URL_OVERRIDE", "sqlite+aiosqlite:///:memory:")
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["OPENAI_API_KEY"] = ""

from typing import Any, Dict, Iterable, List, Optional

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock, patch
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from civicwatch.main import app
from civicwatch.database import Base, get_db, utcnow
from civicwatch.dependencies import require_api_key

from civicwatch.crawlers.base import ListingCursor, SourceCrawler
from civicwatch.exceptions import FetchError
from civicwatch.models import IDEAS
from civicwatch.repositories.modules import ModuleRepository
from civicwatch.services.detail import DetailResult
from civicwatch.services.progress import ProgressHub
from civicwatch.services.scheduler import Scheduler

TEST_DB = "sqlite+aiosqlite://"
TEST_API_KEY = "test-api-key-for-testing"


@pytest_asyncio.fixture
async def db_engine():
    engine = create_async_engine(
        TEST_DB,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def hub():
    return ProgressHub(clear_delay=0.05)


# ── Crawl seams: browser, listing, detail fetcher ─────────────────────────────

class FakeBrowser:
    """Stands in for BrowserSession; records whether it was closed."""

    instances: List["FakeBrowser"] = []

    def __init__(self):
        self.closed = False
        FakeBrowser.instances.append(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.closed = True


class ScriptedListing(ListingCursor):
    """Listing whose pages are lists of summary dicts."""

    def __init__(self, pages: List[List[Dict[str, Any]]], fail_on_page: Optional[int] = None):
        self.pages = pages
        self.fail_on_page = fail_on_page
        self.index = 0
        self.reads = 0

    async def read(self):
        self.reads += 1
        return self.pages[self.index]

    async def advance(self) -> bool:
        if self.index + 1 >= len(self.pages):
            return False
        if self.fail_on_page == self.index + 2:
            raise FetchError("Next listing page did not load", {"page": self.index + 2})
        self.index += 1
        return True


class FakeDetailFetcher:
    def __init__(self, details: Dict[str, Dict[str, Any]], failing: Iterable[str] = ()):
        self.details = details
        self.failing = set(failing)
        self.calls: List[str] = []

    async def fetch(self, url: str) -> DetailResult:
        self.calls.append(url)
        if url in self.failing:
            return DetailResult(detail_scraped=False, error="timeout")
        return DetailResult(
            fields=dict(self.details.get(url, {})),
            detail_scraped=True,
            detail_scraped_at=utcnow(),
        )


class ScriptedCrawler(SourceCrawler):
    key = "ideenplattform"
    name = "Ideenplattform"
    kind = IDEAS

    def __init__(
        self,
        *,
        pages: List[List[Dict[str, Any]]],
        details: Optional[Dict[str, Dict[str, Any]]] = None,
        failing: Iterable[str] = (),
        fail_on_page: Optional[int] = None,
        **kwargs,
    ):
        kwargs.setdefault("batch_pause", 0)
        kwargs.setdefault("page_pause", 0)
        kwargs.setdefault("browser_factory", FakeBrowser)
        super().__init__(**kwargs)
        self.listing = ScriptedListing(pages, fail_on_page)
        self.fetcher = FakeDetailFetcher(details or {}, failing)

    async def open_listing(self, browser):
        return self.listing

    def parse_listing(self, page):
        return [dict(row) for row in page]

    def build_detail_fetcher(self, browser):
        return self.fetcher


def idea_row(ext_id: str, title: Optional[str] = None, **extra) -> Dict[str, Any]:
    row = {
        "external_id": ext_id,
        "title": title or f"Idee {ext_id}",
        "url": f"https://mitreden.example/node/{ext_id}",
        "status": "Neu",
        "category": "Verkehr",
        "supporters": 1,
    }
    row.update(extra)
    return row


@pytest.fixture
def make_crawler(session_factory, hub):
    def _make(**kwargs) -> ScriptedCrawler:
        kwargs.setdefault("session_factory", session_factory)
        kwargs.setdefault("hub", hub)
        return ScriptedCrawler(**kwargs)
    return _make


@pytest.fixture
def scripted():
    """Exposes the crawl fakes to test modules."""
    class Namespace:
        Browser = FakeBrowser
        Listing = ScriptedListing
        Fetcher = FakeDetailFetcher
        Crawler = ScriptedCrawler
        row = staticmethod(idea_row)
    FakeBrowser.instances.clear()
    return Namespace


@pytest_asyncio.fixture
async def seeded_modules(session_factory):
    async with session_factory() as session:
        await ModuleRepository(session).seed([
            {"key": "ideenplattform", "name": "Ideenplattform", "interval_minutes": 5},
            {"key": "maengelmelder", "name": "Mängelmelder", "interval_minutes": 60,
             "enabled": False},
        ])
        await session.commit()


# ── HTTP client ───────────────────────────────────────────────────────────────

class AsyncIterEmpty:
    """Async iterator that yields nothing (for scan_iter mock)."""
    def __aiter__(self):
        return self

    async def __anext__(self):
        raise StopAsyncIteration


@pytest_asyncio.fixture
async def client(db, session_factory, hub):
    async def override_get_db():
        yield db

    async def override_api_key():
        return TEST_API_KEY

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[require_api_key] = override_api_key
    app.state.progress_hub = hub
    app.state.enricher = None
    app.state.scheduler = Scheduler(session_factory, hub, {})

    # Mock Redis so route tests don't need a live Redis
    with patch("civicwatch.cache._pool", new=True), \
         patch("civicwatch.cache.get_redis") as mock_redis:
        # pipeline() is synchronous in redis-py, returns a pipeline object
        mock_pipe = AsyncMock()
        mock_pipe.execute = AsyncMock(return_value=[None, False])

        mock_r = AsyncMock()
        mock_r.ping = AsyncMock(return_value=True)
        mock_r.get = AsyncMock(return_value=None)
        mock_r.setex = AsyncMock(return_value=True)
        mock_r.delete = AsyncMock(return_value=1)
        # pipeline() and scan_iter() are sync calls that return objects
        mock_r.pipeline = MagicMock(return_value=mock_pipe)
        mock_r.scan_iter = MagicMock(return_value=AsyncIterEmpty())

        mock_redis.return_value = mock_r

        async with AsyncClient(
            transport=ASGITransport(app=app), base_url="http://test"
        ) as c:
            yield c

    app.dependency_overrides.clear()
