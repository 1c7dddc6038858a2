from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase
import structlog
from civicwatch.config import settings

log = structlog.get_logger(__name__)


def _engine_kwargs(url: str) -> dict:
    # SQLite drivers reject pool sizing arguments
    if url.startswith("sqlite"):
        return {"echo": False}
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_pre_ping": True,         # detect stale connections
        "pool_recycle": 3600,
        "echo": False,
    }


engine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))

SessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def get_db():
    async with SessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def init_db(session_factory: async_sessionmaker = SessionLocal) -> None:
    """Create tables, seed module rows and close runs a previous process left open."""
    from civicwatch.crawlers.registry import DEFAULT_MODULES
    from civicwatch.repositories.modules import ModuleRepository
    from civicwatch.repositories.runs import RunRepository

    bind = session_factory.kw.get("bind") or engine
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with session_factory() as db:
        seeded = await ModuleRepository(db).seed(DEFAULT_MODULES)
        orphans = await RunRepository(db).finalize_orphans()
        await db.commit()
    log.info("database.initialized", modules_seeded=seeded, orphan_runs_closed=orphans)


async def close_db() -> None:
    await engine.dispose()
    log.info("database.closed")
