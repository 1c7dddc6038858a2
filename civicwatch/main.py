import structlog
import logging
import contextlib
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import HTTPException

from civicwatch.config import settings
from civicwatch.database import SessionLocal, init_db, close_db
from civicwatch.cache import init_redis_pool, close_redis_pool, invalidate_records
from civicwatch.crawlers.registry import CRAWLERS
from civicwatch.exceptions import AppError, app_error_handler, http_error_handler
from civicwatch.middleware import LoggingMiddleware, SecurityHeadersMiddleware
from civicwatch.routers.admin import router as admin_router
from civicwatch.routers.modules import router as modules_router
from civicwatch.routers.records import router as records_router
from civicwatch.services.enrichment import EnrichmentClient, get_enrichment_client
from civicwatch.services.progress import ProgressHub
from civicwatch.services.scheduler import Scheduler

# ── Structured logging setup ──────────────────────────────────────────────────
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)
logging.basicConfig(level=logging.DEBUG if settings.DEBUG else logging.INFO)

log = structlog.get_logger(__name__)


def build_scheduler(hub: ProgressHub, enricher: Optional[EnrichmentClient]) -> Scheduler:
    return Scheduler(
        SessionLocal,
        hub,
        CRAWLERS,
        enricher=enricher,
        on_records_changed=invalidate_records,
    )


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    log.info("app.starting", env=settings.ENVIRONMENT, version=settings.APP_VERSION)
    await init_db()
    await init_redis_pool()
    hub = ProgressHub(clear_delay=settings.PROGRESS_CLEAR_DELAY_SECONDS)
    enricher = get_enrichment_client()
    scheduler = build_scheduler(hub, enricher)
    app.state.progress_hub = hub
    app.state.enricher = enricher
    app.state.scheduler = scheduler
    scheduler.start()
    log.info("app.ready", modules=sorted(CRAWLERS), enrichment=settings.ENRICHMENT_ENABLED)
    yield
    log.info("app.shutting_down")
    scheduler.stop()
    await close_redis_pool()
    await close_db()
    log.info("app.stopped")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs" if settings.ENVIRONMENT == "development" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT == "development" else None,
    lifespan=lifespan,
)

# ── Middleware (outermost last) ───────────────────────────────────────────────
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(LoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["X-API-Key", "Content-Type"],
)

# ── Exception handlers ────────────────────────────────────────────────────────
app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)

# ── Routers ───────────────────────────────────────────────────────────────────
app.include_router(modules_router)
app.include_router(records_router)
app.include_router(admin_router)
