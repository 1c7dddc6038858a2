from __future__ import annotations
from functools import lru_cache
from typing import List, Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings

# no module may be scheduled more often than this, whatever the env says
INTERVAL_FLOOR_MINUTES = 5


class Settings(BaseSettings):
    # ── App ──────────────────────────────────────────────────────────────────
    APP_NAME: str = "Civicwatch Ingest"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # ── Authentication ───────────────────────────────────────────────────────
    API_KEY: str  # required, no default

    # ── CORS ─────────────────────────────────────────────────────────────────
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]
    TRUSTED_PROXY_HEADERS: List[str] = ["X-Forwarded-For", "X-Real-IP"]

    # ── Database ─────────────────────────────────────────────────────────────
    DB_USER: str  # required, no default
    DB_PASSWORD: str  # required, no default
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_NAME: str = "civicwatch"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DATABASE_URL_OVERRIDE: Optional[str] = None   # e.g. sqlite+aiosqlite:///./civicwatch.db

    # ── Redis ────────────────────────────────────────────────────────────────
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_POOL_SIZE: int = 20
    REDIS_SOCKET_TIMEOUT: float = 2.0
    REDIS_CONNECT_TIMEOUT: float = 2.0

    @property
    def REDIS_URL(self) -> str:
        from urllib.parse import quote_plus
        if self.REDIS_PASSWORD:
            return f"redis://:{quote_plus(self.REDIS_PASSWORD)}@{self.REDIS_HOST}:{self.REDIS_PORT}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}"

    # ── Cache TTLs (seconds) ─────────────────────────────────────────────────
    CACHE_TTL_WARM: int = 300        # record listings
    CACHE_TTL_COLD: int = 3600       # single records
    CACHE_STALE_GRACE: int = 60      # stale-while-revalidate window

    # ── Browser / crawl ──────────────────────────────────────────────────────
    BROWSER_HEADLESS: bool = True
    NAVIGATION_TIMEOUT_MS: int = 30_000
    DETAIL_TIMEOUT_MS: int = 15_000
    ANCHOR_TIMEOUT_MS: int = 5_000
    DETAIL_CONCURRENCY: int = 2
    BATCH_PAUSE_SECONDS: float = 0.5
    PAGE_PAUSE_SECONDS: float = 0.5
    DETAIL_RETRIES: int = 2
    RETRY_DELAY_SECONDS: float = 1.0
    STALE_PAGE_LIMIT: int = 3
    MAX_PAGES: Optional[int] = None
    MAX_LOAD_MORE_CLICKS: int = 100

    # ── Scheduler ────────────────────────────────────────────────────────────
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TICK_SECONDS: int = 60
    MIN_INTERVAL_MINUTES: int = 5
    DEFAULT_INTERVAL_MINUTES: int = 60

    # ── Progress ─────────────────────────────────────────────────────────────
    PROGRESS_CLEAR_DELAY_SECONDS: float = 5.0

    # ── Enrichment (OpenAI-compatible) ───────────────────────────────────────
    OPENAI_API_KEY: str = ""         # empty disables enrichment + text extraction
    LLM_BASE_URL: Optional[str] = None
    LLM_MODEL: str = "gpt-4o-mini"
    LLM_TIMEOUT_SECONDS: float = 30.0
    ENRICH_MIN_DESCRIPTION: int = 50
    ENRICH_PAUSE_SECONDS: float = 0.35
    SUMMARY_MIN_NEW: int = 5
    SUMMARY_MIN_UPDATED: int = 10
    SUMMARY_VALID_HOURS: int = 24

    @property
    def DATABASE_URL(self) -> str:
        if self.DATABASE_URL_OVERRIDE:
            return self.DATABASE_URL_OVERRIDE
        from urllib.parse import quote_plus
        return (
            f"postgresql+asyncpg://{quote_plus(self.DB_USER)}:{quote_plus(self.DB_PASSWORD)}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
        )

    @property
    def ENRICHMENT_ENABLED(self) -> bool:
        return bool(self.OPENAI_API_KEY)

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_env(cls, v: str) -> str:
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"ENVIRONMENT must be one of {allowed}")
        return v

    @field_validator("MIN_INTERVAL_MINUTES")
    @classmethod
    def validate_min_interval(cls, v: int) -> int:
        if v < INTERVAL_FLOOR_MINUTES:
            raise ValueError(f"MIN_INTERVAL_MINUTES must be at least {INTERVAL_FLOOR_MINUTES}")
        return v

    model_config = {"env_file": ".env", "extra": "ignore"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
