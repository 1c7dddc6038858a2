from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Type
from pydantic import BaseModel, Field, field_validator


# ── Incoming records (crawler → Record Store) ─────────────────────────────────

class RecordIn(BaseModel):
    """Common shape of a crawled record; rows without id or title never validate."""
    external_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    description: Optional[str] = None
    category: Optional[str] = None
    status: Optional[str] = None
    url: Optional[str] = None
    detail_scraped: bool = False
    detail_scraped_at: Optional[datetime] = None

    @field_validator("external_id", "title", mode="before")
    @classmethod
    def strip_required(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    model_config = {"extra": "ignore"}


class IdeaIn(RecordIn):
    author: Optional[str] = None
    supporters: int = 0
    max_supporters: int = 50
    comments: int = 0
    comments_data: Optional[List[Dict[str, Any]]] = None
    submitted_at: Optional[str] = None
    voting_deadline: Optional[str] = None
    voting_expired: bool = False
    supporters_list: Optional[List[str]] = None
    ai_title: Optional[str] = None
    ai_summary: Optional[str] = None
    ai_hashtags: Optional[List[str]] = None


class IssueReportIn(RecordIn):
    author: Optional[str] = None
    location: Optional[str] = None
    photo_url: Optional[str] = None
    submitted_at: Optional[str] = None
    status_history: Optional[List[Dict[str, Optional[str]]]] = None


class EventIn(RecordIn):
    mood_category: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    dates: Optional[List[Dict[str, Optional[str]]]] = None
    venue_name: Optional[str] = None
    venue_address: Optional[str] = None
    venue_postcode: Optional[str] = None
    venue_city: Optional[str] = None
    organizer: Optional[str] = None
    price: Optional[str] = None
    is_free: bool = False
    ticket_url: Optional[str] = None
    image_url: Optional[str] = None


RECORD_INPUTS: Dict[str, Type[RecordIn]] = {
    "ideas": IdeaIn,
    "issues": IssueReportIn,
    "events": EventIn,
}


# ── Progress / runs ───────────────────────────────────────────────────────────

ProgressStatus = Literal["running", "completed", "error"]


class ProgressSnapshot(BaseModel):
    module_key: str
    status: ProgressStatus
    items_scraped: int = 0
    items_new: int = 0
    items_updated: int = 0
    current_page: Optional[int] = None
    message: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "error")

    model_config = {"frozen": True}


class RunResult(BaseModel):
    module_key: str
    success: bool
    items_scraped: int = 0
    items_new: int = 0
    items_updated: int = 0
    duration_ms: int = 0
    error: Optional[str] = None
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None


class SchedulerRunResponse(BaseModel):
    modules_run: int
    results: List[RunResult]


class ModuleOut(BaseModel):
    key: str
    name: str
    description: Optional[str]
    enabled: bool
    interval_minutes: int
    last_run: Optional[datetime]
    next_run: Optional[datetime]
    running: bool = False
    model_config = {"from_attributes": True}


class ModuleUpdate(BaseModel):
    enabled: Optional[bool] = None
    interval_minutes: Optional[int] = None


class ScraperRunOut(BaseModel):
    id: int
    module_key: str
    triggered_by: str
    started_at: datetime
    ended_at: Optional[datetime]
    items_scraped: int
    items_new: int
    items_updated: int
    success: bool
    error: Optional[str]
    model_config = {"from_attributes": True}


# ── Read surface ──────────────────────────────────────────────────────────────

class PaginatedRecords(BaseModel):
    kind: str
    total: int
    page: int
    page_size: int
    items: List[Dict[str, Any]]


class SummaryOut(BaseModel):
    module_key: str
    summary: str
    item_count: int
    created_at: datetime
    valid_until: Optional[datetime]
    model_config = {"from_attributes": True}


class HashtagCount(BaseModel):
    tag: str
    count: int


class HashtagsResponse(BaseModel):
    hashtags: List[HashtagCount]
    total: int


class EnhanceResponse(BaseModel):
    success: bool = True
    idea: Dict[str, Any]
    ai_title: Optional[str]
    ai_summary: str
    ai_hashtags: List[str]


class BatchEnhanceResponse(BaseModel):
    success: bool = True
    processed: int
    failed: int
    errors: List[str] = []


class GroupCount(BaseModel):
    value: Optional[str]
    count: int


class KindStats(BaseModel):
    total: int
    new_since: int
    modified_since: int
    by_category: List[GroupCount]
    by_status: List[GroupCount]


class StatsResponse(BaseModel):
    since: datetime
    kinds: Dict[str, KindStats]
    recent_runs: List[ScraperRunOut]


class HealthResponse(BaseModel):
    status: str
    database: str
    redis: str
    scheduler: str
    version: str


class MetricsResponse(BaseModel):
    cache_hits: int
    cache_misses: int
    stale_hits: int
    hit_rate: float
    total_requests: int
    running_modules: List[str]
