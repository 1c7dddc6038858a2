from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple, Type

from sqlalchemy import (
    Column, Integer, String, JSON, Boolean,
    DateTime, Index, ForeignKey, func, Text,
)
from civicwatch.database import Base


# ── Current records ───────────────────────────────────────────────────────────

class Idea(Base):
    __tablename__ = "ideas"

    id              = Column(Integer, primary_key=True)
    external_id     = Column(String(64), nullable=False, unique=True)
    title           = Column(Text, nullable=False)
    description     = Column(Text, nullable=True)
    author          = Column(String(200), nullable=True)
    category        = Column(String(200), nullable=True)
    status          = Column(String(200), nullable=True)
    supporters      = Column(Integer, default=0)
    max_supporters  = Column(Integer, default=50)
    comments        = Column(Integer, default=0)
    comments_data   = Column(JSON, nullable=True)     # [{author, text, date, is_moderator}]
    submitted_at    = Column(String(100), nullable=True)  # as printed by the source
    url             = Column(String(500), nullable=True)
    voting_deadline = Column(String(10), nullable=True)   # YYYY-MM-DD
    voting_expired  = Column(Boolean, default=False)
    supporters_list = Column(JSON, nullable=True)
    ai_title        = Column(Text, nullable=True)
    ai_summary      = Column(Text, nullable=True)
    ai_hashtags     = Column(JSON, nullable=True)
    detail_scraped  = Column(Boolean, default=False)
    detail_scraped_at = Column(DateTime(timezone=True), nullable=True)
    scraped_at      = Column(DateTime(timezone=True), nullable=False)
    first_seen_at   = Column(DateTime(timezone=True), nullable=True)
    modified_at     = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_ideas_category", "category"),
        Index("ix_ideas_status", "status"),
        Index("ix_ideas_scraped_at", "scraped_at"),
        Index("ix_ideas_modified_at", "modified_at"),
        Index("ix_ideas_first_seen_at", "first_seen_at"),
    )


class IssueReport(Base):
    __tablename__ = "issue_reports"

    id             = Column(Integer, primary_key=True)
    external_id    = Column(String(64), nullable=False, unique=True)
    title          = Column(Text, nullable=False)
    description    = Column(Text, nullable=True)
    author         = Column(String(200), nullable=True)
    category       = Column(String(200), nullable=True)
    status         = Column(String(200), nullable=True)
    location       = Column(String(300), nullable=True)
    photo_url      = Column(String(500), nullable=True)
    submitted_at   = Column(String(100), nullable=True)
    url            = Column(String(500), nullable=True)
    status_history = Column(JSON, nullable=True)      # [{timestamp, status}], newest first
    detail_scraped = Column(Boolean, default=False)
    detail_scraped_at = Column(DateTime(timezone=True), nullable=True)
    scraped_at     = Column(DateTime(timezone=True), nullable=False)
    first_seen_at  = Column(DateTime(timezone=True), nullable=True)
    modified_at    = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_issue_reports_category", "category"),
        Index("ix_issue_reports_status", "status"),
        Index("ix_issue_reports_scraped_at", "scraped_at"),
        Index("ix_issue_reports_modified_at", "modified_at"),
        Index("ix_issue_reports_first_seen_at", "first_seen_at"),
    )


class Event(Base):
    __tablename__ = "events"

    id             = Column(Integer, primary_key=True)
    external_id    = Column(String(64), nullable=False, unique=True)
    title          = Column(Text, nullable=False)
    description    = Column(Text, nullable=True)
    category       = Column(String(200), nullable=True)
    mood_category  = Column(String(100), nullable=True)
    status         = Column(String(50), nullable=True)
    start_date     = Column(String(10), nullable=True)   # YYYY-MM-DD
    end_date       = Column(String(10), nullable=True)
    start_time     = Column(String(5), nullable=True)    # HH:MM
    end_time       = Column(String(5), nullable=True)
    dates          = Column(JSON, nullable=True)         # [{date, start_time, end_time}]
    venue_name     = Column(String(300), nullable=True)
    venue_address  = Column(String(300), nullable=True)
    venue_postcode = Column(String(20), nullable=True)
    venue_city     = Column(String(100), nullable=True)
    organizer      = Column(String(300), nullable=True)
    price          = Column(String(300), nullable=True)
    is_free        = Column(Boolean, default=False)
    ticket_url     = Column(String(500), nullable=True)
    image_url      = Column(String(500), nullable=True)
    url            = Column(String(500), nullable=True)
    detail_scraped = Column(Boolean, default=False)
    detail_scraped_at = Column(DateTime(timezone=True), nullable=True)
    scraped_at     = Column(DateTime(timezone=True), nullable=False)
    first_seen_at  = Column(DateTime(timezone=True), nullable=True)
    modified_at    = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_events_start_date", "start_date"),
        Index("ix_events_scraped_at", "scraped_at"),
        Index("ix_events_modified_at", "modified_at"),
        Index("ix_events_first_seen_at", "first_seen_at"),
    )


# ── Append-only history ───────────────────────────────────────────────────────

class IdeaHistory(Base):
    __tablename__ = "idea_history"

    id             = Column(Integer, primary_key=True)
    idea_id        = Column(Integer, ForeignKey("ideas.id"), nullable=False)
    external_id    = Column(String(64), nullable=False)
    title          = Column(Text, nullable=False)
    description    = Column(Text, nullable=True)
    author         = Column(String(200), nullable=True)
    category       = Column(String(200), nullable=True)
    status         = Column(String(200), nullable=True)
    supporters     = Column(Integer, default=0)
    max_supporters = Column(Integer, default=50)
    comments       = Column(Integer, default=0)
    submitted_at   = Column(String(100), nullable=True)
    url            = Column(String(500), nullable=True)
    changed_at     = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_idea_history_owner", "idea_id"),
        Index("ix_idea_history_changed_at", "changed_at"),
    )


class IssueReportHistory(Base):
    __tablename__ = "issue_report_history"

    id              = Column(Integer, primary_key=True)
    issue_report_id = Column(Integer, ForeignKey("issue_reports.id"), nullable=False)
    external_id     = Column(String(64), nullable=False)
    title           = Column(Text, nullable=False)
    description     = Column(Text, nullable=True)
    author          = Column(String(200), nullable=True)
    category        = Column(String(200), nullable=True)
    status          = Column(String(200), nullable=True)
    location        = Column(String(300), nullable=True)
    photo_url       = Column(String(500), nullable=True)
    submitted_at    = Column(String(100), nullable=True)
    url             = Column(String(500), nullable=True)
    changed_at      = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_issue_report_history_owner", "issue_report_id"),
        Index("ix_issue_report_history_changed_at", "changed_at"),
    )


class EventHistory(Base):
    __tablename__ = "event_history"

    id          = Column(Integer, primary_key=True)
    event_id    = Column(Integer, ForeignKey("events.id"), nullable=False)
    external_id = Column(String(64), nullable=False)
    title       = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    category    = Column(String(200), nullable=True)
    status      = Column(String(50), nullable=True)
    start_date  = Column(String(10), nullable=True)
    start_time  = Column(String(5), nullable=True)
    venue_name  = Column(String(300), nullable=True)
    price       = Column(String(300), nullable=True)
    url         = Column(String(500), nullable=True)
    changed_at  = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_event_history_owner", "event_id"),
        Index("ix_event_history_changed_at", "changed_at"),
    )


# ── Run / module bookkeeping ──────────────────────────────────────────────────

class ScraperRun(Base):
    __tablename__ = "scraper_runs"

    id            = Column(Integer, primary_key=True)
    module_key    = Column(String(100), nullable=False)
    triggered_by  = Column(String(50), default="manual")  # manual | scheduler
    started_at    = Column(DateTime(timezone=True), nullable=False)
    ended_at      = Column(DateTime(timezone=True), nullable=True)
    items_scraped = Column(Integer, default=0)
    items_new     = Column(Integer, default=0)
    items_updated = Column(Integer, default=0)
    success       = Column(Boolean, default=False)
    error         = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_runs_module", "module_key"),
        Index("ix_runs_started", "started_at"),
    )


class ModuleConfig(Base):
    __tablename__ = "module_configs"

    id               = Column(Integer, primary_key=True)
    key              = Column(String(100), nullable=False, unique=True)
    name             = Column(String(200), nullable=False)
    description      = Column(Text, nullable=True)
    enabled          = Column(Boolean, nullable=False, default=True)
    interval_minutes = Column(Integer, nullable=False, default=60)
    last_run         = Column(DateTime(timezone=True), nullable=True)
    next_run         = Column(DateTime(timezone=True), nullable=True)
    created_at       = Column(DateTime(timezone=True), server_default=func.now())
    updated_at       = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_module_enabled", "enabled"),
        Index("ix_module_next_run", "next_run"),
    )


class PlatformSummary(Base):
    __tablename__ = "platform_summaries"

    id          = Column(Integer, primary_key=True)
    module_key  = Column(String(100), nullable=False)
    summary     = Column(Text, nullable=False)
    item_count  = Column(Integer, nullable=False)
    created_at  = Column(DateTime(timezone=True), nullable=False)
    valid_until = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_summary_module", "module_key"),
        Index("ix_summary_created", "created_at"),
    )


# ── Record kinds ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RecordKind:
    """Binds a record table to its history table and change-detection fields.

    ``content_fields`` decide whether an incoming record counts as a change;
    ``snapshot_fields`` are copied into the history row when it does.
    ``detail_fields`` only come from a detail page and survive a later
    crawl whose detail fetch failed.
    """

    name: str
    model: Type[Base]
    history_model: Type[Base]
    owner_column: str
    content_fields: Tuple[str, ...]
    snapshot_fields: Tuple[str, ...]
    detail_fields: Tuple[str, ...] = ()


IDEAS = RecordKind(
    name="ideas",
    model=Idea,
    history_model=IdeaHistory,
    owner_column="idea_id",
    content_fields=("title", "description", "status", "category", "supporters"),
    snapshot_fields=(
        "external_id", "title", "description", "author", "category", "status",
        "supporters", "max_supporters", "comments", "submitted_at", "url",
    ),
    detail_fields=(
        "description", "comments_data", "voting_deadline", "voting_expired",
        "supporters_list", "ai_title", "ai_summary", "ai_hashtags",
    ),
)

ISSUES = RecordKind(
    name="issues",
    model=IssueReport,
    history_model=IssueReportHistory,
    owner_column="issue_report_id",
    content_fields=("title", "description", "status", "category", "location"),
    snapshot_fields=(
        "external_id", "title", "description", "author", "category", "status",
        "location", "photo_url", "submitted_at", "url",
    ),
    detail_fields=("description", "photo_url", "status_history"),
)

EVENTS = RecordKind(
    name="events",
    model=Event,
    history_model=EventHistory,
    owner_column="event_id",
    content_fields=(
        "title", "description", "status", "category",
        "start_date", "start_time", "venue_name", "price",
    ),
    snapshot_fields=(
        "external_id", "title", "description", "category", "status",
        "start_date", "start_time", "venue_name", "price", "url",
    ),
    detail_fields=(
        "description", "category", "mood_category", "start_date", "end_date",
        "start_time", "end_time", "dates", "venue_name", "venue_address",
        "venue_postcode", "venue_city", "organizer", "price", "is_free",
        "ticket_url", "image_url",
    ),
)

RECORD_KINDS: Dict[str, RecordKind] = {k.name: k for k in (IDEAS, ISSUES, EVENTS)}
