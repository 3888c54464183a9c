"""
schemas.py — server-side Pydantic v2 data contracts.

Defines:
  - EntityType, AggregationPeriod   enums (period knows how to align and close a window)
  - IngestBatch                     wire body of POST /analytics/batch, events left raw
                                    so one bad event cannot fail the whole request
  - StoredEvent                     normalized view of a persisted event row, the only
                                    input shape the aggregation engine trusts
  - BreakdownEntry, UsageEntry      rows of the frequency tables
  - AggregateMetrics, AnalyticsAggregate
  - AnomalyFlag, RealTimeAnalytics
  - ComputeRequest, EventRecord, EventPage   query interface models
"""
import calendar
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def as_utc(value: datetime) -> datetime:
    """Naive datetimes (SQLite round-trips) are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class EntityType(str, Enum):
    profile = "profile"       # public CV profile
    cv = "cv"
    user = "user"
    application = "application"
    feature = "feature"


class AggregationPeriod(str, Enum):
    hour = "hour"
    day = "day"
    week = "week"
    month = "month"

    def align(self, ts: datetime) -> datetime:
        """Start of the window of this period containing `ts` (weeks start on Monday)."""
        ts = as_utc(ts)
        if self is AggregationPeriod.hour:
            return ts.replace(minute=0, second=0, microsecond=0)
        day = ts.replace(hour=0, minute=0, second=0, microsecond=0)
        if self is AggregationPeriod.day:
            return day
        if self is AggregationPeriod.week:
            return day - timedelta(days=day.weekday())
        return day.replace(day=1)

    def window_end(self, start: datetime) -> datetime:
        """Exclusive end of the window that opens at `start`."""
        start = as_utc(start)
        if self is AggregationPeriod.hour:
            return start + timedelta(hours=1)
        if self is AggregationPeriod.day:
            return start + timedelta(days=1)
        if self is AggregationPeriod.week:
            return start + timedelta(weeks=1)
        # month: same day-of-month next month, clamped to that month's length
        carry, month_index = divmod(start.month, 12)
        year, month = start.year + carry, month_index + 1
        last_day = calendar.monthrange(year, month)[1]
        return start.replace(year=year, month=month, day=min(start.day, last_day))


# ---------------------------------------------------------------------------
# Ingestion wire body
# ---------------------------------------------------------------------------

class IngestBatch(BaseModel):
    """
    Batch metadata is validated strictly; events stay as raw dicts and are validated one
    by one so each gets its own accept/reject result.
    """
    events: List[Dict[str, Any]] = Field(default_factory=list)
    count: int = Field(default=0, ge=0)
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    timestamp: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Aggregation input
# ---------------------------------------------------------------------------

class StoredEvent(BaseModel):
    """
    One persisted event as the aggregation engine sees it. Rows that cannot be parsed
    into this shape are skipped and lower the aggregate's data_completeness.
    """
    model_config = ConfigDict(extra="ignore")

    event_id: str = Field(..., min_length=1)
    event_type: str = Field(..., min_length=1)
    session_id: str = Field(..., min_length=1)
    occurred_at: datetime
    duration_ms: Optional[float] = Field(default=None, ge=0)
    country: Optional[str] = None
    referrer: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    section_id: Optional[str] = None
    feature_id: Optional[str] = None

    @field_validator("occurred_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

class BreakdownEntry(BaseModel):
    key: str
    count: int
    percentage: float = Field(description="Share of the window's events, 0-100, one decimal")


class UsageEntry(BaseModel):
    key: str
    count: int
    average_duration_ms: float = 0.0


class AggregateMetrics(BaseModel):
    """The closed set of rollups. Percentages and rates are 0-100."""
    views: int = 0
    downloads: int = 0
    shares: int = 0
    contacts: int = 0
    bookings: int = 0
    total_events: int = 0
    total_sessions: int = 0
    unique_sessions: int = Field(default=0, description="Distinct sessions among view events")
    bounce_rate: float = 0.0
    average_engagement_ms: float = 0.0
    conversions: int = 0
    conversion_rate: float = 0.0
    geography: List[BreakdownEntry] = Field(default_factory=list)
    referrers: List[BreakdownEntry] = Field(default_factory=list)
    devices: List[BreakdownEntry] = Field(default_factory=list)
    browsers: List[BreakdownEntry] = Field(default_factory=list)
    top_sections: List[UsageEntry] = Field(default_factory=list)
    top_features: List[UsageEntry] = Field(default_factory=list)


class AnalyticsAggregate(BaseModel):
    id: str
    entity_type: str
    entity_id: str
    period: AggregationPeriod
    window_start: datetime
    window_end: datetime
    metrics: AggregateMetrics
    data_completeness: float = 100.0
    last_updated: datetime

    @staticmethod
    def make_id(entity_type: str, entity_id: str, period: AggregationPeriod, window_start: datetime) -> str:
        return f"{entity_type}:{entity_id}:{period.value}:{as_utc(window_start).isoformat()}"


# ---------------------------------------------------------------------------
# Realtime
# ---------------------------------------------------------------------------

class AnomalyFlag(BaseModel):
    kind: str
    detected_at: datetime
    value: float


class RealTimeAnalytics(BaseModel):
    """Short-window counters for one entity. Overwritten on every bump; no history."""
    entity_type: str
    entity_id: str
    current_users: int = 0
    recent_events: int = 0
    last_hour_views: int = 0
    traffic_spike: bool = False
    anomalies: List[AnomalyFlag] = Field(default_factory=list)
    window_started_at: datetime
    hour_started_at: datetime
    updated_at: datetime


# ---------------------------------------------------------------------------
# Query interface
# ---------------------------------------------------------------------------

class ComputeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    entity_type: EntityType
    entity_id: str = Field(..., min_length=1, max_length=128)
    period: AggregationPeriod
    window_start: datetime = Field(description="Window opening instant; aligned to the period when align=true")
    align: bool = False


class EventRecord(BaseModel):
    event_id: str
    entity_type: str
    entity_id: str
    event_type: str
    event_name: str
    session_id: str
    user_id: Optional[str] = None
    occurred_at: datetime
    is_anonymized: bool = False
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventPage(BaseModel):
    events: List[EventRecord]
    next_cursor: Optional[str] = None
