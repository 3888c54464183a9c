"""
aggregation.py — Aggregation Engine.

compute_aggregate() is a pure function: raw rows in, AnalyticsAggregate out, no I/O and
no clock reads (`as_of` is passed in). Same rows and same as_of give a byte-identical
result regardless of the order the rows arrive in, so the stored record can simply be
overwritten on every recomputation.

Definitions used throughout:
  views           event_type in {view, page}
  unique_sessions distinct session ids among view events
  bounce_rate     sessions with exactly one event of any type ÷ all sessions in the window
  engagement      mean over sessions of the longest duration_ms reported in that session
  conversions     contact_form_submit + calendar_booking, rate over unique_sessions
  breakdowns      share of all events in the window, top-N, ties in first-seen order
  percentages     0-100, rounded to one decimal

AggregationEngine wraps the pure function with the store (fetch window, upsert) and a
read-through TTL cache for aggregate queries.
"""
import logging
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cvplus_analytics import store
from cvplus_analytics.cache import AGGREGATES_PREFIX, TTLCache, make_entity_prefix, make_query_key
from cvplus_analytics.engine.schemas import (
    AggregateMetrics,
    AggregationPeriod,
    AnalyticsAggregate,
    BreakdownEntry,
    StoredEvent,
    UsageEntry,
    as_utc,
)
from cvplus_analytics.sdk.schemas import utcnow

logger = logging.getLogger(__name__)

VIEW_TYPES = frozenset({"view", "page"})
DOWNLOAD_TYPES = frozenset({"download", "cv_downloaded"})
SHARE_TYPES = frozenset({"social_share", "cv_shared"})
CONTACT_TYPES = frozenset({"contact_form_submit"})
BOOKING_TYPES = frozenset({"calendar_booking"})
SECTION_TYPES = frozenset({"section_view"})
FEATURE_TYPES = frozenset({"feature_interaction", "feature_used"})


def _pct(part: float, whole: float) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


# ---------------------------------------------------------------------------
# Row parsing
# ---------------------------------------------------------------------------

def _dig(payload: Any, *path: str) -> Any:
    node = payload
    for key in path:
        if not isinstance(node, Mapping):
            return None
        node = node.get(key)
    return node


def _detail(payload: Any, kind: str) -> Mapping:
    for detail in _dig(payload, "properties", "details") or []:
        if isinstance(detail, Mapping) and detail.get("kind") == kind:
            return detail
    return {}


def parse_row(row: Mapping[str, Any]) -> StoredEvent:
    """
    Normalize one stored row. Column values win; anything only present in the client
    payload (device, browser, section, feature) is read from it.
    Raises ValidationError or TypeError for a row that cannot be used.
    """
    payload = row.get("payload") or {}
    if not isinstance(payload, Mapping):
        raise TypeError("payload is not an object")
    extra = _dig(payload, "properties", "extra") or {}
    feature_id = (
        extra.get("feature_id")
        or _detail(payload, "cv").get("feature")
        or _detail(payload, "premium").get("feature_id")
    )
    return StoredEvent.model_validate({
        "event_id": row.get("id"),
        "event_type": row.get("event_type"),
        "session_id": row.get("session_id"),
        "occurred_at": row.get("occurred_at"),
        "duration_ms": row.get("duration_ms"),
        "country": row.get("country"),
        "referrer": row.get("referrer"),
        "device_type": _dig(payload, "context", "device", "type"),
        "browser": _dig(payload, "context", "browser", "name"),
        "section_id": extra.get("section_id"),
        "feature_id": feature_id,
    })


# ---------------------------------------------------------------------------
# Rollups
# ---------------------------------------------------------------------------

def _breakdown(values: Iterable[str], total: int, top_n: int) -> List[BreakdownEntry]:
    # Counter keeps first-insertion order and sorted() is stable: ties stay first-seen.
    counts = Counter(values)
    ranked = sorted(counts.items(), key=lambda item: -item[1])[:top_n]
    return [BreakdownEntry(key=key, count=count, percentage=_pct(count, total)) for key, count in ranked]


def _usage(pairs: Iterable[Tuple[str, Optional[float]]], top_n: int) -> List[UsageEntry]:
    stats: Dict[str, List[float]] = {}   # key -> [count, duration samples, running mean]
    for key, duration in pairs:
        entry = stats.setdefault(key, [0, 0, 0.0])
        entry[0] += 1
        if duration is not None:
            entry[1] += 1
            entry[2] += (duration - entry[2]) / entry[1]
    ranked = sorted(stats.items(), key=lambda item: -item[1][0])[:top_n]
    return [
        UsageEntry(key=key, count=int(count), average_duration_ms=round(mean, 1))
        for key, (count, _, mean) in ranked
    ]


def compute_metrics(events: List[StoredEvent], top_n: int = 10) -> AggregateMetrics:
    """Rollups for events already filtered to one window and ordered deterministically."""
    total = len(events)
    by_type = Counter(e.event_type for e in events)

    def count(types: frozenset) -> int:
        return sum(by_type[t] for t in types)

    session_events: Counter = Counter(e.session_id for e in events)
    view_sessions = {e.session_id for e in events if e.event_type in VIEW_TYPES}
    bounced = sum(1 for n in session_events.values() if n == 1)

    longest: Dict[str, float] = {}
    for e in events:
        if e.duration_ms is not None:
            longest[e.session_id] = max(longest.get(e.session_id, 0.0), e.duration_ms)
    engagement = sum(longest.values()) / len(longest) if longest else 0.0

    conversions = count(CONTACT_TYPES) + count(BOOKING_TYPES)

    return AggregateMetrics(
        views=count(VIEW_TYPES),
        downloads=count(DOWNLOAD_TYPES),
        shares=count(SHARE_TYPES),
        contacts=count(CONTACT_TYPES),
        bookings=count(BOOKING_TYPES),
        total_events=total,
        total_sessions=len(session_events),
        unique_sessions=len(view_sessions),
        bounce_rate=_pct(bounced, len(session_events)),
        average_engagement_ms=round(engagement, 1),
        conversions=conversions,
        conversion_rate=_pct(conversions, len(view_sessions)),
        geography=_breakdown((e.country or "unknown" for e in events), total, top_n),
        referrers=_breakdown((e.referrer or "direct" for e in events), total, top_n),
        devices=_breakdown((e.device_type or "unknown" for e in events), total, top_n),
        browsers=_breakdown((e.browser or "unknown" for e in events), total, top_n),
        top_sections=_usage(
            ((e.section_id, e.duration_ms) for e in events if e.event_type in SECTION_TYPES and e.section_id),
            top_n,
        ),
        top_features=_usage(
            ((e.feature_id, e.duration_ms) for e in events if e.event_type in FEATURE_TYPES and e.feature_id),
            top_n,
        ),
    )


def compute_aggregate(
    entity_type: str,
    entity_id: str,
    period: AggregationPeriod,
    window_start: datetime,
    rows: Iterable[Mapping[str, Any]],
    as_of: datetime,
    top_n: int = 10,
) -> AnalyticsAggregate:
    """
    Roll up `rows` for [window_start, window_start + period).

    Rows outside the window are ignored. Rows that fail to parse are skipped and lower
    data_completeness (valid ÷ considered × 100; 100 for an empty window).
    """
    window_start = as_utc(window_start)
    window_end = period.window_end(window_start)

    valid: List[StoredEvent] = []
    malformed = 0
    for row in rows:
        try:
            event = parse_row(row)
        except (ValidationError, TypeError, ValueError):
            malformed += 1
            logger.warning("Skipping malformed stored event id=%s", row.get("id") if isinstance(row, Mapping) else None)
            continue
        if window_start <= event.occurred_at < window_end:
            valid.append(event)

    valid.sort(key=lambda e: (e.occurred_at, e.event_id))
    considered = len(valid) + malformed

    return AnalyticsAggregate(
        id=AnalyticsAggregate.make_id(entity_type, entity_id, period, window_start),
        entity_type=entity_type,
        entity_id=entity_id,
        period=period,
        window_start=window_start,
        window_end=window_end,
        metrics=compute_metrics(valid, top_n=top_n),
        data_completeness=_pct(len(valid), considered) if considered else 100.0,
        last_updated=as_utc(as_of),
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class AggregationEngine:
    """
    Re-entrant: concurrent computations for the same window each write the full
    deterministic record, so the last writer wins with the same value.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: TTLCache,
        top_n: int = 10,
        page_size: int = 1000,
        cache_ttl: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._cache = cache
        self._top_n = top_n
        self._page_size = page_size
        self._cache_ttl = cache_ttl
        self._clock = clock

    async def compute_aggregate(
        self,
        entity_type: str,
        entity_id: str,
        period: AggregationPeriod,
        window_start: datetime,
    ) -> AnalyticsAggregate:
        """
        Fetch the whole window, roll it up and overwrite the stored record.

        `last_updated` comes from the engine clock, so two runs over the same events are
        byte-identical only when that clock returns the same `as_of`.
        """
        window_start = as_utc(window_start)
        window_end = period.window_end(window_start)
        async with self._session_factory() as db:
            rows = await store.fetch_window_events(
                db, entity_type, entity_id, window_start, window_end, page_size=self._page_size
            )
            aggregate = compute_aggregate(
                entity_type, entity_id, period, window_start, rows,
                as_of=self._clock(), top_n=self._top_n,
            )
            await store.upsert_aggregate(db, aggregate)
            await db.commit()

        await self._cache.invalidate_prefix(make_entity_prefix(AGGREGATES_PREFIX, entity_type, entity_id))
        logger.info(
            "Computed aggregate id=%s events=%d completeness=%.1f",
            aggregate.id, aggregate.metrics.total_events, aggregate.data_completeness,
        )
        return aggregate

    async def get_aggregates(
        self,
        entity_type: str,
        entity_id: str,
        period: AggregationPeriod,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[AnalyticsAggregate]:
        key = make_query_key(
            AGGREGATES_PREFIX, entity_type, entity_id,
            period=period.value,
            start=as_utc(start).isoformat() if start else None,
            end=as_utc(end).isoformat() if end else None,
        )
        cached = await self._cache.get(key)
        if cached is not None:
            return [AnalyticsAggregate.model_validate(item) for item in cached]

        async with self._session_factory() as db:
            aggregates = await store.query_aggregates(db, entity_type, entity_id, period, start, end)
        await self._cache.set(key, [a.model_dump(mode="json") for a in aggregates], ttl=self._cache_ttl)
        return aggregates

    async def invalidate_entity(self, entity_type: str, entity_id: str) -> None:
        await self._cache.invalidate_prefix(make_entity_prefix(AGGREGATES_PREFIX, entity_type, entity_id))
