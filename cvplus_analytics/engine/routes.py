"""
routes.py — analytics HTTP endpoints.

POST /analytics/batch                                  — ingestion endpoint used by the SDK transport
GET  /api/analytics/aggregates                         — stored aggregates for an entity and period
POST /api/analytics/aggregates/compute                 — compute (or recompute) one window now
GET  /api/analytics/events                             — raw events, cursor-paginated
GET  /api/analytics/realtime/{entity_type}/{entity_id} — current short-window counters

Thin layer: parse, call the service on app.state, shape the response.
app.state resources (ingestion, aggregation, realtime, cache) are set in main.py lifespan.
Key check applies only when settings.api_keys is non-empty.
"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from cvplus_analytics import store
from cvplus_analytics.cache import EVENTS_PREFIX, make_query_key
from cvplus_analytics.config import settings
from cvplus_analytics.database import get_db
from cvplus_analytics.engine.schemas import (
    AggregationPeriod,
    AnalyticsAggregate,
    ComputeRequest,
    EntityType,
    EventPage,
    IngestBatch,
    RealTimeAnalytics,
    as_utc,
)
from cvplus_analytics.sdk.schemas import BatchResponse

logger = logging.getLogger(__name__)

ingest_router = APIRouter(tags=["Ingestion"])
router = APIRouter(prefix="/api/analytics", tags=["Analytics"])


async def require_api_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    allowed = settings.api_keys_list
    if allowed and x_api_key not in allowed:
        raise HTTPException(status_code=401, detail="Missing or invalid API key")


def _check_range(start: Optional[datetime], end: Optional[datetime]) -> None:
    if start is not None and end is not None and as_utc(end) <= as_utc(start):
        raise ValueError("end_date must be after start_date")


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

@ingest_router.post("/analytics/batch", response_model=BatchResponse, dependencies=[Depends(require_api_key)])
async def ingest_batch(body: IngestBatch, request: Request) -> BatchResponse:
    """
    Accept a batch from the SDK. Always 200 for a well-formed body: per-event problems
    are reported in `events[]` with success=false.
    """
    client_ip = request.client.host if request.client else None
    return await request.app.state.ingestion.ingest_batch(body, client_ip=client_ip)


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

@router.get("/aggregates", response_model=List[AnalyticsAggregate])
async def get_aggregates(
    request: Request,
    entity_type: EntityType,
    entity_id: str = Query(..., min_length=1, max_length=128),
    period: AggregationPeriod = AggregationPeriod.day,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> List[AnalyticsAggregate]:
    _check_range(start_date, end_date)
    return await request.app.state.aggregation.get_aggregates(
        entity_type.value, entity_id, period, start_date, end_date
    )


@router.post("/aggregates/compute", response_model=AnalyticsAggregate, dependencies=[Depends(require_api_key)])
async def compute_aggregate(body: ComputeRequest, request: Request) -> AnalyticsAggregate:
    window_start = body.period.align(body.window_start) if body.align else as_utc(body.window_start)
    logger.info(
        "Compute requested entity=%s:%s period=%s start=%s",
        body.entity_type.value, body.entity_id, body.period.value, window_start.isoformat(),
    )
    return await request.app.state.aggregation.compute_aggregate(
        body.entity_type.value, body.entity_id, body.period, window_start
    )


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@router.get("/events", response_model=EventPage)
async def get_events(
    request: Request,
    entity_type: EntityType,
    entity_id: str = Query(..., min_length=1, max_length=128),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    event_types: Optional[List[str]] = Query(default=None),
    limit: int = Query(default=100, ge=1),
    cursor: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
) -> EventPage:
    """Events ordered by time. Pass `next_cursor` back as `cursor` for the following page."""
    _check_range(start_date, end_date)
    limit = min(limit, settings.query_max_limit)
    cache = request.app.state.cache
    key = make_query_key(
        EVENTS_PREFIX, entity_type.value, entity_id,
        start=start_date.isoformat() if start_date else None,
        end=end_date.isoformat() if end_date else None,
        types=sorted(event_types or []),
        limit=limit,
        cursor=cursor,
    )
    cached = await cache.get(key)
    if cached is not None:
        return EventPage.model_validate(cached)

    events, next_cursor = await store.query_events(
        db, entity_type.value, entity_id, start_date, end_date, event_types, limit, cursor
    )
    page = EventPage(events=events, next_cursor=next_cursor)
    await cache.set(key, page.model_dump(mode="json"), ttl=settings.cache_ttl_seconds)
    return page


# ---------------------------------------------------------------------------
# Realtime
# ---------------------------------------------------------------------------

@router.get("/realtime/{entity_type}/{entity_id}", response_model=RealTimeAnalytics)
async def get_realtime(entity_type: EntityType, entity_id: str, request: Request) -> RealTimeAnalytics:
    state = await request.app.state.realtime.get(entity_type.value, entity_id)
    if state is None:
        raise HTTPException(status_code=404, detail=f"No realtime data for {entity_type.value}:{entity_id}")
    return state
