"""
store.py — Ingestion Store facade.

High-level async persistence API over an AsyncSession. Services and routes call these
functions; nothing else touches the ORM models directly.

Design principles:
  - Every function takes the AsyncSession as its first parameter
  - ORM-only queries, no raw SQL
  - flush() not commit(): the caller (get_db or the owning service) decides the transaction
  - Logs only ids and counts, never payloads, IP addresses or user agents
  - Returns plain dicts / Pydantic objects, not ORM instances
  - Aggregates are replaced wholesale, never merged; consent rows are never deleted
"""
import base64
import binascii
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from cvplus_analytics.engine.schemas import (
    AggregationPeriod,
    AnalyticsAggregate,
    EventRecord,
    as_utc,
)
from cvplus_analytics.models.analytics_aggregate import AnalyticsAggregateORM
from cvplus_analytics.models.analytics_event import AnalyticsEventORM
from cvplus_analytics.models.consent_record import ConsentRecordORM
from cvplus_analytics.sdk.schemas import ConsentRecord

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Cursor encoding
# ---------------------------------------------------------------------------

def encode_cursor(occurred_at: datetime, event_id: str) -> str:
    raw = f"{as_utc(occurred_at).isoformat()}|{event_id}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> Tuple[datetime, str]:
    """Raises ValueError for a cursor this module did not produce."""
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
        occurred_at, event_id = raw.split("|", 1)
        return as_utc(datetime.fromisoformat(occurred_at)), event_id
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise ValueError("Invalid pagination cursor") from exc


def _row_to_mapping(orm: AnalyticsEventORM) -> Dict[str, Any]:
    return {
        "id": orm.id,
        "entity_type": orm.entity_type,
        "entity_id": orm.entity_id,
        "event_type": orm.event_type,
        "event_name": orm.event_name,
        "session_id": orm.session_id,
        "user_id": orm.user_id,
        "occurred_at": as_utc(orm.occurred_at),
        "duration_ms": orm.duration_ms,
        "country": orm.country,
        "referrer": orm.referrer,
        "is_bot": orm.is_bot,
        "is_anonymized": orm.is_anonymized,
        "payload": orm.payload,
    }


def _row_to_record(orm: AnalyticsEventORM) -> EventRecord:
    return EventRecord(
        event_id=orm.id,
        entity_type=orm.entity_type,
        entity_id=orm.entity_id,
        event_type=orm.event_type,
        event_name=orm.event_name,
        session_id=orm.session_id,
        user_id=orm.user_id,
        occurred_at=as_utc(orm.occurred_at),
        is_anonymized=orm.is_anonymized,
        payload=orm.payload or {},
    )


# ---------------------------------------------------------------------------
# Event operations
# ---------------------------------------------------------------------------

async def existing_event_ids(db: AsyncSession, event_ids: Sequence[str]) -> Set[str]:
    """Ids from `event_ids` that are already stored (re-sent batches are idempotent)."""
    if not event_ids:
        return set()
    result = await db.execute(
        select(AnalyticsEventORM.id).where(AnalyticsEventORM.id.in_(list(event_ids)))
    )
    return set(result.scalars().all())


async def append_events(db: AsyncSession, rows: Iterable[AnalyticsEventORM]) -> int:
    rows = list(rows)
    db.add_all(rows)
    await db.flush()
    logger.info("Appended %d analytics events", len(rows))
    return len(rows)


async def get_event(db: AsyncSession, event_id: str) -> Optional[EventRecord]:
    orm = await db.get(AnalyticsEventORM, event_id)
    return _row_to_record(orm) if orm is not None else None


async def fetch_window_events(
    db: AsyncSession,
    entity_type: str,
    entity_id: str,
    start: datetime,
    end: datetime,
    page_size: int = 1000,
) -> List[Dict[str, Any]]:
    """
    Every raw row for one entity in [start, end), bot traffic excluded, oldest first.
    Read in keyset pages of `page_size` until the window is exhausted; nothing is cut off.
    Returned as plain mappings; the aggregation engine validates each one itself.
    """
    base = (
        select(AnalyticsEventORM)
        .where(
            AnalyticsEventORM.entity_type == entity_type,
            AnalyticsEventORM.entity_id == entity_id,
            AnalyticsEventORM.occurred_at >= as_utc(start),
            AnalyticsEventORM.occurred_at < as_utc(end),
            AnalyticsEventORM.is_bot.is_(False),
        )
        .order_by(AnalyticsEventORM.occurred_at, AnalyticsEventORM.id)
    )
    rows: List[Dict[str, Any]] = []
    after: Optional[Tuple[datetime, str]] = None
    pages = 0
    while True:
        stmt = base
        if after is not None:
            after_ts, after_id = after
            stmt = stmt.where(
                or_(
                    AnalyticsEventORM.occurred_at > after_ts,
                    and_(AnalyticsEventORM.occurred_at == after_ts, AnalyticsEventORM.id > after_id),
                )
            )
        result = await db.execute(stmt.limit(page_size))
        batch = list(result.scalars().all())
        pages += 1
        rows.extend(_row_to_mapping(orm) for orm in batch)
        if len(batch) < page_size:
            break
        after = (as_utc(batch[-1].occurred_at), batch[-1].id)

    if pages > 1:
        logger.debug(
            "Window fetch read %d rows in %d pages entity=%s:%s",
            len(rows), pages, entity_type, entity_id,
        )
    return rows


async def query_events(
    db: AsyncSession,
    entity_type: str,
    entity_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    event_types: Optional[Sequence[str]] = None,
    limit: int = 100,
    cursor: Optional[str] = None,
) -> Tuple[List[EventRecord], Optional[str]]:
    """
    Keyset-paginated event listing ordered by (occurred_at, id).
    Returns (page, next_cursor); next_cursor is None on the last page.
    """
    stmt = select(AnalyticsEventORM).where(
        AnalyticsEventORM.entity_type == entity_type,
        AnalyticsEventORM.entity_id == entity_id,
    )
    if start is not None:
        stmt = stmt.where(AnalyticsEventORM.occurred_at >= as_utc(start))
    if end is not None:
        stmt = stmt.where(AnalyticsEventORM.occurred_at < as_utc(end))
    if event_types:
        stmt = stmt.where(AnalyticsEventORM.event_type.in_(list(event_types)))
    if cursor:
        after_ts, after_id = decode_cursor(cursor)
        stmt = stmt.where(
            or_(
                AnalyticsEventORM.occurred_at > after_ts,
                and_(AnalyticsEventORM.occurred_at == after_ts, AnalyticsEventORM.id > after_id),
            )
        )
    stmt = stmt.order_by(AnalyticsEventORM.occurred_at, AnalyticsEventORM.id).limit(limit + 1)

    result = await db.execute(stmt)
    rows = list(result.scalars().all())
    has_more = len(rows) > limit
    page = [_row_to_record(orm) for orm in rows[:limit]]
    next_cursor = encode_cursor(page[-1].occurred_at, page[-1].event_id) if has_more and page else None
    return page, next_cursor


# ---------------------------------------------------------------------------
# Aggregate operations
# ---------------------------------------------------------------------------

def _aggregate_from_orm(orm: AnalyticsAggregateORM) -> AnalyticsAggregate:
    return AnalyticsAggregate(
        id=orm.id,
        entity_type=orm.entity_type,
        entity_id=orm.entity_id,
        period=AggregationPeriod(orm.period),
        window_start=as_utc(orm.window_start),
        window_end=as_utc(orm.window_end),
        metrics=orm.metrics,
        data_completeness=orm.data_completeness,
        last_updated=as_utc(orm.last_updated),
    )


async def upsert_aggregate(db: AsyncSession, aggregate: AnalyticsAggregate) -> None:
    """
    Insert or fully replace the aggregate row for its deterministic id.
    Every column is overwritten, so two writers for the same window converge.
    """
    values = {
        "entity_type": aggregate.entity_type,
        "entity_id": aggregate.entity_id,
        "period": aggregate.period.value,
        "window_start": aggregate.window_start,
        "window_end": aggregate.window_end,
        "metrics": aggregate.metrics.model_dump(mode="json"),
        "data_completeness": aggregate.data_completeness,
        "last_updated": aggregate.last_updated,
    }
    orm = await db.get(AnalyticsAggregateORM, aggregate.id)
    if orm is None:
        db.add(AnalyticsAggregateORM(id=aggregate.id, **values))
    else:
        for column, value in values.items():
            setattr(orm, column, value)
    await db.flush()
    logger.info("Stored aggregate id=%s completeness=%.1f", aggregate.id, aggregate.data_completeness)


async def get_aggregate(db: AsyncSession, aggregate_id: str) -> Optional[AnalyticsAggregate]:
    orm = await db.get(AnalyticsAggregateORM, aggregate_id)
    return _aggregate_from_orm(orm) if orm is not None else None


async def query_aggregates(
    db: AsyncSession,
    entity_type: str,
    entity_id: str,
    period: AggregationPeriod,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> List[AnalyticsAggregate]:
    """Aggregates whose window starts in [start, end), oldest first."""
    stmt = select(AnalyticsAggregateORM).where(
        AnalyticsAggregateORM.entity_type == entity_type,
        AnalyticsAggregateORM.entity_id == entity_id,
        AnalyticsAggregateORM.period == period.value,
    )
    if start is not None:
        stmt = stmt.where(AnalyticsAggregateORM.window_start >= as_utc(start))
    if end is not None:
        stmt = stmt.where(AnalyticsAggregateORM.window_start < as_utc(end))
    result = await db.execute(stmt.order_by(AnalyticsAggregateORM.window_start))
    return [_aggregate_from_orm(orm) for orm in result.scalars().all()]


# ---------------------------------------------------------------------------
# Consent audit trail
# ---------------------------------------------------------------------------

async def record_consent(db: AsyncSession, record: ConsentRecord) -> None:
    """Append one consent state. An id already stored is left untouched."""
    if await db.get(ConsentRecordORM, record.consent_id) is not None:
        return
    db.add(ConsentRecordORM(
        id=record.consent_id,
        identity=record.identity,
        is_anonymous=record.is_anonymous,
        categories={c.value: granted for c, granted in record.categories.items()},
        mechanism=record.mechanism.value,
        withdrawn=record.withdrawn,
        withdrawn_at=record.withdrawn_at,
        recorded_at=record.recorded_at,
    ))
    await db.flush()
    logger.info("Recorded consent consent_id=%s withdrawn=%s", record.consent_id, record.withdrawn)


async def get_consent_history(db: AsyncSession, identity: str) -> List[ConsentRecord]:
    result = await db.execute(
        select(ConsentRecordORM)
        .where(ConsentRecordORM.identity == identity)
        .order_by(ConsentRecordORM.recorded_at, ConsentRecordORM.created_at)
    )
    return [
        ConsentRecord(
            consent_id=orm.id,
            identity=orm.identity,
            is_anonymous=orm.is_anonymous,
            categories=orm.categories,
            mechanism=orm.mechanism,
            recorded_at=as_utc(orm.recorded_at),
            withdrawn=orm.withdrawn,
            withdrawn_at=as_utc(orm.withdrawn_at) if orm.withdrawn_at else None,
        )
        for orm in result.scalars().all()
    ]


# ---------------------------------------------------------------------------
# Retention maintenance
# ---------------------------------------------------------------------------

async def anonymize_old_events(
    db: AsyncSession, cutoff: datetime, batch_size: int
) -> Tuple[int, List[Tuple[str, str]]]:
    """
    Strip identifying fields from up to `batch_size` events that occurred before `cutoff`.
    Returns (rows changed, sorted (entity_type, entity_id) pairs) so callers can invalidate caches.
    """
    result = await db.execute(
        select(AnalyticsEventORM)
        .where(
            AnalyticsEventORM.occurred_at < as_utc(cutoff),
            AnalyticsEventORM.is_anonymized.is_(False),
        )
        .order_by(AnalyticsEventORM.occurred_at)
        .limit(batch_size)
    )
    touched = set()
    rows = result.scalars().all()
    for orm in rows:
        orm.ip_address = None
        orm.user_agent = None
        orm.device_id = None
        orm.user_id = None
        payload = {k: v for k, v in (orm.payload or {}).items() if k not in ("properties", "context", "user_id", "device_id")}
        orm.payload = payload
        orm.is_anonymized = True
        touched.add((orm.entity_type, orm.entity_id))
    await db.flush()
    logger.info("Anonymized %d events older than %s", len(rows), as_utc(cutoff).isoformat())
    return len(rows), sorted(touched)


async def delete_expired_events(
    db: AsyncSession, now: datetime, batch_size: int
) -> Tuple[int, List[Tuple[str, str]]]:
    """Delete up to `batch_size` events past their retention expiry. Returns (rows deleted, entities)."""
    result = await db.execute(
        select(AnalyticsEventORM.id, AnalyticsEventORM.entity_type, AnalyticsEventORM.entity_id)
        .where(AnalyticsEventORM.retention_expires_at <= as_utc(now))
        .order_by(AnalyticsEventORM.retention_expires_at)
        .limit(batch_size)
    )
    rows = result.all()
    if rows:
        await db.execute(delete(AnalyticsEventORM).where(AnalyticsEventORM.id.in_([r.id for r in rows])))
        await db.flush()
    logger.info("Deleted %d expired events", len(rows))
    return len(rows), sorted({(r.entity_type, r.entity_id) for r in rows})
