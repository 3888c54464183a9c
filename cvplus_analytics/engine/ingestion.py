"""
ingestion.py — server side of POST /analytics/batch.

IngestionService.ingest_batch():
  1. Empty batch → accepted=0, no database work
  2. Each raw event is parsed and re-validated on its own; failures become per-event
     rejections, never a whole-request error
  3. Event ids already stored are reported as accepted again (client retries after a
     lost response must not duplicate rows)
  4. Accepted events are normalized into analytics_events rows:
       entity      properties.extra.entity_type / entity_id, else ("application", app name)
       event_type  client `page` stored as `view`
       ip          only with analytics consent; anonymized (IPv4 /24, IPv6 /48) when the
                   event's privacy block says so
       is_bot      user agent matches a crawler pattern
       retention   occurred_at + event_retention_days
  5. One commit for the batch, then cache invalidation and fire-and-forget realtime bumps
     for non-bot events

Retention maintenance (anonymize_old_events, delete_expired_events) lives here too
because it is the only other writer of analytics_events.
"""
import ipaddress
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cvplus_analytics import store
from cvplus_analytics.cache import EVENTS_PREFIX, TTLCache, make_entity_prefix
from cvplus_analytics.engine.aggregation import AggregationEngine
from cvplus_analytics.engine.realtime import RealtimeCounter
from cvplus_analytics.engine.schemas import EntityType, IngestBatch, as_utc
from cvplus_analytics.models.analytics_event import AnalyticsEventORM
from cvplus_analytics.sdk.schemas import (
    AnalyticsEvent,
    BatchResponse,
    ConsentCategory,
    ConsentMechanism,
    ConsentRecord,
    EventType,
    PerEventResult,
    utcnow,
)
from cvplus_analytics.sdk.validator import validate_event

logger = logging.getLogger(__name__)

CONSENT_EVENT_NAME = "consent_updated"
_BOT_PATTERN = re.compile(r"bot|crawl|spider|slurp|headless|lighthouse|preview|monitor", re.IGNORECASE)


def anonymize_ip(ip: Optional[str]) -> Optional[str]:
    """IPv4 keeps the /24 (last octet zeroed), IPv6 keeps the /48. Unparseable input is dropped."""
    if not ip:
        return None
    try:
        address = ipaddress.ip_address(ip.strip())
    except ValueError:
        return None
    prefix = 24 if address.version == 4 else 48
    return str(ipaddress.ip_network(f"{address}/{prefix}", strict=False).network_address)


def is_bot(user_agent: Optional[str]) -> bool:
    return bool(user_agent) and _BOT_PATTERN.search(user_agent) is not None


def resolve_entity(event: AnalyticsEvent) -> Tuple[str, str]:
    extra = event.properties.extra
    entity_type = extra.get("entity_type")
    entity_id = extra.get("entity_id")
    if entity_type in {e.value for e in EntityType} and isinstance(entity_id, str) and entity_id:
        return entity_type, entity_id
    app_name = event.context.app.name if event.context else "unknown"
    return EntityType.application.value, app_name


def event_duration_ms(event: AnalyticsEvent) -> Optional[float]:
    action = event.properties.get("action")
    if action is not None and action.duration is not None:
        return float(action.duration)
    for key in ("duration_ms", "duration"):
        value = event.properties.extra.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
            return float(value)
    return None


def stored_event_type(event_type: EventType) -> str:
    return EventType.view.value if event_type is EventType.page else event_type.value


class IngestionService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cache: TTLCache,
        realtime: Optional[RealtimeCounter] = None,
        aggregation: Optional[AggregationEngine] = None,
        retention_days: int = 90,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._cache = cache
        self._realtime = realtime
        self._aggregation = aggregation
        self._retention = timedelta(days=retention_days)
        self._clock = clock

    # ------------------------------------------------------------------
    # Per-event normalization
    # ------------------------------------------------------------------

    def _parse(self, raw: Dict[str, Any]) -> Tuple[Optional[AnalyticsEvent], Optional[str]]:
        try:
            event = AnalyticsEvent.model_validate(raw)
        except ValidationError as exc:
            first = exc.errors()[0]
            loc = ".".join(str(part) for part in first["loc"])
            return None, f"{loc}: {first['msg']}" if loc else first["msg"]
        result = validate_event(event)
        if not result.valid:
            return None, "; ".join(result.errors)
        return result.enriched, None

    def _to_row(self, event: AnalyticsEvent, client_ip: Optional[str]) -> AnalyticsEventORM:
        entity_type, entity_id = resolve_entity(event)
        occurred_at = as_utc(event.timestamp)
        context = event.context
        privacy = event.privacy
        user_agent = context.user_agent if context else None

        ip = None
        if privacy.consent_given:
            raw_ip = (context.ip if context else None) or client_ip
            ip = anonymize_ip(raw_ip) if privacy.anonymized else raw_ip

        payload = event.model_copy(update={"processed": True}).model_dump(mode="json")
        if payload.get("context"):
            payload["context"]["ip"] = ip

        return AnalyticsEventORM(
            id=event.event_id,
            entity_type=entity_type,
            entity_id=entity_id,
            event_type=stored_event_type(event.event_type),
            event_name=event.event_name,
            session_id=event.session_id,
            user_id=event.user_id,
            device_id=event.device_id or None,
            occurred_at=occurred_at,
            duration_ms=event_duration_ms(event),
            country=context.location.country if context else None,
            referrer=context.referrer if context else None,
            user_agent=user_agent or None,
            ip_address=ip,
            payload=payload,
            is_bot=is_bot(user_agent),
            is_anonymized=False,
            retention_expires_at=occurred_at + self._retention,
        )

    @staticmethod
    def _consent_audit(event: AnalyticsEvent) -> Optional[ConsentRecord]:
        """Consent-change events also land in the append-only consent_records table."""
        if event.event_name != CONSENT_EVENT_NAME:
            return None
        extra = event.properties.extra
        granted = extra.get("consent_categories")
        if not isinstance(granted, list):
            return None
        known = {c.value for c in ConsentCategory}
        withdrawn = [c for c in extra.get("withdrawn_categories") or [] if c in known]
        try:
            mechanism = ConsentMechanism(extra.get("mechanism", "explicit"))
        except ValueError:
            mechanism = ConsentMechanism.explicit
        return ConsentRecord(
            consent_id=f"consent_{event.event_id}",
            identity=event.user_id or event.device_id or event.session_id,
            is_anonymous=event.user_id is None,
            categories={c: c in granted for c in known},
            mechanism=mechanism,
            recorded_at=as_utc(event.timestamp),
            withdrawn=bool(withdrawn),
            withdrawn_at=as_utc(event.timestamp) if withdrawn else None,
        )

    # ------------------------------------------------------------------
    # Batch ingestion
    # ------------------------------------------------------------------

    async def ingest_batch(self, batch: IngestBatch, client_ip: Optional[str] = None) -> BatchResponse:
        if not batch.events:
            logger.debug("Empty batch short-circuited count=%d", batch.count)
            return BatchResponse(accepted=0, rejected=0, events=[])
        if batch.count != len(batch.events):
            logger.warning("Batch count mismatch declared=%d actual=%d", batch.count, len(batch.events))

        started = self._clock()
        results: Dict[int, PerEventResult] = {}
        parsed: List[Tuple[int, AnalyticsEvent]] = []
        for index, raw in enumerate(batch.events):
            event, error = self._parse(raw)
            if event is None:
                event_id = raw.get("event_id") if isinstance(raw.get("event_id"), str) else f"invalid_{index}"
                results[index] = PerEventResult(event_id=event_id, success=False, error=error)
            else:
                parsed.append((index, event))

        rows: List[AnalyticsEventORM] = []
        async with self._session_factory() as db:
            already = await store.existing_event_ids(db, [e.event_id for _, e in parsed])
            seen = set(already)
            for index, event in parsed:
                if event.event_id in seen:
                    results[index] = PerEventResult(event_id=event.event_id, success=True)
                    continue
                seen.add(event.event_id)
                rows.append(self._to_row(event, client_ip))
                results[index] = PerEventResult(event_id=event.event_id, success=True)
                audit = self._consent_audit(event)
                if audit is not None:
                    await store.record_consent(db, audit)
            if rows:
                await store.append_events(db, rows)
            await db.commit()

        for entity_type, entity_id in sorted({(r.entity_type, r.entity_id) for r in rows}):
            await self._cache.invalidate_prefix(make_entity_prefix(EVENTS_PREFIX, entity_type, entity_id))
            if self._aggregation is not None:
                await self._aggregation.invalidate_entity(entity_type, entity_id)

        if self._realtime is not None:
            for row in rows:
                if not row.is_bot:
                    self._realtime.bump_later(row.entity_type, row.entity_id, row.event_type)

        elapsed_ms = (self._clock() - started).total_seconds() * 1000
        ordered = [
            results[i].model_copy(update={"processing_time_ms": elapsed_ms}) for i in range(len(batch.events))
        ]
        accepted = sum(1 for r in ordered if r.success)
        logger.info(
            "Ingested batch session_id=%s accepted=%d rejected=%d new_rows=%d",
            batch.session_id, accepted, len(ordered) - accepted, len(rows),
        )
        return BatchResponse(accepted=accepted, rejected=len(ordered) - accepted, events=ordered)

    # ------------------------------------------------------------------
    # Retention maintenance
    # ------------------------------------------------------------------

    async def _invalidate(self, entities: List[Tuple[str, str]]) -> None:
        for entity_type, entity_id in entities:
            await self._cache.invalidate_prefix(make_entity_prefix(EVENTS_PREFIX, entity_type, entity_id))

    async def anonymize_old_events(self, cutoff: datetime, batch_size: int = 500) -> int:
        async with self._session_factory() as db:
            count, touched = await store.anonymize_old_events(db, cutoff, batch_size)
            await db.commit()
        await self._invalidate(touched)
        return count

    async def delete_expired_events(self, now: Optional[datetime] = None, batch_size: int = 500) -> int:
        async with self._session_factory() as db:
            count, touched = await store.delete_expired_events(db, now or self._clock(), batch_size)
            await db.commit()
        await self._invalidate(touched)
        return count
