"""
Ingestion service: per-event validation results, idempotent re-sends, IP handling,
bot filtering and the consent audit trail. Runs on SQLite with an in-memory counter.
"""
from datetime import timedelta

import pytest

from cvplus_analytics import store
from cvplus_analytics.cache import EVENTS_PREFIX, LocalTTLCache, make_query_key
from cvplus_analytics.engine.ingestion import (
    IngestionService,
    anonymize_ip,
    event_duration_ms,
    is_bot,
    resolve_entity,
)
from cvplus_analytics.engine.realtime import InMemoryCounterStore, RealtimeCounter
from cvplus_analytics.engine.schemas import IngestBatch
from cvplus_analytics.models.analytics_event import AnalyticsEventORM
from cvplus_analytics.sdk.schemas import EventType
from cvplus_analytics.tests.fakes import BOT_UA, build_event

PROFILE = {"entity_type": "profile", "entity_id": "p1"}


def batch_of(*events) -> IngestBatch:
    return IngestBatch(
        events=[e.model_dump(mode="json") for e in events],
        count=len(events),
        session_id=events[0].session_id if events else None,
    )


@pytest.fixture
def realtime() -> RealtimeCounter:
    return RealtimeCounter(InMemoryCounterStore())


@pytest.fixture
def service(session_factory, realtime) -> IngestionService:
    return IngestionService(session_factory, LocalTTLCache(), realtime=realtime, retention_days=30)


@pytest.mark.parametrize(
    "ip, expected",
    [
        ("203.0.113.77", "203.0.113.0"),
        ("2001:db8:abcd:12::1", "2001:db8:abcd::"),
        ("not-an-ip", None),
        (None, None),
    ],
)
def test_anonymize_ip(ip, expected) -> None:
    assert anonymize_ip(ip) == expected


def test_bot_detection() -> None:
    assert is_bot(BOT_UA)
    assert not is_bot("Mozilla/5.0 (Macintosh) Safari/605.1.15")
    assert not is_bot(None)


def test_entity_and_duration_resolution() -> None:
    scoped = build_event(properties={**PROFILE, "duration_ms": 1500})
    unscoped = build_event(properties={"action": {"category": "cta", "duration": 250}})

    assert resolve_entity(scoped) == ("profile", "p1")
    assert resolve_entity(unscoped) == ("application", "CVPlus Web")
    assert event_duration_ms(scoped) == 1500.0
    assert event_duration_ms(unscoped) == 250.0


@pytest.mark.asyncio
async def test_empty_batch_short_circuits(service) -> None:
    response = await service.ingest_batch(IngestBatch())
    assert (response.accepted, response.rejected, response.events) == (0, 0, [])


@pytest.mark.asyncio
async def test_each_event_gets_its_own_result(service, session_factory) -> None:
    good = build_event("profile_viewed", EventType.view, properties=PROFILE)
    bad = build_event("", properties=PROFILE)
    raw_bad_type = {"event_id": "evt_raw", "event_type": "not-a-type"}

    batch = batch_of(good, bad)
    batch.events.append(raw_bad_type)
    response = await service.ingest_batch(batch)

    assert response.accepted == 1
    assert response.rejected == 2
    assert [r.event_id for r in response.events] == [good.event_id, bad.event_id, "evt_raw"]
    assert response.events[1].error == "Event name is required"
    assert "event_type" in response.events[2].error

    async with session_factory() as db:
        assert await store.existing_event_ids(db, [good.event_id, bad.event_id]) == {good.event_id}


@pytest.mark.asyncio
async def test_resent_batch_is_idempotent(service, session_factory) -> None:
    event = build_event("profile_viewed", EventType.view, properties=PROFILE)

    first = await service.ingest_batch(batch_of(event))
    second = await service.ingest_batch(batch_of(event, event))

    assert first.accepted == 1
    assert second.accepted == 2
    async with session_factory() as db:
        page, _ = await store.query_events(db, "profile", "p1")
    assert len(page) == 1


@pytest.mark.asyncio
async def test_row_normalization(service, session_factory) -> None:
    page_event = build_event("page_view", EventType.page, properties=PROFILE)
    await service.ingest_batch(batch_of(page_event), client_ip="198.51.100.23")

    async with session_factory() as db:
        row = await db.get(AnalyticsEventORM, page_event.event_id)

    assert row.event_type == "view"
    assert row.ip_address == "198.51.100.0"  # analytics consent, anonymize_ip on
    assert row.payload["processed"] is True
    assert row.payload["context"]["ip"] == "198.51.100.0"
    assert row.is_bot is False
    occurred = row.occurred_at.replace(tzinfo=None)
    expires = row.retention_expires_at.replace(tzinfo=None)
    assert expires - occurred == timedelta(days=30)


@pytest.mark.asyncio
async def test_ip_dropped_without_analytics_consent(service, session_factory) -> None:
    event = build_event("page_view", EventType.page, properties=PROFILE, analytics=False)
    await service.ingest_batch(batch_of(event), client_ip="198.51.100.23")

    async with session_factory() as db:
        row = await db.get(AnalyticsEventORM, event.event_id)
    assert row.ip_address is None
    assert row.payload["context"]["ip"] is None


@pytest.mark.asyncio
async def test_bots_are_stored_but_not_counted_live(service, realtime) -> None:
    human = build_event("profile_viewed", EventType.view, properties=PROFILE)
    bot = build_event("profile_viewed", EventType.view, properties=PROFILE, user_agent=BOT_UA)

    response = await service.ingest_batch(batch_of(human, bot))
    await realtime.drain()

    assert response.accepted == 2
    state = await realtime.get("profile", "p1")
    assert state.recent_events == 1
    assert state.current_users == 1


@pytest.mark.asyncio
async def test_ingest_invalidates_cached_event_queries(session_factory) -> None:
    cache = LocalTTLCache()
    service = IngestionService(session_factory, cache)
    key = make_query_key(EVENTS_PREFIX, "profile", "p1", limit=100)
    await cache.set(key, {"events": []})

    await service.ingest_batch(batch_of(build_event(properties=PROFILE)))

    assert await cache.get(key) is None


@pytest.mark.asyncio
async def test_consent_change_lands_in_audit_trail(service, session_factory) -> None:
    event = build_event(
        "consent_updated",
        properties={
            "consent_categories": ["necessary"],
            "withdrawn_categories": ["analytics"],
            "mechanism": "explicit",
        },
        analytics=False,
    )
    await service.ingest_batch(batch_of(event))

    async with session_factory() as db:
        history = await store.get_consent_history(db, "dev_fixture")

    assert len(history) == 1
    assert history[0].withdrawn is True
    assert history[0].approved()[0].value == "necessary"
    assert len(history[0].approved()) == 1


@pytest.mark.asyncio
async def test_retention_maintenance(service, session_factory) -> None:
    old = build_event(properties=PROFILE)
    await service.ingest_batch(batch_of(old))
    later = old.timestamp + timedelta(days=31)

    assert await service.anonymize_old_events(later) == 1
    assert await service.delete_expired_events(later) == 1
    async with session_factory() as db:
        assert await store.get_event(db, old.event_id) is None
