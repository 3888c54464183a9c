"""
realtime.py — Realtime Counter.

Short-window per-entity counters, updated with optimistic read-modify-write:

    read (data, version) → apply the event → compare_and_set(version) → retry on conflict

The CounterStore only has to offer compare-and-set on an integer version. Two stores:
  - InMemoryCounterStore   single-process; used in tests and when no database is wired
  - SqlCounterStore        realtime_analytics table, UPDATE ... WHERE version = :expected

bump() is best-effort. Callers schedule it and move on; every failure, including
ConcurrentUpdateError after the retry budget, is logged here and never raised.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Protocol, Set, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cvplus_analytics.engine.schemas import AnomalyFlag, RealTimeAnalytics, as_utc
from cvplus_analytics.errors import ConcurrentUpdateError
from cvplus_analytics.models.realtime_counter import RealtimeCounterORM
from cvplus_analytics.sdk.schemas import utcnow

logger = logging.getLogger(__name__)

ANOMALY_RING_SIZE = 10
VIEW_TYPES = frozenset({"view", "page"})


def counter_key(entity_type: str, entity_id: str) -> str:
    return f"{entity_type}:{entity_id}"


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class CounterStore(Protocol):
    async def read(self, key: str) -> Tuple[Optional[dict], int]:
        """Current data and version; (None, 0) when the key was never written."""
        ...

    async def compare_and_set(self, key: str, expected_version: int, data: dict) -> bool:
        """Write `data` as version expected_version + 1 if the stored version still matches."""
        ...


class InMemoryCounterStore:
    def __init__(self) -> None:
        self._rows: Dict[str, Tuple[dict, int]] = {}

    async def read(self, key: str) -> Tuple[Optional[dict], int]:
        row = self._rows.get(key)
        if row is None:
            return None, 0
        data, version = row
        return dict(data), version

    async def compare_and_set(self, key: str, expected_version: int, data: dict) -> bool:
        _, version = self._rows.get(key, (None, 0))
        if version != expected_version:
            return False
        self._rows[key] = (dict(data), version + 1)
        return True


class SqlCounterStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def read(self, key: str) -> Tuple[Optional[dict], int]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(RealtimeCounterORM.data, RealtimeCounterORM.version).where(RealtimeCounterORM.id == key)
            )
            row = result.first()
        if row is None:
            return None, 0
        return dict(row.data), row.version

    async def compare_and_set(self, key: str, expected_version: int, data: dict) -> bool:
        async with self._session_factory() as db:
            if expected_version == 0:
                db.add(RealtimeCounterORM(id=key, data=data, version=1, updated_at=utcnow()))
                try:
                    await db.commit()
                except IntegrityError:
                    # another writer created the row first
                    await db.rollback()
                    return False
                return True

            result = await db.execute(
                update(RealtimeCounterORM)
                .where(RealtimeCounterORM.id == key, RealtimeCounterORM.version == expected_version)
                .values(data=data, version=expected_version + 1, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1


# ---------------------------------------------------------------------------
# Counter
# ---------------------------------------------------------------------------

def apply_event(
    current: RealTimeAnalytics,
    event_type: str,
    now: datetime,
    spike_threshold: int,
    window: timedelta,
) -> RealTimeAnalytics:
    """Pure increment step: roll expired windows, count the event, flag a spike."""
    state = current.model_copy(deep=True)

    if now - as_utc(state.window_started_at) >= window:
        state.window_started_at = now
        state.recent_events = 0
        state.current_users = 0
        state.traffic_spike = False
    if now - as_utc(state.hour_started_at) >= timedelta(hours=1):
        state.hour_started_at = now
        state.last_hour_views = 0

    if event_type in VIEW_TYPES:
        state.current_users += 1
        state.last_hour_views += 1
    state.recent_events += 1

    spiking = state.recent_events > spike_threshold
    if spiking and not state.traffic_spike:
        state.anomalies = (state.anomalies + [
            AnomalyFlag(kind="traffic_spike", detected_at=now, value=float(state.recent_events))
        ])[-ANOMALY_RING_SIZE:]
    state.traffic_spike = spiking
    state.updated_at = now
    return state


class RealtimeCounter:
    def __init__(
        self,
        store: CounterStore,
        spike_threshold: int = 100,
        window_seconds: int = 300,
        max_retries: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._spike_threshold = spike_threshold
        self._window = timedelta(seconds=window_seconds)
        self._max_retries = max_retries
        self._clock = clock
        self._tasks: Set["asyncio.Task[Optional[RealTimeAnalytics]]"] = set()

    async def _bump(self, entity_type: str, entity_id: str, event_type: str) -> RealTimeAnalytics:
        key = counter_key(entity_type, entity_id)
        for attempt in range(1, self._max_retries + 1):
            data, version = await self._store.read(key)
            now = self._clock()
            if data:
                current = RealTimeAnalytics.model_validate(data)
            else:
                current = RealTimeAnalytics(
                    entity_type=entity_type,
                    entity_id=entity_id,
                    window_started_at=now,
                    hour_started_at=now,
                    updated_at=now,
                )
            updated = apply_event(current, event_type, now, self._spike_threshold, self._window)
            if await self._store.compare_and_set(key, version, updated.model_dump(mode="json")):
                if updated.traffic_spike and not current.traffic_spike:
                    logger.warning("Traffic spike key=%s recent_events=%d", key, updated.recent_events)
                return updated
            logger.debug("Counter conflict key=%s attempt=%d", key, attempt)
        raise ConcurrentUpdateError(key, self._max_retries)

    async def bump(self, entity_type: str, entity_id: str, event_type: str) -> Optional[RealTimeAnalytics]:
        """Apply one event. Returns the new state, or None when the update failed."""
        try:
            return await self._bump(entity_type, entity_id, event_type)
        except Exception:
            logger.error(
                "Realtime counter update failed entity=%s:%s", entity_type, entity_id, exc_info=True,
            )
            return None

    def bump_later(self, entity_type: str, entity_id: str, event_type: str) -> None:
        """Fire-and-forget bump; the task is held until it finishes."""
        task = asyncio.get_running_loop().create_task(self.bump(entity_type, entity_id, event_type))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for scheduled bumps (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def get(self, entity_type: str, entity_id: str) -> Optional[RealTimeAnalytics]:
        data, _ = await self._store.read(counter_key(entity_type, entity_id))
        return RealTimeAnalytics.model_validate(data) if data else None
