"""
Shared test doubles: a manual scheduler, scripted transports, broken storage and
event/row factories. Imported by the test modules as cvplus_analytics.tests.fakes.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from cvplus_analytics.config import AnalyticsConfig
from cvplus_analytics.models.analytics_event import AnalyticsEventORM
from cvplus_analytics.sdk.builder import EventBuilder
from cvplus_analytics.sdk.environment import StaticEnvironment
from cvplus_analytics.sdk.schemas import (
    AnalyticsEvent,
    ConsentCategory,
    ConsentRecord,
    EventType,
    PerEventResult,
    SessionInfo,
    utcnow,
)

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36"
)
BOT_UA = "Mozilla/5.0 (compatible; Googlebot/2.1; +http://www.google.com/bot.html)"


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class ManualHandle:
    def __init__(self, delay: float, callback):
        self.delay = delay
        self.callback = callback
        self.fired = False
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ManualScheduler:
    """Timers only fire when the test says so."""

    def __init__(self) -> None:
        self.handles: List[ManualHandle] = []

    def call_later(self, delay: float, callback) -> ManualHandle:
        handle = ManualHandle(delay, callback)
        self.handles.append(handle)
        return handle

    def pending(self, max_delay: Optional[float] = None) -> List[ManualHandle]:
        return [
            h for h in self.handles
            if not h.fired and not h.cancelled and (max_delay is None or h.delay <= max_delay)
        ]

    async def run_due(self, max_delay: float = 0.0) -> int:
        """Fire every pending timer with delay <= max_delay. Timers they schedule wait for the next call."""
        due = self.pending(max_delay)
        for handle in due:
            if handle.cancelled:
                continue
            handle.fired = True
            await handle.callback()
        return len(due)


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------

class ScriptedTransport:
    """
    Each call consumes the next outcome: "ok", "fail" (retryable), "reject" (server
    rejection) or "raise". Once the script runs out every call succeeds.
    """

    def __init__(self, outcomes: Sequence[str] = ()):
        self.outcomes = list(outcomes)
        self.batches: List[List[AnalyticsEvent]] = []

    @property
    def sent(self) -> List[AnalyticsEvent]:
        return [e for batch in self.batches for e in batch]

    async def send_batch(self, events):
        self.batches.append(list(events))
        outcome = self.outcomes.pop(0) if self.outcomes else "ok"
        if outcome == "raise":
            raise ConnectionError("network down")
        if outcome == "fail":
            return [
                PerEventResult(event_id=e.event_id, success=False, error="HTTP 503", retryable=True)
                for e in events
            ]
        if outcome == "reject":
            return [
                PerEventResult(event_id=e.event_id, success=False, error="invalid", retryable=False)
                for e in events
            ]
        return [PerEventResult(event_id=e.event_id, success=True) for e in events]


class GatedTransport(ScriptedTransport):
    """Blocks inside send_batch until `release` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def send_batch(self, events):
        self.started.set()
        await self.release.wait()
        return await super().send_batch(events)


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class BrokenStorage:
    async def get(self, key: str):
        raise OSError("storage unavailable")

    async def set(self, key: str, value: str) -> None:
        raise OSError("storage unavailable")

    async def delete(self, key: str) -> None:
        raise OSError("storage unavailable")


class ReadOnlyStorage:
    def __init__(self) -> None:
        self.reads = 0

    async def get(self, key: str):
        self.reads += 1
        return None

    async def set(self, key: str, value: str) -> None:
        raise PermissionError("read-only")

    async def delete(self, key: str) -> None:
        raise PermissionError("read-only")


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

def queued_event(n: int) -> AnalyticsEvent:
    return AnalyticsEvent(event_id=f"evt_{n:04d}", event_name=f"event_{n}", session_id="sess_queue")


def build_event(
    name: str = "cv_generated",
    event_type: EventType = EventType.track,
    properties=None,
    analytics: bool = True,
    session_id: str = "sess_fixture",
    user_id: Optional[str] = None,
    user_agent: str = CHROME_UA,
    timestamp: Optional[datetime] = None,
) -> AnalyticsEvent:
    """A fully built client event, as the SDK would send it."""
    now = timestamp or utcnow()
    env = StaticEnvironment(url="https://cvplus.io/cv/p1", user_agent=user_agent, timezone="Europe/Berlin")
    session = SessionInfo(
        session_id=session_id,
        user_id=user_id,
        anonymous_id="anon_fixture",
        device_id="dev_fixture",
        started_at=now,
        last_activity=now,
    )
    consent = ConsentRecord(identity="anon_fixture", categories={ConsentCategory.analytics: analytics})
    builder = EventBuilder(
        env,
        AnalyticsConfig(api_key="test-key"),
        session_provider=lambda: session,
        consent_provider=lambda: consent,
        clock=lambda: now,
    )
    return builder.build(name, event_type, properties)


WINDOW_START = datetime(2026, 3, 2, 0, 0, tzinfo=timezone.utc)


def event_row(
    event_id: str,
    minute: int,
    event_type: str = "view",
    session_id: str = "sess_1",
    entity: tuple = ("profile", "p1"),
    user_id: Optional[str] = "user_1",
    is_bot: bool = False,
    retention_days: int = 90,
    payload: Optional[dict] = None,
) -> AnalyticsEventORM:
    occurred_at = WINDOW_START + timedelta(minutes=minute)
    return AnalyticsEventORM(
        id=event_id,
        entity_type=entity[0],
        entity_id=entity[1],
        event_type=event_type,
        event_name=event_type,
        session_id=session_id,
        user_id=user_id,
        device_id="dev_1",
        occurred_at=occurred_at,
        country="DE",
        user_agent=CHROME_UA,
        ip_address="203.0.113.0",
        payload=payload if payload is not None else {"context": {"device": {"type": "desktop"}}, "properties": {}},
        is_bot=is_bot,
        is_anonymized=False,
        retention_expires_at=occurred_at + timedelta(days=retention_days),
    )
