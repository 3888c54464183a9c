"""
event_queue.py — Event Queue.

In-memory buffer between the SDK's tracking calls and the transport.

State machine:
    idle → accumulating → flushing → (idle | backoff → flushing)

Rules:
  - enqueue() is synchronous. Reaching flush_batch_size schedules an immediate flush
    through the scheduler instead of waiting for the periodic timer.
  - flush() detaches up to flush_batch_size events before awaiting the transport. Events
    enqueued while a send is in flight land in the buffer, never in the in-flight batch.
    Only one flush runs at a time.
  - Retryable failures are put back at the front of the buffer in their original order
    and a retry is scheduled after min(max_delay, retry_delay * multiplier ** (attempt - 1)).
    The attempt counter resets on the next success. Once the attempt limit is passed no
    more backoff timers are set; the events wait for the periodic flush.
  - Events the server rejected are counted in `rejected` and not retried.
  - The buffer is capped at max_size. The oldest events are dropped first and counted in
    `dropped`, so delivered + dropped + rejected + buffered always covers every event enqueued.
  - With offline_storage enabled the buffer is written to storage whenever a send fails
    and on shutdown; restore_offline() puts stored events back ahead of new ones.
"""
import asyncio
import json
import logging
from enum import Enum
from typing import Dict, List, Optional

from pydantic import ValidationError

from cvplus_analytics.config import QueueConfig, RetryConfig
from cvplus_analytics.sdk.environment import KeyValueStorage
from cvplus_analytics.sdk.scheduler import ScheduledHandle, Scheduler
from cvplus_analytics.sdk.schemas import AnalyticsEvent, PerEventResult
from cvplus_analytics.sdk.transport import BatchSender

logger = logging.getLogger(__name__)

OFFLINE_STORAGE_KEY = "cvplus_offline_events"


class QueueState(str, Enum):
    idle = "idle"
    accumulating = "accumulating"
    flushing = "flushing"
    backoff = "backoff"


def backoff_delay(attempt: int, base: float, multiplier: float, max_delay: float) -> float:
    """Delay before retry number `attempt` (1-based). Non-decreasing and never above max_delay."""
    return min(max_delay, base * multiplier ** max(attempt - 1, 0))


class EventQueue:
    def __init__(
        self,
        config: QueueConfig,
        transport: BatchSender,
        scheduler: Scheduler,
        storage: Optional[KeyValueStorage] = None,
        retry: Optional[RetryConfig] = None,
        send_timeout: Optional[float] = None,
    ):
        self._config = config
        self._transport = transport
        self._scheduler = scheduler
        self._storage = storage
        self._retry = retry or RetryConfig()
        self._send_timeout = send_timeout

        self._buffer: List[AnalyticsEvent] = []
        self._flushing = False
        self._flush_scheduled = False
        self._attempt = 0
        self._backoff_handle: Optional[ScheduledHandle] = None
        self._timer_handle: Optional[ScheduledHandle] = None
        self._running = False
        self._offline_dirty = False

        self.delivered = 0
        self.dropped = 0
        self.rejected = 0
        self.retry_delays: List[float] = []

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> QueueState:
        if self._flushing:
            return QueueState.flushing
        if self._backoff_handle is not None and not self._backoff_handle.cancelled:
            return QueueState.backoff
        if self._buffer:
            return QueueState.accumulating
        return QueueState.idle

    @property
    def attempt(self) -> int:
        return self._attempt

    @property
    def max_attempts(self) -> int:
        return min(self._config.retry_attempts, self._retry.max_retries)

    def size(self) -> int:
        return len(self._buffer)

    def pending(self) -> List[AnalyticsEvent]:
        """Snapshot of the buffered events, oldest first."""
        return list(self._buffer)

    def stats(self) -> Dict[str, object]:
        return {
            "state": self.state.value,
            "size": len(self._buffer),
            "delivered": self.delivered,
            "dropped": self.dropped,
            "rejected": self.rejected,
            "attempt": self._attempt,
        }

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(self, event: AnalyticsEvent) -> None:
        self._buffer.append(event)
        self._enforce_max_size()
        if (
            len(self._buffer) >= self._config.flush_batch_size
            and not self._flushing
            and not self._flush_scheduled
            and self.state is not QueueState.backoff
        ):
            self._flush_scheduled = True
            self._scheduler.call_later(0, self._scheduled_flush)

    def _enforce_max_size(self) -> None:
        overflow = len(self._buffer) - self._config.max_size
        if overflow <= 0:
            return
        dropped = self._buffer[:overflow]
        del self._buffer[:overflow]
        self.dropped += overflow
        logger.warning(
            "Event queue full (max_size=%d), dropped %d oldest events, first=%s",
            self._config.max_size, overflow, dropped[0].event_id,
        )

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._schedule_timer()

    def _schedule_timer(self) -> None:
        self._timer_handle = self._scheduler.call_later(self._config.flush_interval, self._on_timer)

    async def _on_timer(self) -> None:
        if not self._running:
            return
        self._schedule_timer()
        if self._buffer and self.state is not QueueState.backoff:
            await self.flush()

    async def _scheduled_flush(self) -> None:
        self._flush_scheduled = False
        await self.flush()

    async def _on_backoff(self) -> None:
        self._backoff_handle = None
        await self.flush()

    def _cancel_backoff(self) -> None:
        if self._backoff_handle is not None:
            self._backoff_handle.cancel()
            self._backoff_handle = None

    def stop(self) -> None:
        self._running = False
        if self._timer_handle is not None:
            self._timer_handle.cancel()
            self._timer_handle = None
        self._cancel_backoff()

    # ------------------------------------------------------------------
    # Flush
    # ------------------------------------------------------------------

    async def _send(self, batch: List[AnalyticsEvent]) -> List[PerEventResult]:
        try:
            if self._send_timeout is not None:
                results = await asyncio.wait_for(self._transport.send_batch(batch), self._send_timeout)
            else:
                results = await self._transport.send_batch(batch)
        except asyncio.TimeoutError:
            error = f"send timed out after {self._send_timeout}s"
        except Exception as exc:
            logger.error("Transport raised while sending %d events", len(batch), exc_info=True)
            error = str(exc) or type(exc).__name__
        else:
            if len(results) == len(batch):
                return results
            error = f"transport returned {len(results)} results for {len(batch)} events"
        return [
            PerEventResult(event_id=e.event_id, success=False, error=error, retryable=True)
            for e in batch
        ]

    async def flush(self) -> int:
        """
        Send one batch. Returns the number of events delivered.

        A call made while another flush is in flight returns 0 without sending.
        An explicit call during backoff cancels the pending retry and sends now.
        """
        if self._flushing or not self._buffer:
            return 0
        self._cancel_backoff()

        batch = self._buffer[: self._config.flush_batch_size]
        del self._buffer[: len(batch)]
        self._flushing = True
        try:
            results = await self._send(batch)
        finally:
            self._flushing = False

        retry: List[AnalyticsEvent] = []
        delivered = 0
        for event, result in zip(batch, results):
            if result.success:
                delivered += 1
            elif result.retryable:
                retry.append(event)
            else:
                self.rejected += 1
                logger.warning("Event rejected by server event_id=%s error=%s", event.event_id, result.error)
        self.delivered += delivered

        if retry:
            self._buffer[0:0] = retry
            self._enforce_max_size()
            await self._on_failure(len(retry))
        else:
            self._attempt = 0
            await self._on_success(delivered)
        return delivered

    async def _on_failure(self, failed: int) -> None:
        self._attempt += 1
        if self._config.offline_storage:
            await self.persist_offline()

        if self._attempt > self.max_attempts:
            logger.warning(
                "Flush failed attempt=%d, retry limit %d reached; %d events wait for the next periodic flush",
                self._attempt, self.max_attempts, failed,
            )
            return

        delay = backoff_delay(
            self._attempt,
            self._config.retry_delay,
            self._retry.backoff_multiplier,
            self._retry.max_delay,
        )
        self.retry_delays.append(delay)
        logger.warning("Flush failed attempt=%d events=%d, retrying in %.2fs", self._attempt, failed, delay)
        self._backoff_handle = self._scheduler.call_later(delay, self._on_backoff)

    async def _on_success(self, delivered: int) -> None:
        logger.debug("Flushed %d events, %d still buffered", delivered, len(self._buffer))
        if self._config.offline_storage and self._offline_dirty:
            await self.persist_offline()
        if len(self._buffer) >= self._config.flush_batch_size and not self._flush_scheduled:
            self._flush_scheduled = True
            self._scheduler.call_later(0, self._scheduled_flush)

    # ------------------------------------------------------------------
    # Offline persistence
    # ------------------------------------------------------------------

    async def persist_offline(self) -> None:
        """Mirror the buffer to storage; an empty buffer clears the stored copy."""
        if self._storage is None:
            return
        try:
            if self._buffer:
                payload = json.dumps([e.model_dump(mode="json") for e in self._buffer])
                await self._storage.set(OFFLINE_STORAGE_KEY, payload)
                self._offline_dirty = True
            else:
                await self._storage.delete(OFFLINE_STORAGE_KEY)
                self._offline_dirty = False
        except Exception:
            logger.warning("Could not persist %d events to offline storage", len(self._buffer), exc_info=True)

    async def restore_offline(self) -> int:
        """Put events left in storage by an earlier process ahead of anything buffered since."""
        if self._storage is None:
            return 0
        try:
            raw = await self._storage.get(OFFLINE_STORAGE_KEY)
            if raw is None:
                return 0
            stored = json.loads(raw)
        except Exception:
            logger.warning("Offline event storage unreadable, starting with an empty queue", exc_info=True)
            return 0

        restored: List[AnalyticsEvent] = []
        for item in stored if isinstance(stored, list) else []:
            try:
                restored.append(AnalyticsEvent.model_validate(item))
            except ValidationError:
                self.dropped += 1
                logger.warning("Discarding unreadable offline event")

        queued_ids = {e.event_id for e in self._buffer}
        restored = [e for e in restored if e.event_id not in queued_ids]
        self._buffer[0:0] = restored
        self._enforce_max_size()
        self._offline_dirty = True
        logger.info("Restored %d events from offline storage", len(restored))
        return len(restored)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> int:
        """Stop timers, make one last delivery pass and persist leftovers. Returns events left."""
        self.stop()
        if self._buffer and not self._flushing:
            remaining_batches = -(-len(self._buffer) // self._config.flush_batch_size)
            for _ in range(remaining_batches):
                before = len(self._buffer)
                await self.flush()
                self._cancel_backoff()
                if len(self._buffer) >= before:
                    break
        if self._config.offline_storage:
            await self.persist_offline()
        if self._buffer:
            logger.info("Shutdown with %d undelivered events", len(self._buffer))
        return len(self._buffer)
