"""
transport.py — Event Transport.

Stateless sender: one POST per call to the ingestion endpoint, no retries of its own.
The EventQueue decides what to do with failures.

Request body (BatchRequest):
    {events: [...], count, session_id, user_id, timestamp}

Outcomes:
  - 2xx      → per-event results echoed by the server; events the server did not mention
               are treated as accepted. Server rejections come back retryable=False.
  - non-2xx, network error, timeout
             → every event failed with retryable=True (whole-batch failure).

send_batch() never raises for transport problems; it always returns one result per event.
"""
import logging
import time
from typing import List, Optional, Protocol, Sequence

import httpx
from pydantic import ValidationError

from cvplus_analytics.config import TransportConfig
from cvplus_analytics.errors import TransportError
from cvplus_analytics.sdk.schemas import (
    AnalyticsEvent,
    BatchRequest,
    BatchResponse,
    PerEventResult,
)

logger = logging.getLogger(__name__)

API_VERSION_HEADER = "2.0"


class BatchSender(Protocol):
    async def send_batch(self, events: Sequence[AnalyticsEvent]) -> List[PerEventResult]: ...


def build_batch_request(events: Sequence[AnalyticsEvent]) -> BatchRequest:
    first = events[0] if events else None
    return BatchRequest(
        events=list(events),
        count=len(events),
        session_id=first.session_id if first else None,
        user_id=first.user_id if first else None,
    )


class EventTransport:
    def __init__(self, config: TransportConfig, client: Optional[httpx.AsyncClient] = None):
        self._config = config
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._config.timeout))
            self._owns_client = True
        return self._client

    def _headers(self) -> dict:
        headers = {
            "Content-Type": "application/json",
            "X-API-Version": API_VERSION_HEADER,
        }
        if self._config.api_key:
            headers["X-API-Key"] = self._config.api_key
        return headers

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def _post(self, body: BatchRequest) -> BatchResponse:
        try:
            response = await self._get_client().post(
                self._config.endpoint,
                content=body.model_dump_json(),
                headers=self._headers(),
                timeout=self._config.timeout,
            )
        except httpx.TimeoutException as exc:
            raise TransportError(f"Analytics endpoint timed out after {self._config.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Analytics endpoint unreachable: {exc}") from exc

        if not response.is_success:
            raise TransportError(
                f"Analytics API error: {response.status_code}", status_code=response.status_code
            )
        try:
            return BatchResponse.model_validate(response.json())
        except (ValueError, ValidationError):
            # 2xx without a parseable body still means the batch was accepted.
            logger.debug("Ingestion response had no per-event results; assuming all accepted")
            return BatchResponse()

    async def send_batch(self, events: Sequence[AnalyticsEvent]) -> List[PerEventResult]:
        if not events:
            return []

        started = time.perf_counter()
        try:
            response = await self._post(build_batch_request(events))
        except TransportError as exc:
            logger.warning("Batch of %d events failed: %s", len(events), exc)
            return [
                PerEventResult(event_id=e.event_id, success=False, error=str(exc), retryable=True)
                for e in events
            ]

        elapsed_ms = (time.perf_counter() - started) * 1000
        echoed = {r.event_id: r for r in response.events}
        results: List[PerEventResult] = []
        for event in events:
            result = echoed.get(event.event_id)
            if result is None:
                result = PerEventResult(event_id=event.event_id, success=True, processing_time_ms=elapsed_ms)
            elif not result.success:
                result = result.model_copy(update={"retryable": False})
            results.append(result)
        logger.debug("Batch of %d events sent in %.1fms", len(events), elapsed_ms)
        return results

    async def send_event(self, event: AnalyticsEvent) -> PerEventResult:
        return (await self.send_batch([event]))[0]
