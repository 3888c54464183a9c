"""
Transport tests against httpx.MockTransport: request shape, per-event result mapping
and whole-batch failure handling. No network.
"""
import json

import httpx
import pytest

from cvplus_analytics.config import TransportConfig
from cvplus_analytics.sdk.transport import EventTransport, build_batch_request
from cvplus_analytics.tests.fakes import queued_event

ENDPOINT = "http://ingest.test/analytics/batch"


def make_transport(handler, **config) -> EventTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return EventTransport(TransportConfig(endpoint=ENDPOINT, api_key="key-123", **config), client=client)


@pytest.mark.asyncio
async def test_posts_batch_with_headers_and_metadata() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"accepted": 2, "rejected": 0, "events": []})

    transport = make_transport(handler)
    results = await transport.send_batch([queued_event(1), queued_event(2)])

    assert [r.success for r in results] == [True, True]
    assert seen["headers"]["X-API-Key"] == "key-123"
    assert seen["headers"]["X-API-Version"] == "2.0"
    assert seen["body"]["count"] == 2
    assert seen["body"]["session_id"] == "sess_queue"
    assert [e["event_id"] for e in seen["body"]["events"]] == ["evt_0001", "evt_0002"]


@pytest.mark.asyncio
async def test_server_rejection_is_not_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={
            "accepted": 1,
            "rejected": 1,
            "events": [
                {"event_id": "evt_0002", "success": False, "error": "Event name is required"},
            ],
        })

    results = await make_transport(handler).send_batch([queued_event(1), queued_event(2)])

    assert results[0].success is True
    assert results[1].success is False
    assert results[1].retryable is False
    assert results[1].error == "Event name is required"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [401, 429, 500, 503])
async def test_non_2xx_fails_whole_batch_retryably(status: int) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"error": {"code": "X"}})

    results = await make_transport(handler).send_batch([queued_event(1), queued_event(2)])

    assert all(not r.success and r.retryable for r in results)
    assert str(status) in results[0].error


@pytest.mark.asyncio
async def test_network_error_and_timeout_are_retryable() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    def hang(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    refused = await make_transport(refuse).send_batch([queued_event(1)])
    timed_out = await make_transport(hang).send_batch([queued_event(1)])

    assert refused[0].retryable and not refused[0].success
    assert timed_out[0].retryable and "timed out" in timed_out[0].error


@pytest.mark.asyncio
async def test_unparseable_success_body_counts_as_accepted() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(202, text="ok")

    results = await make_transport(handler).send_batch([queued_event(1)])

    assert results[0].success is True


@pytest.mark.asyncio
async def test_empty_batch_sends_nothing() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    assert await make_transport(handler).send_batch([]) == []
    assert calls == []


@pytest.mark.asyncio
async def test_send_event_returns_single_result() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"accepted": 1, "rejected": 0, "events": []})

    result = await make_transport(handler).send_event(queued_event(7))

    assert result.event_id == "evt_0007"
    assert result.success


def test_build_batch_request_of_nothing_has_no_session() -> None:
    body = build_batch_request([])
    assert body.count == 0
    assert body.session_id is None
