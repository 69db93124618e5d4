"""Tests for the per-connection FIFO request queue."""

from __future__ import annotations

import asyncio
import time

import httpx
import pytest

from commerce_ingestor.exceptions import (
    ConnectionInactiveError,
    RateLimitExceededError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)
from commerce_ingestor.sync.rate_limiter import SlidingWindowLimiter
from commerce_ingestor.sync.request_queue import ProviderRequest, RequestQueue
from commerce_ingestor.utils.retry import RetryConfig


def _queue(handler, *, retry_config: RetryConfig | None = None) -> RequestQueue:
    client = httpx.AsyncClient(
        base_url="https://provider.test", transport=httpx.MockTransport(handler)
    )
    return RequestQueue(
        "conn-1",
        "stripe",
        client,
        limiter=SlidingWindowLimiter(1000, 1.0),
        retry_config=retry_config or RetryConfig(base_delay=0),
    )


class ScriptedHandler:
    """Returns the scripted statuses in order, then 200."""

    def __init__(self, *statuses: int, headers: dict[str, str] | None = None) -> None:
        self.statuses = list(statuses)
        self.headers = headers or {}
        self.paths: list[str] = []
        self.times: list[float] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.paths.append(request.url.path)
        self.times.append(time.monotonic())
        if self.statuses:
            return httpx.Response(self.statuses.pop(0), headers=self.headers)
        return httpx.Response(200, json={"path": request.url.path})


@pytest.mark.asyncio
async def test_transient_failures_are_retried():
    handler = ScriptedHandler(503, 502)
    queue = _queue(handler)
    try:
        response = await queue.enqueue(ProviderRequest("GET", "/charges"))
    finally:
        await queue.close()

    assert response.status_code == 200
    assert len(handler.paths) == 3


@pytest.mark.asyncio
async def test_retry_after_is_honoured_on_429():
    handler = ScriptedHandler(429, headers={"Retry-After": "0.2"})
    queue = _queue(handler)
    try:
        response = await queue.enqueue(ProviderRequest("GET", "/charges"))
    finally:
        await queue.close()

    assert response.status_code == 200
    assert handler.times[1] - handler.times[0] >= 0.15


@pytest.mark.asyncio
async def test_gives_up_after_five_attempts_with_upstream_error():
    handler = ScriptedHandler(*([503] * 10))
    queue = _queue(handler)
    try:
        with pytest.raises(UpstreamUnavailableError) as excinfo:
            await queue.enqueue(ProviderRequest("GET", "/charges"))
    finally:
        await queue.close()

    assert len(handler.paths) == 5
    assert excinfo.value.retryable is True
    assert excinfo.value.status_code == 503


@pytest.mark.asyncio
async def test_persistent_throttling_raises_rate_limit():
    handler = ScriptedHandler(*([429] * 10), headers={"Retry-After": "0"})
    queue = _queue(handler)
    try:
        with pytest.raises(RateLimitExceededError) as excinfo:
            await queue.enqueue(ProviderRequest("GET", "/charges"))
    finally:
        await queue.close()

    assert len(handler.paths) == 5
    assert excinfo.value.action_required == "wait"


@pytest.mark.asyncio
async def test_timeouts_surface_as_upstream_timeout():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        raise httpx.ConnectTimeout("timed out", request=request)

    queue = _queue(handler)
    try:
        with pytest.raises(UpstreamTimeoutError):
            await queue.enqueue(ProviderRequest("GET", "/charges"))
    finally:
        await queue.close()

    assert len(calls) == 5


@pytest.mark.asyncio
async def test_client_errors_are_returned_without_retry():
    handler = ScriptedHandler(404)
    queue = _queue(handler)
    try:
        response = await queue.enqueue(ProviderRequest("GET", "/missing"))
    finally:
        await queue.close()

    assert response.status_code == 404
    assert len(handler.paths) == 1


@pytest.mark.asyncio
async def test_requests_leave_in_fifo_order_even_when_retried():
    handler = ScriptedHandler(503)
    queue = _queue(handler)
    try:
        responses = await asyncio.gather(
            *(queue.enqueue(ProviderRequest("GET", f"/items/{index}")) for index in range(5))
        )
    finally:
        await queue.close()

    assert handler.paths == ["/items/0", "/items/0", "/items/1", "/items/2", "/items/3", "/items/4"]
    assert [r.json()["path"] for r in responses] == [f"/items/{index}" for index in range(5)]


@pytest.mark.asyncio
async def test_retries_disabled_means_single_attempt():
    handler = ScriptedHandler(503)
    queue = _queue(handler, retry_config=RetryConfig(enabled=False))
    try:
        with pytest.raises(UpstreamUnavailableError):
            await queue.enqueue(ProviderRequest("GET", "/charges"))
    finally:
        await queue.close()
    assert len(handler.paths) == 1


@pytest.mark.asyncio
async def test_closed_queue_rejects_new_requests():
    queue = _queue(ScriptedHandler())
    await queue.close("credential rotated")

    assert queue.closed
    with pytest.raises(ConnectionInactiveError):
        await queue.enqueue(ProviderRequest("GET", "/charges"))


@pytest.mark.asyncio
async def test_close_fails_waiting_requests():
    release = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        await release.wait()
        return httpx.Response(200)

    queue = _queue(handler)
    first = asyncio.create_task(queue.enqueue(ProviderRequest("GET", "/slow")))
    second = asyncio.create_task(queue.enqueue(ProviderRequest("GET", "/queued")))
    await asyncio.sleep(0.05)

    await queue.close("disconnected")

    with pytest.raises(ConnectionInactiveError):
        await first
    with pytest.raises(ConnectionInactiveError):
        await second
