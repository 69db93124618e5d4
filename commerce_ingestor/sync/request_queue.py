"""Serialized, rate limited request queue for a single connection.

Each connection owns one ``RequestQueue``: an ``asyncio.Queue`` drained by a
single worker task. Requests are dispatched strictly in FIFO order and a
request that is being retried keeps the head of the queue, so retries never
reorder calls within a connection.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

import httpx

from ..exceptions import ConnectionInactiveError
from ..monitoring.metrics import (
    adjust_queue_depth,
    observe_rate_limit_wait,
    record_provider_request,
    record_provider_retry,
)
from ..utils.logging import setup_logger
from ..utils.retry import RetryConfig, execute_with_retry
from .rate_limiter import SlidingWindowLimiter

logger = setup_logger(__name__)


@dataclass(slots=True)
class ProviderRequest:
    """An outbound call, relative to the connection client's base URL."""

    method: str
    url: str
    params: dict[str, Any] | None = None
    json: dict[str, Any] | None = None
    data: dict[str, Any] | None = None
    headers: dict[str, str] | None = None


@dataclass(slots=True)
class _QueuedRequest:
    request: ProviderRequest
    future: asyncio.Future[httpx.Response]
    attempts: int = field(default=0)


class RequestQueue:
    """Per-connection actor that throttles and retries provider calls."""

    def __init__(
        self,
        connection_id: str,
        provider: str,
        client: httpx.AsyncClient,
        *,
        limiter: SlidingWindowLimiter,
        retry_config: RetryConfig,
        throttle_hint: Callable[[httpx.Response], float] | None = None,
    ) -> None:
        self.connection_id = connection_id
        self.provider = provider
        self._client = client
        self._limiter = limiter
        self._retry_config = retry_config
        self._throttle_hint = throttle_hint
        self._pending: asyncio.Queue[_QueuedRequest] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._closed = False
        self._close_reason = "connection closed"
        self._log = logger.bind(connection_id=connection_id, provider=provider)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def depth(self) -> int:
        return self._pending.qsize()

    @property
    def limiter(self) -> SlidingWindowLimiter:
        return self._limiter

    async def enqueue(self, request: ProviderRequest) -> httpx.Response:
        """Queue ``request`` and wait for its final response.

        Raises:
            ConnectionInactiveError: The queue was torn down.
            RateLimitExceededError: Throttling outlasted the retry budget.
            UpstreamUnavailableError: 5xx or network failures outlasted it.
        """

        if self._closed:
            raise ConnectionInactiveError(
                f"Request queue for connection '{self.connection_id}' is closed"
            )
        loop = asyncio.get_running_loop()
        item = _QueuedRequest(request=request, future=loop.create_future())
        self._pending.put_nowait(item)
        adjust_queue_depth(self.provider, 1)
        self._ensure_worker()
        return await item.future

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(
                self._run(), name=f"request-queue:{self.connection_id}"
            )

    async def _run(self) -> None:
        while True:
            item = await self._pending.get()
            adjust_queue_depth(self.provider, -1)
            if item.future.done():
                continue
            try:
                response = await self._dispatch(item)
            except asyncio.CancelledError:
                if not item.future.done():
                    item.future.set_exception(ConnectionInactiveError(self._close_reason))
                raise
            except Exception as exc:
                if not item.future.done():
                    item.future.set_exception(exc)
            else:
                if not item.future.done():
                    item.future.set_result(response)

    async def _dispatch(self, item: _QueuedRequest) -> httpx.Response:
        request = item.request

        async def _send() -> httpx.Response:
            item.attempts += 1
            waited = await self._limiter.acquire()
            if waited > 0:
                observe_rate_limit_wait(self.provider, waited)
            try:
                response = await self._client.request(
                    request.method,
                    request.url,
                    params=request.params,
                    json=request.json,
                    data=request.data,
                    headers=request.headers,
                )
            except httpx.TransportError as exc:
                record_provider_request(self.provider, type(exc).__name__)
                raise
            record_provider_request(self.provider, response.status_code)
            return response

        response = await execute_with_retry(
            _send,
            retry_config=self._retry_config,
            provider=self.provider,
            log=self._log,
            on_retry=lambda _state: record_provider_retry(self.provider),
        )

        if self._throttle_hint is not None:
            pause = self._throttle_hint(response)
            if pause > 0:
                self._log.debug("Provider asked to slow down, pausing %.2fs", pause)
                await asyncio.sleep(pause)
        return response

    async def close(self, reason: str = "connection closed") -> None:
        """Stop the worker and fail every request still waiting."""

        if self._closed:
            return
        self._closed = True
        self._close_reason = reason
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            with suppress(asyncio.CancelledError):
                await self._worker
        while not self._pending.empty():
            item = self._pending.get_nowait()
            adjust_queue_depth(self.provider, -1)
            if not item.future.done():
                item.future.set_exception(ConnectionInactiveError(reason))
        await self._client.aclose()
        self._log.info("Request queue closed: %s", reason)
