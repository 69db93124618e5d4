"""Tests for background sync handles."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import httpx
import pytest
import pytest_asyncio

from commerce_ingestor.schemas.payload import SyncTaskStatus
from commerce_ingestor.sync.orchestrator import SyncOrchestrator
from commerce_ingestor.sync.registry import ConnectionRegistry
from commerce_ingestor.sync.task_handles import SyncTaskManager
from commerce_ingestor.utils.config import get_settings
from tests.fixtures.provider_payloads import shopify_orders


@dataclass
class Gate:
    """Holds every orders request until released."""

    event: asyncio.Event
    manager: SyncTaskManager

    def set(self) -> None:
        self.event.set()


class NullPublisher:
    def publish(self, **_event) -> bool:
        return False


@pytest_asyncio.fixture
async def gate(provider_api):
    event = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        if "orders.json" in request.url.path:
            await event.wait()
        return provider_api.handler(request)

    def factory(connection, adapter):
        return httpx.AsyncClient(
            base_url=adapter.base_url(connection),
            headers=adapter.auth_headers(connection),
            transport=httpx.MockTransport(handler),
        )

    registry = ConnectionRegistry(get_settings(), client_factory=factory)
    gate = Gate(event, SyncTaskManager(SyncOrchestrator(registry, publisher=NullPublisher())))
    yield gate
    gate.set()
    await gate.manager.aclose()
    await registry.aclose()


@pytest.mark.asyncio
async def test_handle_completes_with_result(gate, provider_api, make_connection):
    provider_api.seed("orders", shopify_orders(3))
    provider_api.seed("customers", [])
    connection = make_connection("shopify")
    gate.set()

    handle = gate.manager.start_sync(connection.id)
    assert handle.status in {SyncTaskStatus.QUEUED, SyncTaskStatus.RUNNING}

    finished = await gate.manager.wait(handle.task_id)

    assert finished.status is SyncTaskStatus.SUCCEEDED
    assert finished.result.records_written == 6
    view = gate.manager.get(handle.task_id).view()
    assert view.finished_at is not None
    assert view.result.status == "success"


@pytest.mark.asyncio
async def test_second_trigger_returns_running_handle(gate, provider_api, make_connection):
    provider_api.seed("orders", shopify_orders(3))
    provider_api.seed("customers", [])
    connection = make_connection("shopify")

    first = gate.manager.start_sync(connection.id)
    await asyncio.sleep(0.05)
    second = gate.manager.start_sync(connection.id)

    assert second is first
    assert gate.manager.for_connection(connection.id) is first

    gate.set()
    await gate.manager.wait(first.task_id)
    assert first.status is SyncTaskStatus.SUCCEEDED
    assert gate.manager.for_connection(connection.id) is None


@pytest.mark.asyncio
async def test_cancel_marks_handle_cancelled(gate, provider_api, make_connection):
    provider_api.seed("orders", shopify_orders(3))
    connection = make_connection("shopify")

    handle = gate.manager.start_sync(connection.id)
    await asyncio.sleep(0.05)
    cancelled = await gate.manager.cancel_for_connection(connection.id)

    assert cancelled is handle
    assert handle.status is SyncTaskStatus.CANCELLED
    assert gate.manager.get(handle.task_id) is handle


@pytest.mark.asyncio
async def test_unknown_connection_fails_handle(gate):
    handle = gate.manager.start_sync("missing")
    await gate.manager.wait(handle.task_id)

    assert handle.status is SyncTaskStatus.FAILED
    assert handle.error["error_type"] == "ConnectionNotFoundError"
    assert handle.result is None


@pytest.mark.asyncio
async def test_cancel_without_running_sync(gate):
    assert await gate.manager.cancel_for_connection("idle") is None
