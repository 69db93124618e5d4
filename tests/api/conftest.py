"""FastAPI client wired to the in-memory provider API."""

from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from commerce_ingestor.api.main import app
from commerce_ingestor.sync.orchestrator import SyncOrchestrator
from commerce_ingestor.sync.registry import ConnectionRegistry
from commerce_ingestor.sync.task_handles import SyncTaskManager
from commerce_ingestor.utils import health
from commerce_ingestor.utils.config import get_settings
from commerce_ingestor.webhooks.processor import WebhookProcessor
from tests.conftest import API_KEY


@pytest.fixture(name="client")
def client_fixture(provider_api) -> Iterator[TestClient]:
    """Run the app lifespan, then swap in services backed by ``provider_api``."""

    # Rebuild middleware so every test gets a fresh API rate limiter.
    app.middleware_stack = None
    health._health_checker = None

    with TestClient(app) as test_client:
        settings = get_settings()
        registry = ConnectionRegistry(settings, client_factory=provider_api.client_factory)
        orchestrator = SyncOrchestrator(registry, settings=settings)
        app.state.orchestrator = orchestrator
        app.state.sync_tasks = SyncTaskManager(orchestrator)
        app.state.webhook_processor = WebhookProcessor(orchestrator)
        yield test_client

    health._health_checker = None


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"X-API-Key": API_KEY}
