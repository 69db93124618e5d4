"""Tests for the Celery sync tasks, run without a broker."""

from __future__ import annotations

from unittest.mock import Mock

import pytest
from celery.exceptions import Retry

from commerce_ingestor.exceptions import (
    SyncAlreadyRunningError,
    TaskExecutionError,
    UpstreamUnavailableError,
)
from commerce_ingestor.models.base import session_scope
from commerce_ingestor.models.repository import ConnectionRepository
from commerce_ingestor.sync.registry import ConnectionRegistry
from commerce_ingestor.tasks import (
    check_connection_health_task,
    run_sync_pipeline,
    sync_all_connections_task,
    sync_connection_task,
)
from commerce_ingestor.tasks import sync as sync_module
from commerce_ingestor.utils.config import get_settings
from tests.fixtures.provider_payloads import shopify_orders


@pytest.fixture
def mocked_provider(monkeypatch: pytest.MonkeyPatch, provider_api):
    """Route every registry built by the tasks to the in-memory provider API."""

    monkeypatch.setattr(
        sync_module,
        "ConnectionRegistry",
        lambda settings: ConnectionRegistry(settings, client_factory=provider_api.client_factory),
    )
    return provider_api


@pytest.fixture
def fresh_request():
    sync_connection_task.request.retries = 0
    yield
    sync_connection_task.request.retries = 0


def test_run_sync_pipeline_returns_serialized_result(mocked_provider, make_connection):
    mocked_provider.seed("orders", shopify_orders(4))
    mocked_provider.seed("customers", [])
    connection = make_connection("shopify")

    result = run_sync_pipeline(connection.id, lookback_days=7, correlation_id="celery-corr-1")

    assert result["connection_id"] == connection.id
    assert result["records_processed"] == 4
    assert result["records_written"] == 8
    assert result["errors"] == []
    with session_scope() as session:
        assert ConnectionRepository(session).require(connection.id).last_sync_at is not None


def test_task_run_executes_pipeline(mocked_provider, make_connection, fresh_request):
    mocked_provider.seed("charges", [])
    mocked_provider.seed("customers", [])
    connection = make_connection("stripe")

    result = sync_connection_task.run(connection.id)

    assert result["provider"] == "stripe"
    assert result["records_written"] == 0


def test_disconnected_connection_fails_without_retry(
    mocked_provider, make_connection, fresh_request
):
    connection = make_connection("shopify")
    with session_scope() as session:
        repo = ConnectionRepository(session)
        repo.disconnect(repo.require(connection.id), "test")

    with pytest.raises(TaskExecutionError) as excinfo:
        sync_connection_task.run(connection.id)

    report = excinfo.value.report
    assert report.classification == "connection"
    assert report.retryable is False
    assert report.error_type == "ConnectionInactiveError"


def test_retryable_failure_schedules_retry_with_backoff(
    monkeypatch: pytest.MonkeyPatch, fresh_request
):
    def failing(connection_id, **kwargs):
        raise UpstreamUnavailableError("provider down", status_code=503)

    monkeypatch.setattr(sync_module, "run_sync_pipeline", failing)
    mock_retry = Mock(side_effect=Retry("retrying"))
    monkeypatch.setattr(sync_connection_task, "retry", mock_retry)
    sync_connection_task.request.retries = 1

    with pytest.raises(Retry):
        sync_connection_task.run("conn-1")

    mock_retry.assert_called_once()
    assert mock_retry.call_args.kwargs["countdown"] == 60.0


def test_retry_budget_exhaustion_raises_report(monkeypatch: pytest.MonkeyPatch, fresh_request):
    def failing(connection_id, **kwargs):
        raise UpstreamUnavailableError("provider down", status_code=503)

    monkeypatch.setattr(sync_module, "run_sync_pipeline", failing)
    sync_connection_task.request.retries = get_settings().celery_max_retries

    with pytest.raises(TaskExecutionError) as excinfo:
        sync_connection_task.run("conn-1")

    assert excinfo.value.report.classification == "upstream"
    assert excinfo.value.report.retryable is True


def test_concurrent_sync_is_skipped(monkeypatch: pytest.MonkeyPatch, fresh_request):
    def busy(connection_id, **kwargs):
        raise SyncAlreadyRunningError(connection_id)

    monkeypatch.setattr(sync_module, "run_sync_pipeline", busy)

    assert sync_connection_task.run("conn-1") == {"connection_id": "conn-1", "status": "skipped"}


def test_sync_all_fans_out_active_connections(monkeypatch: pytest.MonkeyPatch, make_connection):
    shop = make_connection("shopify")
    stripe = make_connection("stripe")
    gone = make_connection("google_analytics")
    with session_scope() as session:
        repo = ConnectionRepository(session)
        repo.disconnect(repo.require(gone.id), "test")
    scheduled: list[str] = []
    monkeypatch.setattr(sync_connection_task, "delay", lambda connection_id: scheduled.append(connection_id))

    result = sync_all_connections_task.run()

    assert result["scheduled"] == 2
    assert sorted(scheduled) == sorted([shop.id, stripe.id])


def test_health_check_retests_stale_connections(mocked_provider, make_connection):
    shop = make_connection("shopify")
    stripe = make_connection("stripe")

    result = check_connection_health_task.run()

    assert result["checked"] == 2
    assert result["results"] == {shop.id: "active", stripe.id: "active"}
    assert result["unhealthy"] == []


def test_health_check_flags_revoked_credentials(mocked_provider, make_connection):
    shop = make_connection("shopify")
    mocked_provider.revoke_credential()

    result = check_connection_health_task.run()

    assert result["results"] == {shop.id: "error"}
    assert result["unhealthy"] == [shop.id]
    with session_scope() as session:
        assert ConnectionRepository(session).require(shop.id).status == "error"


class FakeLock:
    def __init__(self, held: bool):
        self.held = held
        self.released = False

    def acquire(self, blocking: bool = True) -> bool:
        return not self.held

    def release(self) -> None:
        self.released = True


class FakeRedis:
    def __init__(self, held: bool):
        self.lock_obj = FakeLock(held)
        self.closed = False

    def lock(self, name: str, timeout: int) -> FakeLock:
        self.name = name
        return self.lock_obj

    def close(self) -> None:
        self.closed = True


def test_redis_lock_guards_cross_worker_syncs(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("COMMERCE_REDIS_URL", "redis://localhost:6379/0")
    settings = get_settings(reload=True)
    free = FakeRedis(held=False)
    monkeypatch.setattr(sync_module.redis.Redis, "from_url", lambda url: free)

    with sync_module.connection_sync_lock("conn-1", settings):
        pass

    assert free.name == "commerce-ingestor:sync-lock:conn-1"
    assert free.lock_obj.released is True
    assert free.closed is True

    busy = FakeRedis(held=True)
    monkeypatch.setattr(sync_module.redis.Redis, "from_url", lambda url: busy)
    with pytest.raises(SyncAlreadyRunningError):
        with sync_module.connection_sync_lock("conn-1", settings):
            pass
