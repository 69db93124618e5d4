"""Celery tasks for scheduled and on-demand connection syncs."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from typing import Any

import redis
from celery import Task

from ..exceptions import CommerceIngestorError, SyncAlreadyRunningError, TaskExecutionError
from ..models.base import session_scope, utcnow
from ..models.repository import ConnectionRepository
from ..monitoring.tracing import ensure_correlation_id, get_correlation_id
from ..schemas.payload import ConnectionTestResult, SyncResult
from ..sync.orchestrator import SyncOrchestrator
from ..sync.registry import ConnectionRegistry
from ..utils.config import GlobalSettings, ensure_runtime_configuration, get_settings
from ..utils.logging import setup_logger
from .celery_app import celery_app
from .error_handling import build_error_report

logger = setup_logger(__name__, context={"component": "CeleryTasks"})

LOCK_KEY_TEMPLATE = "commerce-ingestor:sync-lock:{connection_id}"


@contextmanager
def connection_sync_lock(connection_id: str, settings: GlobalSettings) -> Iterator[None]:
    """Hold a cross-worker lock for one connection's backfill.

    Without Redis the in-process lock in :class:`ConnectionRegistry` is the
    only guard.
    """

    if not settings.redis_url:
        yield
        return

    client = redis.Redis.from_url(settings.redis_url)
    lock = client.lock(
        LOCK_KEY_TEMPLATE.format(connection_id=connection_id),
        timeout=settings.sync_lock_timeout_seconds,
    )
    if not lock.acquire(blocking=False):
        client.close()
        raise SyncAlreadyRunningError(connection_id)
    try:
        yield
    finally:
        try:
            lock.release()
        except redis.exceptions.LockError:
            logger.warning(
                "Sync lock expired before release", extra={"connection_id": connection_id}
            )
        client.close()


async def _sync(connection_id: str, settings: GlobalSettings, **options: Any) -> SyncResult:
    registry = ConnectionRegistry(settings)
    try:
        return await SyncOrchestrator(registry, settings=settings).sync_connection(
            connection_id, **options
        )
    finally:
        await registry.aclose()


async def _test(connection_id: str, settings: GlobalSettings) -> ConnectionTestResult:
    registry = ConnectionRegistry(settings)
    try:
        return await SyncOrchestrator(registry, settings=settings).test_connection(connection_id)
    finally:
        await registry.aclose()


def run_sync_pipeline(
    connection_id: str,
    *,
    lookback_days: int | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Execute one connection sync synchronously for Celery workers."""

    settings = ensure_runtime_configuration(get_settings())
    ensure_correlation_id(correlation_id)
    options: dict[str, Any] = {}
    if lookback_days is not None:
        options["lookback_days"] = lookback_days

    with connection_sync_lock(connection_id, settings):
        result = asyncio.run(_sync(connection_id, settings, **options))
    return result.model_dump(mode="json")


@celery_app.task(name="sync_connection", bind=True)
def sync_connection_task(
    self: Task,
    connection_id: str,
    lookback_days: int | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Run a backfill; retryable failures are retried with exponential backoff."""

    settings = get_settings()
    try:
        return run_sync_pipeline(
            connection_id, lookback_days=lookback_days, correlation_id=correlation_id
        )
    except SyncAlreadyRunningError:
        logger.info("Sync already running; skipping", extra={"connection_id": connection_id})
        return {"connection_id": connection_id, "status": "skipped"}
    except CommerceIngestorError as exc:
        report = build_error_report(
            exc, connection_id=connection_id, correlation_id=get_correlation_id()
        )
        logger.error(
            "Sync task failed: %s",
            report.message,
            extra={"connection_id": connection_id, "status": report.classification},
        )
        if report.retryable and self.request.retries < settings.celery_max_retries:
            countdown = min(
                settings.celery_retry_backoff_seconds * (2**self.request.retries),
                settings.celery_retry_max_backoff_seconds,
            )
            raise self.retry(exc=exc, countdown=countdown)
        raise TaskExecutionError(report, original_error=exc) from exc


def _active_connection_ids() -> list[str]:
    with session_scope() as session:
        return [connection.id for connection in ConnectionRepository(session).list_by_status()]


@celery_app.task(name="sync_all_connections")
def sync_all_connections_task() -> dict[str, Any]:
    """Fan out one ``sync_connection`` task per active connection."""

    ensure_runtime_configuration(get_settings())
    connection_ids = _active_connection_ids()
    for connection_id in connection_ids:
        sync_connection_task.delay(connection_id)
    logger.info("Scheduled %d connection syncs", len(connection_ids))
    return {"scheduled": len(connection_ids), "connection_ids": connection_ids}


def _stale_connection_ids(settings: GlobalSettings) -> list[str]:
    cutoff = utcnow() - timedelta(hours=settings.stale_connection_hours)
    with session_scope() as session:
        return [
            connection.id
            for connection in ConnectionRepository(session).list_by_status()
            if connection.last_sync_at is None or connection.last_sync_at < cutoff
        ]


@celery_app.task(name="check_connection_health")
def check_connection_health_task() -> dict[str, Any]:
    """Re-test connections that have not synced recently."""

    settings = ensure_runtime_configuration(get_settings())
    results: dict[str, str] = {}
    for connection_id in _stale_connection_ids(settings):
        try:
            outcome = asyncio.run(_test(connection_id, settings))
        except CommerceIngestorError as exc:
            results[connection_id] = type(exc).__name__
            continue
        results[connection_id] = outcome.status.value
    unhealthy = sorted(cid for cid, status in results.items() if status != "active")
    if unhealthy:
        logger.warning("Stale connections failed their test: %s", ", ".join(unhealthy))
    return {"checked": len(results), "results": results, "unhealthy": unhealthy}


__all__ = [
    "check_connection_health_task",
    "connection_sync_lock",
    "run_sync_pipeline",
    "sync_all_connections_task",
    "sync_connection_task",
]
