"""Coordinates connection tests, backfills and single-event ingestion."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from ..adapters import build_adapter
from ..adapters.base import ProviderAdapter
from ..exceptions import (
    AuthenticationError,
    CommerceIngestorError,
    ConnectionInactiveError,
    PayloadMalformedError,
    SyncAlreadyRunningError,
)
from ..messaging.publisher import MetricsUpdatedPublisher, get_metrics_publisher
from ..models.base import session_scope
from ..models.connection import ConnectionSnapshot
from ..models.repository import ConnectionRepository, SyncCursorRepository
from ..models.writer import IdempotentWriter, WriteSummary
from ..monitoring.metrics import (
    decrement_active_syncs,
    increment_active_syncs,
    record_sync_run,
)
from ..monitoring.tracing import get_correlation_id, trace_span
from ..schemas.payload import (
    ConnectionStatus,
    ConnectionTestResult,
    EntitySyncSummary,
    FetchedPage,
    SyncError,
    SyncResult,
)
from ..utils.audit import AuditAction, AuditOutcome, get_audit_logger
from ..utils.config import GlobalSettings, get_settings
from ..utils.logging import log_sync_attempt, setup_logger
from .fetcher import PaginatedFetcher
from .registry import ConnectionRegistry, SyncState

logger = setup_logger(__name__, context={"component": "orchestrator"})

T = TypeVar("T")


@dataclass(slots=True)
class _Window:
    since: datetime
    until: datetime
    cursor: str | None
    resumed: bool


def _sync_error(entity_type: str, exc: Exception, records_processed: int = 0) -> SyncError:
    if isinstance(exc, CommerceIngestorError):
        return SyncError(
            entity_type=entity_type,
            error_type=type(exc).__name__,
            message=str(exc),
            retryable=exc.retryable,
            action_required=exc.action_required,
            records_processed=records_processed,
        )
    return SyncError(
        entity_type=entity_type,
        error_type=type(exc).__name__,
        message="Unexpected error while syncing",
        retryable=False,
        action_required="investigate",
        records_processed=records_processed,
    )


class SyncOrchestrator:
    """Entry point for ``test_connection`` and ``sync_connection``.

    Database work runs in worker threads so one connection's writes never
    stall the event loop that serves other connections.
    """

    def __init__(
        self,
        registry: ConnectionRegistry | None = None,
        *,
        settings: GlobalSettings | None = None,
        fetcher: PaginatedFetcher | None = None,
        publisher: MetricsUpdatedPublisher | None = None,
        adapter_factory: Callable[[str], ProviderAdapter] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.registry = registry or ConnectionRegistry(self.settings)
        self.fetcher = fetcher or PaginatedFetcher(max_pages=self.settings.max_pages_per_entity)
        self._publisher = publisher
        self._adapter_factory = adapter_factory or (
            lambda provider: build_adapter(provider, self.settings)
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def publisher(self) -> MetricsUpdatedPublisher:
        if self._publisher is None:
            self._publisher = get_metrics_publisher()
        return self._publisher

    def adapter_for(self, provider: str) -> ProviderAdapter:
        return self._adapter_factory(provider)

    @staticmethod
    async def _db(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(func, *args, **kwargs)

    # Connection loading -------------------------------------------------

    @staticmethod
    def _load_snapshot(connection_id: str) -> ConnectionSnapshot:
        with session_scope() as session:
            connection = ConnectionRepository(session).require(connection_id)
            return ConnectionSnapshot.from_model(connection)

    async def load_connection(self, connection_id: str) -> ConnectionSnapshot:
        """Return a snapshot of an operable connection.

        Raises:
            ConnectionNotFoundError: No such connection.
            ConnectionInactiveError: The connection is disconnected.
        """

        snapshot = await self._db(self._load_snapshot, connection_id)
        if (
            snapshot.status == ConnectionStatus.DISCONNECTED.value
            or self.registry.state(connection_id) is SyncState.DISCONNECTED
        ):
            raise ConnectionInactiveError(f"Connection '{connection_id}' is disconnected")
        return snapshot

    @staticmethod
    def _set_status(connection_id: str, status: ConnectionStatus) -> ConnectionSnapshot:
        with session_scope() as session:
            repo = ConnectionRepository(session)
            connection = repo.require(connection_id)
            if connection.status != ConnectionStatus.DISCONNECTED.value:
                repo.set_status(connection, status.value)
            return ConnectionSnapshot.from_model(connection)

    @staticmethod
    def _store_credential(
        connection_id: str, credential: str, expires_at: datetime | None
    ) -> ConnectionSnapshot:
        with session_scope() as session:
            repo = ConnectionRepository(session)
            connection = repo.rotate_credential(
                repo.require(connection_id),
                credential,
                token_expires_at=expires_at.isoformat() if expires_at else None,
            )
            return ConnectionSnapshot.from_model(connection)

    async def _refresh_credential(
        self, snapshot: ConnectionSnapshot, adapter: ProviderAdapter
    ) -> ConnectionSnapshot:
        queue = await self.registry.queue_for(snapshot, adapter)
        refreshed = await adapter.refresh_credential(queue, snapshot)
        stored = await self._db(
            self._store_credential, snapshot.id, refreshed.access_token, refreshed.expires_at
        )
        logger.info(
            "Refreshed access token",
            extra={"connection_id": snapshot.id, "provider": snapshot.provider},
        )
        get_audit_logger().log_connection_event(
            AuditAction.CREDENTIAL_REFRESHED,
            AuditOutcome.SUCCESS,
            connection_id=snapshot.id,
            provider=snapshot.provider,
            correlation_id=get_correlation_id(),
        )
        return replace(stored, status=snapshot.status)

    # Connection test ----------------------------------------------------

    async def test_connection(self, connection_id: str) -> ConnectionTestResult:
        """Issue one authenticated call and set the connection active or error."""

        snapshot = await self.load_connection(connection_id)
        adapter = self.adapter_for(snapshot.provider)
        started = time.perf_counter()

        if self.registry.is_syncing(connection_id):
            raise SyncAlreadyRunningError(connection_id)
        self.registry.transition(connection_id, SyncState.CONNECTION_TESTING)
        result = await self._run_connection_test(snapshot, adapter)
        self.registry.transition(
            connection_id, SyncState.IDLE if result.ok else SyncState.ERROR
        )
        log_sync_attempt(
            logger,
            operation="test_connection",
            provider=snapshot.provider,
            connection_id=connection_id,
            duration_ms=int((time.perf_counter() - started) * 1000),
            status="success" if result.ok else "error",
            correlation_id=get_correlation_id(),
        )
        return result

    async def _run_connection_test(
        self, snapshot: ConnectionSnapshot, adapter: ProviderAdapter
    ) -> ConnectionTestResult:
        # Caller owns the CONNECTION_TESTING transition.
        audit = get_audit_logger()
        try:
            # A connection in error is retested with its stored credential.
            active_view = replace(snapshot, status=ConnectionStatus.ACTIVE.value)
            refreshable = adapter.can_refresh_credential(active_view)
            if refreshable and adapter.credential_expired(active_view, self._clock()):
                active_view = await self._refresh_credential(active_view, adapter)
                refreshable = False
            queue = await self.registry.queue_for(active_view, adapter)
            with trace_span("provider.test_connection", provider=snapshot.provider):
                try:
                    account_name = await adapter.test_connection(queue, active_view)
                except AuthenticationError:
                    if not refreshable:
                        raise
                    active_view = await self._refresh_credential(active_view, adapter)
                    queue = await self.registry.queue_for(active_view, adapter)
                    account_name = await adapter.test_connection(queue, active_view)
        except CommerceIngestorError as exc:
            await self._db(self._set_status, snapshot.id, ConnectionStatus.ERROR)
            audit.log_connection_event(
                AuditAction.CONNECTION_ERROR,
                AuditOutcome.FAILURE,
                connection_id=snapshot.id,
                provider=snapshot.provider,
                correlation_id=get_correlation_id(),
                error_message=str(exc),
                error_type=type(exc).__name__,
            )
            return ConnectionTestResult(
                connection_id=snapshot.id,
                provider=snapshot.provider,
                ok=False,
                status=ConnectionStatus.ERROR,
                message=str(exc),
                action_required=exc.action_required,
            )

        await self._db(self._set_status, snapshot.id, ConnectionStatus.ACTIVE)
        audit.log_connection_event(
            AuditAction.CONNECTION_TESTED,
            AuditOutcome.SUCCESS,
            connection_id=snapshot.id,
            provider=snapshot.provider,
            correlation_id=get_correlation_id(),
        )
        return ConnectionTestResult(
            connection_id=snapshot.id,
            provider=snapshot.provider,
            ok=True,
            status=ConnectionStatus.ACTIVE,
            account_name=account_name,
        )

    # Backfill -----------------------------------------------------------

    async def sync_connection(
        self,
        connection_id: str,
        *,
        lookback_days: int | None = None,
        entity_types: Sequence[str] | None = None,
    ) -> SyncResult:
        """Test the connection, then backfill every tracked entity type.

        One entity type failing is recorded in ``errors`` and does not stop
        the others. Cancelling the awaiting task leaves each cursor at the
        last page that was written.

        Raises:
            ConnectionNotFoundError: No such connection.
            ConnectionInactiveError: The connection is disconnected.
            SyncAlreadyRunningError: A backfill is already running.
        """

        snapshot = await self.load_connection(connection_id)
        lock = self.registry.sync_lock(connection_id)
        if lock.locked():
            raise SyncAlreadyRunningError(connection_id)

        async with lock:
            adapter = self.adapter_for(snapshot.provider)
            started = time.perf_counter()
            result = SyncResult(connection_id=connection_id, provider=snapshot.provider)
            totals = WriteSummary()
            increment_active_syncs(snapshot.provider)
            log = logger.bind(connection_id=connection_id, provider=snapshot.provider)
            try:
                self.registry.transition(connection_id, SyncState.CONNECTION_TESTING)
                test = await self._run_connection_test(snapshot, adapter)
                if not test.ok:
                    self.registry.transition(connection_id, SyncState.ERROR)
                    result.errors.append(
                        SyncError(
                            entity_type="connection",
                            error_type="ConnectionTestFailed",
                            message=test.message or "Connection test failed",
                            action_required=test.action_required or "investigate",
                        )
                    )
                    return self._finish(result, snapshot, started)

                self.registry.transition(connection_id, SyncState.BACKFILLING)
                active = await self.load_connection(connection_id)
                queue = await self.registry.queue_for(active, adapter)
                now = self._clock()
                entities = list(entity_types) if entity_types else adapter.tracked_entities()

                for entity_type in entities:
                    summary = EntitySyncSummary(entity_type=entity_type)
                    result.entities.append(summary)
                    try:
                        with trace_span(
                            "sync.entity", provider=snapshot.provider, entity_type=entity_type
                        ):
                            await self._sync_entity(
                                adapter,
                                queue,
                                active,
                                entity_type,
                                summary,
                                totals,
                                now,
                                lookback_days,
                            )
                    except CommerceIngestorError as exc:
                        log.warning(
                            "Entity %s failed after %d records: %s",
                            entity_type,
                            summary.records_fetched,
                            exc,
                        )
                        result.errors.append(
                            _sync_error(entity_type, exc, summary.records_fetched)
                        )
                        if isinstance(exc, (AuthenticationError, ConnectionInactiveError)):
                            break
                    except Exception as exc:
                        log.exception("Unexpected failure syncing %s", entity_type)
                        result.errors.append(
                            _sync_error(entity_type, exc, summary.records_fetched)
                        )
                    finally:
                        result.records_processed += summary.records_fetched
                        result.records_written += summary.records_written
                    if summary.failed:
                        result.errors.append(
                            SyncError(
                                entity_type=entity_type,
                                error_type="PersistenceConflictError",
                                message=f"{summary.failed} records could not be persisted",
                                retryable=True,
                                action_required="wait",
                                records_processed=summary.records_fetched,
                            )
                        )
                    if summary.skipped:
                        result.errors.append(
                            SyncError(
                                entity_type=entity_type,
                                error_type="PayloadMalformedError",
                                message=f"{summary.skipped} malformed records were skipped",
                                retryable=False,
                                action_required="none",
                                records_processed=summary.records_fetched,
                            )
                        )

                await self._after_backfill(active, result, totals, now)
                return self._finish(result, snapshot, started)
            finally:
                decrement_active_syncs(snapshot.provider)
                if self.registry.state(connection_id) is SyncState.BACKFILLING:
                    self.registry.transition(
                        connection_id,
                        SyncState.ERROR
                        if result.errors and result.status == "error"
                        else SyncState.IDLE,
                    )

    def _resolve_window(
        self,
        connection_id: str,
        entity_type: str,
        now: datetime,
        lookback_days: int | None,
    ) -> _Window:
        with session_scope() as session:
            cursor = SyncCursorRepository(session).get(connection_id, entity_type)
            if cursor is not None and cursor.in_progress and lookback_days is None:
                return _Window(
                    since=cursor.window_start,
                    until=cursor.window_end,
                    cursor=cursor.position,
                    resumed=True,
                )
            if cursor is not None and cursor.high_water_mark is not None and lookback_days is None:
                since = cursor.high_water_mark - timedelta(
                    seconds=self.settings.sync_overlap_seconds
                )
            else:
                days = lookback_days or self.settings.default_lookback_days
                since = now - timedelta(days=days)
        return _Window(since=since, until=now, cursor=None, resumed=False)

    async def _sync_entity(
        self,
        adapter: ProviderAdapter,
        queue: Any,
        connection: ConnectionSnapshot,
        entity_type: str,
        summary: EntitySyncSummary,
        totals: WriteSummary,
        now: datetime,
        lookback_days: int | None,
    ) -> None:
        window = await self._db(
            self._resolve_window, connection.id, entity_type, now, lookback_days
        )
        if window.resumed:
            logger.info(
                "Resuming %s backfill from cursor %s",
                entity_type,
                window.cursor,
                extra={"connection_id": connection.id, "provider": adapter.provider},
            )

        writer = IdempotentWriter(provider=adapter.provider)
        last_cursor: str | None = window.cursor
        async for page in self.fetcher.iter_pages(
            adapter,
            queue,
            connection,
            entity_type,
            since=window.since,
            until=window.until,
            cursor=window.cursor,
        ):
            summary.pages += 1
            summary.records_fetched += len(page.records)
            written = await self._db(
                self._persist_page, adapter, writer, connection.id, page, window
            )
            summary.records_written += written.written
            summary.duplicates += written.duplicates
            summary.failed += written.failed
            summary.skipped += written.skipped
            totals.merge(written)
            last_cursor = page.next_cursor
            if page.next_cursor is not None:
                summary.last_cursor = page.next_cursor

        truncated = summary.pages >= self.fetcher.max_pages and last_cursor is not None
        if truncated:
            # Leave the cursor in place so the next run continues the window.
            return
        await self._db(self._complete_cursor, connection.id, entity_type, window.until)
        summary.completed = True

    @staticmethod
    def _persist_page(
        adapter: ProviderAdapter,
        writer: IdempotentWriter,
        connection_id: str,
        page: FetchedPage,
        window: _Window,
    ) -> WriteSummary:
        drafts = []
        skipped = 0
        for record in page.records:
            try:
                drafts.extend(adapter.normalize(page.entity_type, record))
            except PayloadMalformedError as exc:
                skipped += 1
                logger.warning(
                    "Skipping malformed %s record %s: %s",
                    page.entity_type,
                    record.get("id", "-"),
                    exc,
                    extra={"connection_id": connection_id, "provider": adapter.provider},
                )
        written = writer.write(connection_id, drafts)
        written.skipped = skipped
        if page.next_cursor is not None:
            with session_scope() as session:
                SyncCursorRepository(session).save_progress(
                    connection_id,
                    page.entity_type,
                    position=page.next_cursor,
                    window_start=window.since,
                    window_end=window.until,
                    records_written=written.written,
                )
        return written

    @staticmethod
    def _complete_cursor(connection_id: str, entity_type: str, until: datetime) -> None:
        with session_scope() as session:
            SyncCursorRepository(session).complete(
                connection_id, entity_type, high_water_mark=until, records_written=0
            )

    async def _after_backfill(
        self,
        connection: ConnectionSnapshot,
        result: SyncResult,
        totals: WriteSummary,
        now: datetime,
    ) -> None:
        auth_failed = any(error.error_type == "AuthenticationError" for error in result.errors)
        last_cursor = next(
            (
                f"{entity.entity_type}:{entity.last_cursor}"[:512]
                for entity in reversed(result.entities)
                if entity.last_cursor
            ),
            None,
        )

        def _record() -> None:
            with session_scope() as session:
                repo = ConnectionRepository(session)
                model = repo.require(connection.id)
                repo.record_sync(
                    model,
                    synced_at=now if any(e.completed for e in result.entities) else None,
                    cursor=last_cursor,
                )
                if auth_failed and model.status == ConnectionStatus.ACTIVE.value:
                    repo.set_status(model, ConnectionStatus.ERROR.value)

        await self._db(_record)

        if totals.written_by_type:
            await self._db(
                self.publisher.publish,
                organization_id=connection.organization_id,
                connection_id=connection.id,
                provider=connection.provider,
                trigger="sync",
                written_by_type=totals.written_by_type,
            )

    def _finish(
        self, result: SyncResult, snapshot: ConnectionSnapshot, started: float
    ) -> SyncResult:
        result.finished_at = self._clock()
        duration = time.perf_counter() - started
        record_sync_run(snapshot.provider, result.status, duration)
        log_sync_attempt(
            logger,
            operation="sync",
            provider=snapshot.provider,
            connection_id=snapshot.id,
            duration_ms=int(duration * 1000),
            status=result.status,
            correlation_id=get_correlation_id(),
            sync_summary={
                "records_processed": result.records_processed,
                "records_written": result.records_written,
                "errors": [error.entity_type for error in result.errors],
            },
        )
        get_audit_logger().log_sync(
            connection_id=snapshot.id,
            provider=snapshot.provider,
            outcome={
                "success": AuditOutcome.SUCCESS,
                "partial": AuditOutcome.PARTIAL,
            }.get(result.status, AuditOutcome.FAILURE),
            correlation_id=get_correlation_id(),
            records_processed=result.records_processed,
            records_written=result.records_written,
        )
        return result

    # Single event -------------------------------------------------------

    async def ingest_event(
        self,
        connection: ConnectionSnapshot,
        kind: str,
        payload: Any,
        *,
        event_id: str | None = None,
        occurred_at: datetime | None = None,
    ) -> WriteSummary:
        """Normalize and write one webhook event, bypassing the fetcher.

        Raises:
            PayloadMalformedError: A mapped payload misses required fields.
        """

        adapter = self.adapter_for(connection.provider)
        drafts = adapter.normalize(kind, payload, event_id=event_id, occurred_at=occurred_at)
        if not drafts:
            return WriteSummary()
        writer = IdempotentWriter(provider=connection.provider)
        summary = await self._db(writer.write, connection.id, drafts)
        if summary.written_by_type:
            await self._db(
                self.publisher.publish,
                organization_id=connection.organization_id,
                connection_id=connection.id,
                provider=connection.provider,
                trigger="webhook",
                written_by_type=summary.written_by_type,
            )
        return summary

    # Disconnect ---------------------------------------------------------

    async def disconnect(self, connection_id: str, reason: str = "manual") -> ConnectionSnapshot:
        """Cancel work, tear down the queue and discard the credential."""

        def _disconnect() -> ConnectionSnapshot:
            with session_scope() as session:
                repo = ConnectionRepository(session)
                connection = repo.require(connection_id)
                if connection.status != ConnectionStatus.DISCONNECTED.value:
                    repo.disconnect(connection, reason)
                return ConnectionSnapshot.from_model(connection)

        snapshot = await self._db(_disconnect)
        await self.registry.close(connection_id, f"disconnected: {reason}")
        get_audit_logger().log_connection_event(
            AuditAction.CONNECTION_DISCONNECTED,
            AuditOutcome.SUCCESS,
            connection_id=connection_id,
            provider=snapshot.provider,
            correlation_id=get_correlation_id(),
            reason=reason,
        )
        return snapshot
