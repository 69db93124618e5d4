"""Inbound webhook pipeline: resolve, verify, throttle, parse, write."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from typing import Any

from ..api.rate_limit import RateLimiter
from ..exceptions import (
    CommerceIngestorError,
    ConnectionNotFoundError,
    PayloadMalformedError,
    ProviderNotFoundError,
    RateLimitExceededError,
    SignatureInvalidError,
)
from ..models.base import session_scope
from ..models.connection import ConnectionSnapshot
from ..models.repository import ConnectionRepository, WebhookReceiptRepository
from ..monitoring.metrics import record_webhook
from ..monitoring.tracing import get_correlation_id, trace_span
from ..schemas.events import is_mapped, parse_provider_event
from ..schemas.payload import WebhookOutcome
from ..sync.orchestrator import SyncOrchestrator
from ..utils.audit import AuditAction, AuditOutcome, get_audit_logger
from ..utils.logging import log_sync_attempt, setup_logger
from .lifecycle import accepts_disconnected, lifecycle_handler
from .verification import header_value

logger = setup_logger(__name__, context={"component": "webhooks"})


class WebhookProcessor:
    """Turns one raw webhook delivery into stored metrics.

    A delivery is acknowledged (``processed``, ``ignored`` or ``duplicate``)
    or rejected with a typed error the HTTP layer maps to a status code.
    Redeliveries are safe because both receipts and metric rows are
    idempotent.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        *,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        settings = orchestrator.settings
        self.rate_limiter = rate_limiter or RateLimiter(
            requests_per_window=settings.webhook_rate_limit,
            window_seconds=settings.webhook_rate_window_seconds,
        )

    @staticmethod
    def _resolve(
        provider: str,
        organization_id: str | None,
        connection_id: str | None,
        include_disconnected: bool = False,
    ) -> ConnectionSnapshot:
        with session_scope() as session:
            repo = ConnectionRepository(session)
            if connection_id:
                connection = repo.get(connection_id)
                if (
                    connection is None
                    or connection.provider != provider
                    or (organization_id and connection.organization_id != organization_id)
                ):
                    connection = None
            elif organization_id:
                connection = repo.find_active(organization_id, provider)
                if connection is None and include_disconnected:
                    connection = repo.find_latest(organization_id, provider)
            else:
                raise ConnectionNotFoundError(
                    "Webhook must identify an organization or connection"
                )
            if connection is None or not (connection.is_active or include_disconnected):
                raise ConnectionNotFoundError(
                    f"No active {provider} connection matches this webhook"
                )
            return ConnectionSnapshot.from_model(connection)

    async def resolve_connection(
        self,
        provider: str,
        *,
        organization_id: str | None,
        connection_id: str | None,
        include_disconnected: bool = False,
    ) -> ConnectionSnapshot:
        return await asyncio.to_thread(
            self._resolve, provider, organization_id, connection_id, include_disconnected
        )

    def _throttle(self, connection: ConnectionSnapshot) -> None:
        allowed, metadata = self.rate_limiter.is_allowed(f"webhook:{connection.id}")
        if not allowed:
            record_webhook(connection.provider, "throttled")
            raise RateLimitExceededError(
                f"Webhook rate limit exceeded for connection '{connection.id}'",
                retry_after=max(1.0, metadata["reset"] - time.time()),
            )

    async def _record_rejection(
        self, connection: ConnectionSnapshot, topic: str, reason: str
    ) -> None:
        def _create() -> None:
            with session_scope() as session:
                WebhookReceiptRepository(session).create(
                    provider=connection.provider,
                    topic=topic,
                    connection_id=connection.id,
                    external_id=None,
                    correlation_id=get_correlation_id(),
                    status="failed",
                    error_detail=f"signature rejected: {reason}",
                )

        await asyncio.to_thread(_create)
        get_audit_logger().log_connection_event(
            AuditAction.WEBHOOK_REJECTED,
            AuditOutcome.DENIED,
            connection_id=connection.id,
            provider=connection.provider,
            actor=connection.provider,
            actor_type="provider",
            correlation_id=get_correlation_id(),
            reason=reason,
        )

    async def process(
        self,
        provider: str,
        body: bytes,
        headers: Mapping[str, str],
        *,
        organization_id: str | None = None,
        connection_id: str | None = None,
    ) -> WebhookOutcome:
        """Handle one delivery.

        Raises:
            ProviderNotFoundError: Unknown provider or one without webhooks.
            ConnectionNotFoundError: No active connection matches.
            RateLimitExceededError: The connection's webhook budget is spent.
            SignatureInvalidError: Verification failed.
            PayloadMalformedError: The verified body could not be parsed.
        """

        started = time.perf_counter()
        adapter = self.orchestrator.adapter_for(provider)
        if not adapter.supports_webhooks:
            raise ProviderNotFoundError(f"Provider '{provider}' does not accept webhooks")

        connection = await self.resolve_connection(
            provider,
            organization_id=organization_id,
            connection_id=connection_id,
            include_disconnected=accepts_disconnected(
                provider, header_value(headers, "x-shopify-topic")
            ),
        )
        verification = adapter.verify_signature(body, headers, adapter.webhook_secret(connection))
        if not verification:
            reason = verification.reason or "invalid"
            record_webhook(provider, "rejected")
            logger.warning(
                "Rejected %s webhook: %s",
                provider,
                reason,
                extra={"connection_id": connection.id, "provider": provider},
            )
            # Rejected deliveries draw from a separate bucket.
            allowed, _ = self.rate_limiter.is_allowed(f"webhook-rejected:{connection.id}")
            if allowed:
                topic = header_value(headers, "x-shopify-topic") or "unknown"
                await self._record_rejection(connection, topic, reason)
            raise SignatureInvalidError(provider, reason)
        self._throttle(connection)

        if verification.event is None:
            record_webhook(provider, "malformed")
            raise PayloadMalformedError("Webhook body is not a JSON object")
        event = adapter.parse_webhook(verification.event, headers)
        if not adapter.account_matches(connection, event.account_id):
            raise ConnectionNotFoundError(
                f"Webhook account does not match connection '{connection.id}'"
            )

        log = logger.bind(connection_id=connection.id, provider=provider)
        with trace_span("webhook.process", provider=provider, topic=event.kind):
            outcome = await self._handle(connection, event, log)

        record_webhook(provider, outcome.status)
        log_sync_attempt(
            logger,
            operation="webhook",
            provider=provider,
            connection_id=connection.id,
            duration_ms=int((time.perf_counter() - started) * 1000),
            status=outcome.status,
            correlation_id=get_correlation_id(),
            topic=event.kind,
            records_written=outcome.records_written,
        )
        return outcome

    async def _handle(self, connection: ConnectionSnapshot, event: Any, log: Any) -> WebhookOutcome:
        def _start() -> int | None:
            with session_scope() as session:
                repo = WebhookReceiptRepository(session)
                if repo.find_processed(connection.id, event.kind, event.external_id) is not None:
                    return None
                return repo.create(
                    provider=connection.provider,
                    topic=event.kind,
                    connection_id=connection.id,
                    external_id=event.external_id,
                    correlation_id=get_correlation_id(),
                ).id

        receipt_id = await asyncio.to_thread(_start)
        if receipt_id is None:
            return WebhookOutcome(
                status="duplicate",
                provider=connection.provider,
                connection_id=connection.id,
                topic=event.kind,
                message="delivery already processed",
            )

        def _complete(status: str, written: int = 0, detail: str | None = None) -> None:
            with session_scope() as session:
                WebhookReceiptRepository(session).complete(
                    receipt_id, status=status, records_written=written, error_detail=detail
                )

        try:
            handler = lifecycle_handler(connection.provider, event.kind)
            if handler is not None:
                parsed = parse_provider_event(connection.provider, event.kind, event.payload)
                payload = (
                    parsed.payload.model_dump(mode="json") if parsed is not None else event.payload
                )
                message = await handler(self.orchestrator, connection, payload)
                await asyncio.to_thread(_complete, "processed", 0, message)
                return WebhookOutcome(
                    status="processed",
                    provider=connection.provider,
                    connection_id=connection.id,
                    topic=event.kind,
                    receipt_id=receipt_id,
                    message=message,
                )

            if not is_mapped(connection.provider, event.kind):
                log.info("Unhandled but acknowledged webhook topic %s", event.kind)
                await asyncio.to_thread(_complete, "processed", 0, "unmapped event kind")
                return WebhookOutcome(
                    status="ignored",
                    provider=connection.provider,
                    connection_id=connection.id,
                    topic=event.kind,
                    receipt_id=receipt_id,
                    message="event kind not mapped",
                )

            summary = await self.orchestrator.ingest_event(
                connection,
                event.kind,
                event.payload,
                event_id=event.external_id,
                occurred_at=event.occurred_at,
            )
        except PayloadMalformedError as exc:
            await asyncio.to_thread(_complete, "failed", 0, str(exc))
            raise
        except Exception as exc:
            await asyncio.to_thread(_complete, "failed", 0, type(exc).__name__)
            raise

        if summary.failed:
            await asyncio.to_thread(
                _complete, "failed", summary.written, f"{summary.failed} records not persisted"
            )
            raise CommerceIngestorError(
                f"{summary.failed} metric records could not be persisted"
            )

        await asyncio.to_thread(_complete, "processed", summary.written)
        return WebhookOutcome(
            status="processed",
            provider=connection.provider,
            connection_id=connection.id,
            topic=event.kind,
            receipt_id=receipt_id,
            records_written=summary.written,
            duplicates=summary.duplicates,
        )
