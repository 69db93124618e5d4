"""Connection lifecycle and compliance webhooks.

These topics change connection state or correct stored data instead of
producing metrics.
Handlers receive payloads that already passed schema validation.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from ..models.base import session_scope
from ..models.connection import ConnectionSnapshot
from ..models.repository import MetricRecordRepository
from ..monitoring.tracing import get_correlation_id
from ..utils.audit import AuditAction, AuditOutcome, get_audit_logger
from ..utils.logging import setup_logger

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from ..sync.orchestrator import SyncOrchestrator

logger = setup_logger(__name__)

LifecycleHandler = Callable[
    ["SyncOrchestrator", ConnectionSnapshot, dict[str, Any]], Awaitable[str]
]


async def _uninstalled(
    orchestrator: SyncOrchestrator, connection: ConnectionSnapshot, payload: dict[str, Any]
) -> str:
    await orchestrator.disconnect(connection.id, reason="app_uninstalled")
    return "connection disconnected"


async def _deauthorized(
    orchestrator: SyncOrchestrator, connection: ConnectionSnapshot, payload: dict[str, Any]
) -> str:
    await orchestrator.disconnect(connection.id, reason="account_deauthorized")
    return "connection disconnected"


async def _customer_redact(
    orchestrator: SyncOrchestrator, connection: ConnectionSnapshot, payload: dict[str, Any]
) -> str:
    customer_id = (payload.get("customer") or {}).get("id")
    if customer_id is None:
        return "no customer to redact"

    def _redact() -> int:
        with session_scope() as session:
            return MetricRecordRepository(session).redact_customer(connection.id, str(customer_id))

    redacted = await asyncio.to_thread(_redact)
    get_audit_logger().log_connection_event(
        AuditAction.CUSTOMER_REDACTED,
        AuditOutcome.SUCCESS,
        connection_id=connection.id,
        provider=connection.provider,
        actor=connection.provider,
        actor_type="provider",
        correlation_id=get_correlation_id(),
        records_redacted=redacted,
    )
    return f"redacted {redacted} records"


async def _shop_redact(
    orchestrator: SyncOrchestrator, connection: ConnectionSnapshot, payload: dict[str, Any]
) -> str:
    def _erase() -> int:
        with session_scope() as session:
            return MetricRecordRepository(session).delete_for_connection(connection.id)

    if connection.is_active:
        await orchestrator.disconnect(connection.id, reason="shop_redact")
    erased = await asyncio.to_thread(_erase)
    get_audit_logger().log_connection_event(
        AuditAction.SHOP_REDACTED,
        AuditOutcome.SUCCESS,
        connection_id=connection.id,
        provider=connection.provider,
        actor=connection.provider,
        actor_type="provider",
        correlation_id=get_correlation_id(),
        records_erased=erased,
    )
    return f"erased {erased} records"


async def _customer_data_request(
    orchestrator: SyncOrchestrator, connection: ConnectionSnapshot, payload: dict[str, Any]
) -> str:
    get_audit_logger().log_connection_event(
        AuditAction.CUSTOMER_DATA_REQUESTED,
        AuditOutcome.SUCCESS,
        connection_id=connection.id,
        provider=connection.provider,
        actor=connection.provider,
        actor_type="provider",
        correlation_id=get_correlation_id(),
        customer_id=(payload.get("customer") or {}).get("id"),
        data_request_id=(payload.get("data_request") or {}).get("id"),
    )
    return "data request recorded"


LIFECYCLE_HANDLERS: dict[tuple[str, str], LifecycleHandler] = {
    ("shopify", "app/uninstalled"): _uninstalled,
    ("shopify", "customers/redact"): _customer_redact,
    ("shopify", "shop/redact"): _shop_redact,
    ("shopify", "customers/data_request"): _customer_data_request,
    ("stripe", "account.application.deauthorized"): _deauthorized,
}


# Erasure requests arrive after uninstall, so they may target a disconnected
# connection.
ERASURE_TOPICS: frozenset[tuple[str, str]] = frozenset(
    {("shopify", "customers/redact"), ("shopify", "shop/redact")}
)


def lifecycle_handler(provider: str, kind: str) -> LifecycleHandler | None:
    return LIFECYCLE_HANDLERS.get((provider, kind))


def accepts_disconnected(provider: str, kind: str | None) -> bool:
    return kind is not None and (provider, kind) in ERASURE_TOPICS
