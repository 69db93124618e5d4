"""Repository helpers for persistence models."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from ..exceptions import ConnectionNotFoundError, ValidationFailedError
from .base import utcnow
from .connection import Connection
from .metric_record import MetricRecord
from .sync_cursor import SyncCursor
from .webhook_receipt import WebhookReceipt

PII_METADATA_KEYS = ("customerEmail", "customerName", "email")
REDACTED = "redacted"


@dataclass(slots=True)
class ConnectionCreate:
    """Value object capturing required fields to persist a connection."""

    organization_id: str
    provider: str
    provider_account_id: str
    credential: str
    settings: dict[str, Any] = field(default_factory=dict)


class ConnectionRepository:
    """Data access helpers for :class:`Connection`."""

    def __init__(self, session: Session):
        self._session = session

    def get(self, connection_id: str) -> Connection | None:
        return self._session.get(Connection, connection_id)

    def require(self, connection_id: str) -> Connection:
        """Return the connection or raise :class:`ConnectionNotFoundError`."""

        connection = self.get(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection '{connection_id}' does not exist")
        return connection

    def find_active(self, organization_id: str, provider: str) -> Connection | None:
        stmt = select(Connection).where(
            Connection.organization_id == organization_id,
            Connection.provider == provider,
            Connection.status == "active",
        )
        return self._session.scalars(stmt).first()

    def find_by_account(self, provider: str, provider_account_id: str) -> Connection | None:
        """Return the non-disconnected connection for a provider account."""

        stmt = (
            select(Connection)
            .where(
                Connection.provider == provider,
                Connection.provider_account_id == provider_account_id,
                Connection.status != "disconnected",
            )
            .order_by(Connection.created_at.desc())
        )
        return self._session.scalars(stmt).first()

    def find_latest(self, organization_id: str, provider: str) -> Connection | None:
        """Return the newest connection for the organization, whatever its status."""

        stmt = (
            select(Connection)
            .where(
                Connection.organization_id == organization_id,
                Connection.provider == provider,
            )
            .order_by(Connection.created_at.desc())
        )
        return self._session.scalars(stmt).first()

    def list_by_status(self, status: str = "active", provider: str | None = None) -> list[Connection]:
        stmt = select(Connection).where(Connection.status == status)
        if provider is not None:
            stmt = stmt.where(Connection.provider == provider)
        return list(self._session.scalars(stmt.order_by(Connection.created_at)))

    def upsert_active(self, data: ConnectionCreate) -> Connection:
        """Create a connection, or refresh the credential of the same account.

        Raises:
            ValidationFailedError: Another account is already active for the
                organization and provider.
        """

        existing = self.find_active(data.organization_id, data.provider)
        if existing is not None:
            if existing.provider_account_id != data.provider_account_id:
                raise ValidationFailedError(
                    f"Organization '{data.organization_id}' already has an active "
                    f"{data.provider} connection"
                )
            existing.credential = data.credential
            existing.settings = {**(existing.settings or {}), **data.settings}
            self._session.flush()
            return existing

        connection = Connection(
            organization_id=data.organization_id,
            provider=data.provider,
            provider_account_id=data.provider_account_id,
            credential=data.credential,
            status="active",
            settings=dict(data.settings),
        )
        self._session.add(connection)
        self._session.flush()
        return connection

    def set_status(self, connection: Connection, status: str) -> Connection:
        connection.status = status
        self._session.flush()
        return connection

    def disconnect(self, connection: Connection, reason: str) -> Connection:
        """Mark disconnected and discard the credential."""

        connection.status = "disconnected"
        connection.credential = None
        connection.disconnected_at = utcnow()
        connection.settings = {**(connection.settings or {}), "disconnect_reason": reason}
        self._session.flush()
        return connection

    def rotate_credential(
        self, connection: Connection, credential: str, **settings: Any
    ) -> Connection:
        """Store a refreshed credential and merge ``settings`` into the connection."""

        connection.credential = credential
        connection.settings = {**(connection.settings or {}), **settings}
        self._session.flush()
        return connection

    def record_sync(
        self, connection: Connection, *, synced_at: datetime | None, cursor: str | None
    ) -> Connection:
        if synced_at is not None:
            connection.last_sync_at = synced_at
        if cursor is not None:
            connection.last_cursor = cursor
        self._session.flush()
        return connection


class MetricRecordRepository:
    """Read and corrective-update helpers for :class:`MetricRecord`."""

    def __init__(self, session: Session):
        self._session = session

    def list_for_connection(
        self, connection_id: str, metric_type: str | None = None
    ) -> list[MetricRecord]:
        stmt = select(MetricRecord).where(MetricRecord.connection_id == connection_id)
        if metric_type is not None:
            stmt = stmt.where(MetricRecord.metric_type == metric_type)
        return list(self._session.scalars(stmt.order_by(MetricRecord.recorded_at, MetricRecord.id)))

    def count(self, connection_id: str, metric_type: str | None = None) -> int:
        stmt = select(func.count(MetricRecord.id)).where(
            MetricRecord.connection_id == connection_id
        )
        if metric_type is not None:
            stmt = stmt.where(MetricRecord.metric_type == metric_type)
        return int(self._session.scalar(stmt) or 0)

    def redact_customer(self, connection_id: str, customer_id: str) -> int:
        """Strip PII from every record that references ``customer_id``."""

        redacted = 0
        stmt = select(MetricRecord).where(MetricRecord.connection_id == connection_id)
        for record in self._session.scalars(stmt).all():
            metadata = dict(record.record_metadata or {})
            if str(metadata.get("customerId")) != str(customer_id):
                continue
            for key in PII_METADATA_KEYS:
                metadata.pop(key, None)
            metadata["customerId"] = REDACTED
            metadata["redactedAt"] = utcnow().isoformat()
            record.record_metadata = metadata
            redacted += 1
        self._session.flush()
        return redacted

    def delete_for_connection(self, connection_id: str) -> int:
        """Erase all metric records for a connection (data-erasure request)."""

        result = self._session.execute(
            delete(MetricRecord).where(MetricRecord.connection_id == connection_id)
        )
        return int(result.rowcount or 0)


class WebhookReceiptRepository:
    """Data access helpers for :class:`WebhookReceipt`."""

    def __init__(self, session: Session):
        self._session = session

    def create(
        self,
        *,
        provider: str,
        topic: str,
        connection_id: str | None,
        external_id: str | None,
        correlation_id: str | None = None,
        status: str = "received",
        error_detail: str | None = None,
    ) -> WebhookReceipt:
        receipt = WebhookReceipt(
            provider=provider,
            topic=topic,
            connection_id=connection_id,
            external_id=external_id,
            correlation_id=correlation_id,
            status=status,
            error_detail=error_detail,
        )
        if status != "received":
            receipt.processed_at = utcnow()
        self._session.add(receipt)
        self._session.flush()
        return receipt

    def find_processed(
        self, connection_id: str, topic: str, external_id: str | None
    ) -> WebhookReceipt | None:
        if not external_id:
            return None
        stmt = select(WebhookReceipt).where(
            WebhookReceipt.connection_id == connection_id,
            WebhookReceipt.topic == topic,
            WebhookReceipt.external_id == external_id,
            WebhookReceipt.status == "processed",
        )
        return self._session.scalars(stmt).first()

    def complete(
        self,
        receipt_id: int,
        *,
        status: str,
        records_written: int = 0,
        error_detail: str | None = None,
    ) -> WebhookReceipt | None:
        receipt = self._session.get(WebhookReceipt, receipt_id)
        if receipt is None:
            return None
        receipt.status = status
        receipt.records_written = records_written
        receipt.error_detail = error_detail
        receipt.processed_at = utcnow()
        self._session.flush()
        return receipt

    def list_for_connection(self, connection_id: str) -> Sequence[WebhookReceipt]:
        stmt = (
            select(WebhookReceipt)
            .where(WebhookReceipt.connection_id == connection_id)
            .order_by(WebhookReceipt.id)
        )
        return list(self._session.scalars(stmt))


class SyncCursorRepository:
    """Data access helpers for :class:`SyncCursor`."""

    def __init__(self, session: Session):
        self._session = session

    def get(self, connection_id: str, entity_type: str) -> SyncCursor | None:
        stmt = select(SyncCursor).where(
            SyncCursor.connection_id == connection_id,
            SyncCursor.entity_type == entity_type,
        )
        return self._session.scalars(stmt).first()

    def _get_or_create(self, connection_id: str, entity_type: str) -> SyncCursor:
        cursor = self.get(connection_id, entity_type)
        if cursor is None:
            cursor = SyncCursor(connection_id=connection_id, entity_type=entity_type)
            self._session.add(cursor)
        return cursor

    def save_progress(
        self,
        connection_id: str,
        entity_type: str,
        *,
        position: str,
        window_start: datetime,
        window_end: datetime,
        records_written: int,
    ) -> SyncCursor:
        """Persist the cursor of the next page after a page was written."""

        cursor = self._get_or_create(connection_id, entity_type)
        cursor.position = position
        cursor.window_start = window_start
        cursor.window_end = window_end
        cursor.records_written = (cursor.records_written or 0) + records_written
        self._session.flush()
        return cursor

    def complete(
        self,
        connection_id: str,
        entity_type: str,
        *,
        high_water_mark: datetime,
        records_written: int,
    ) -> SyncCursor:
        """Close the window: clear the page position and advance the mark."""

        cursor = self._get_or_create(connection_id, entity_type)
        cursor.position = None
        cursor.window_start = None
        cursor.window_end = None
        cursor.high_water_mark = high_water_mark
        cursor.records_written = (cursor.records_written or 0) + records_written
        self._session.flush()
        return cursor

    def list_for_connection(self, connection_id: str) -> list[SyncCursor]:
        stmt = (
            select(SyncCursor)
            .where(SyncCursor.connection_id == connection_id)
            .order_by(SyncCursor.entity_type)
        )
        return list(self._session.scalars(stmt))
