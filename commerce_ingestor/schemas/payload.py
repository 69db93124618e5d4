"""Pydantic schemas for metric drafts and sync/webhook results."""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Provider(str, Enum):
    """Supported provider identifiers."""

    SHOPIFY = "shopify"
    STRIPE = "stripe"
    GOOGLE_ANALYTICS = "google_analytics"


class ConnectionStatus(str, Enum):
    """Persisted connection status."""

    ACTIVE = "active"
    ERROR = "error"
    DISCONNECTED = "disconnected"


class MetricType(str, Enum):
    """Canonical metric types stored in the metric table."""

    REVENUE = "revenue"
    ORDERS = "orders"
    ORDER_CANCELLED = "order_cancelled"
    REFUNDS = "refunds"
    CUSTOMERS = "customers"
    SESSIONS = "sessions"
    USERS = "users"
    PAGEVIEWS = "pageviews"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    INVOICE_PAID = "invoice_paid"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    PAYMENT_FAILED = "payment_failed"
    CHARGE_FAILED = "charge_failed"
    DISPUTE_CREATED = "dispute_created"
    CHECKOUT_COMPLETED = "checkout_completed"


class MetricDraft(BaseModel):
    """A canonical metric produced by normalization and not yet persisted."""

    model_config = ConfigDict(frozen=True)

    metric_type: MetricType = Field(..., description="Canonical metric type")
    value: Decimal = Field(..., description="Numeric value in major units or counts")
    recorded_at: datetime = Field(..., description="Business timestamp of the event")
    metadata: dict[str, Any] = Field(
        ..., description="Metadata bag; always carries sourceEventId and source"
    )

    @model_validator(mode="after")
    def _require_identity(self) -> "MetricDraft":
        if not self.metadata.get("sourceEventId"):
            raise ValueError("metadata.sourceEventId is required")
        if not self.metadata.get("source"):
            raise ValueError("metadata.source is required")
        return self

    @property
    def source_event_id(self) -> str:
        return str(self.metadata["sourceEventId"])

    @property
    def idempotency_key(self) -> tuple[str, str]:
        """Key unique per connection: (sourceEventId, metric type)."""

        return self.source_event_id, self.metric_type.value


class VerificationResult(BaseModel):
    """Outcome of a webhook signature check."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    reason: str | None = Field(None, description="Machine readable rejection reason")
    event: dict[str, Any] | None = Field(None, description="Parsed body when valid")

    def __bool__(self) -> bool:
        return self.valid


class FetchedPage(BaseModel):
    """One page returned by a provider list endpoint."""

    entity_type: str
    records: list[dict[str, Any]] = Field(default_factory=list)
    next_cursor: str | None = Field(None, description="Cursor for the following page")
    requested_size: int | None = None


class ConnectionTestResult(BaseModel):
    """Result of a lightweight authenticated call against the provider."""

    connection_id: str
    provider: str
    ok: bool
    status: ConnectionStatus
    account_name: str | None = None
    message: str | None = None
    action_required: str | None = None
    checked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SyncError(BaseModel):
    """One failed entity type within a sync run."""

    entity_type: str
    error_type: str
    message: str
    retryable: bool = False
    action_required: str = "investigate"
    records_processed: int = 0


class EntitySyncSummary(BaseModel):
    """Per-entity counters for a sync run."""

    entity_type: str
    pages: int = 0
    records_fetched: int = 0
    records_written: int = 0
    duplicates: int = 0
    failed: int = 0
    skipped: int = 0
    last_cursor: str | None = None
    completed: bool = False


class SyncResult(BaseModel):
    """Aggregated outcome of ``sync_connection``; partial success is valid."""

    connection_id: str
    provider: str
    records_processed: int = 0
    records_written: int = 0
    errors: list[SyncError] = Field(default_factory=list)
    entities: list[EntitySyncSummary] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def success(self) -> bool:
        return not self.errors

    @property
    def status(self) -> str:
        if not self.errors:
            return "success"
        if any(entity.completed for entity in self.entities):
            return "partial"
        return "error"


class WebhookOutcome(BaseModel):
    """Result of processing one inbound webhook."""

    status: str = Field(..., description="processed, ignored or duplicate")
    provider: str
    connection_id: str
    topic: str
    receipt_id: int | None = None
    records_written: int = 0
    duplicates: int = 0
    message: str | None = None


class SyncTaskStatus(str, Enum):
    """Observable states of a background sync task handle."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SyncTaskView(BaseModel):
    """Serializable snapshot of a sync task handle."""

    task_id: str
    connection_id: str
    status: SyncTaskStatus
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    result: SyncResult | None = None
    error: dict[str, Any] | None = None
