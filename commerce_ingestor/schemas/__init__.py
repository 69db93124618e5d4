"""Schemas package initialization."""
from .payload import (
    ConnectionStatus,
    ConnectionTestResult,
    EntitySyncSummary,
    FetchedPage,
    MetricDraft,
    MetricType,
    Provider,
    SyncError,
    SyncResult,
    SyncTaskStatus,
    SyncTaskView,
    VerificationResult,
    WebhookOutcome,
)

__all__ = [
    "ConnectionStatus",
    "ConnectionTestResult",
    "EntitySyncSummary",
    "FetchedPage",
    "MetricDraft",
    "MetricType",
    "Provider",
    "SyncError",
    "SyncResult",
    "SyncTaskStatus",
    "SyncTaskView",
    "VerificationResult",
    "WebhookOutcome",
]
