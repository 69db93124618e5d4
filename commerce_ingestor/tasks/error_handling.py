"""Structured error handling utilities for Celery sync tasks."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..exceptions import (
    AuthenticationError,
    CommerceIngestorError,
    ConfigurationError,
    ConnectionInactiveError,
    ConnectionNotFoundError,
    PayloadMalformedError,
    ProviderNotFoundError,
    RateLimitExceededError,
    SyncAlreadyRunningError,
    UpstreamUnavailableError,
    ValidationFailedError,
)


@dataclass(slots=True)
class TaskErrorReport:
    """Structured payload describing a failed Celery sync attempt."""

    connection_id: str
    provider: str | None
    correlation_id: str | None
    error_type: str
    message: str
    classification: str
    retryable: bool
    action_required: str
    timestamp: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return a serializable dictionary representation of the error report."""

        payload: dict[str, Any] = {
            "connection_id": self.connection_id,
            "provider": self.provider,
            "correlation_id": self.correlation_id,
            "error_type": self.error_type,
            "message": self.message,
            "classification": self.classification,
            "retryable": self.retryable,
            "action_required": self.action_required,
            "timestamp": self.timestamp,
        }
        if self.details:
            payload["details"] = self.details
        return payload


def build_error_report(
    exc: Exception,
    *,
    connection_id: str,
    provider: str | None = None,
    correlation_id: str | None = None,
    retryable_override: bool | None = None,
    extra_details: dict[str, Any] | None = None,
) -> TaskErrorReport:
    """Construct a :class:`TaskErrorReport` describing the supplied exception."""

    classification, default_retryable, action_required = _classify_exception(exc)
    retryable = retryable_override if retryable_override is not None else default_retryable

    details: dict[str, Any] = {"exception_module": exc.__class__.__module__}
    if isinstance(exc, RateLimitExceededError) and exc.retry_after is not None:
        details["retry_after"] = exc.retry_after
    if extra_details:
        details.update(extra_details)

    return TaskErrorReport(
        connection_id=connection_id,
        provider=provider,
        correlation_id=correlation_id,
        error_type=exc.__class__.__name__,
        message=str(exc) if str(exc) else exc.__class__.__name__,
        classification=classification,
        retryable=retryable,
        action_required=action_required,
        timestamp=datetime.now(timezone.utc).isoformat(),
        details=details,
    )


def _classify_exception(exc: Exception) -> tuple[str, bool, str]:
    """Return ``(classification, retryable, action_required)`` for an exception."""

    if isinstance(exc, SyncAlreadyRunningError):
        return "concurrency", False, "none"
    if isinstance(exc, (ConfigurationError, ProviderNotFoundError)):
        return "configuration", False, "investigate"
    if isinstance(exc, (ConnectionNotFoundError, ConnectionInactiveError)):
        return "connection", False, exc.action_required
    if isinstance(exc, AuthenticationError):
        return "authentication", False, "reauthorize"
    if isinstance(exc, RateLimitExceededError):
        return "rate_limited", True, "wait"
    if isinstance(exc, UpstreamUnavailableError):
        return "upstream", True, "wait"
    if isinstance(exc, (PayloadMalformedError, ValidationFailedError)):
        return "validation", False, "investigate"
    if isinstance(exc, CommerceIngestorError):
        return "application", exc.retryable, exc.action_required
    return "unexpected", False, "investigate"
