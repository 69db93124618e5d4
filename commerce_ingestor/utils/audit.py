"""Audit logging for connection lifecycle and compliance operations."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .logging import setup_logger

# Separate audit logger so lifecycle events can be routed independently
audit_logger = setup_logger("commerce_ingestor.audit", context={"log_type": "audit"})


class AuditAction(str, Enum):
    """Enumeration of auditable actions."""

    # Connection lifecycle
    CONNECTION_TESTED = "connection.tested"
    CONNECTION_ERROR = "connection.error"
    CREDENTIAL_REFRESHED = "connection.credential_refreshed"
    CONNECTION_DISCONNECTED = "connection.disconnected"

    # Sync operations
    SYNC_STARTED = "sync.started"
    SYNC_COMPLETED = "sync.completed"
    SYNC_FAILED = "sync.failed"

    # Webhooks
    WEBHOOK_REJECTED = "webhook.rejected"

    # Compliance
    CUSTOMER_DATA_REQUESTED = "compliance.customer.data_request"
    CUSTOMER_REDACTED = "compliance.customer.redact"
    SHOP_REDACTED = "compliance.shop.redact"


class AuditOutcome(str, Enum):
    """Audit event outcome."""

    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"
    DENIED = "denied"


class AuditEvent(BaseModel):
    """Structured audit event."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
        description="ISO 8601 timestamp of the event",
    )
    action: AuditAction = Field(..., description="Action being audited")
    outcome: AuditOutcome = Field(..., description="Outcome of the action")
    actor: str = Field(..., description="Service, provider or API key performing action")
    actor_type: str = Field(default="service", description="service, provider, api_key")
    connection_id: str | None = Field(default=None, description="Connection acted upon")
    provider: str | None = Field(default=None, description="Provider of the connection")
    correlation_id: str | None = Field(
        default=None, description="Correlation ID for distributed tracing"
    )
    details: dict[str, Any] = Field(
        default_factory=dict, description="Additional context-specific details"
    )
    error_message: str | None = Field(
        default=None, description="Error message if outcome is failure/denied"
    )


class SensitiveFieldRedactor:
    """Redacts credentials and personal data from audit details."""

    PATTERNS = {
        "token": re.compile(
            r"(token|bearer|secret|whsec)[\"']?\s*[:=_]\s*[\"']?([a-zA-Z0-9_.\-]+)",
            re.IGNORECASE,
        ),
        "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b"),
    }

    SENSITIVE_FIELD_NAMES = {
        "secret",
        "webhook_secret",
        "token",
        "access_token",
        "credential",
        "authorization",
        "api_key",
        "password",
        "body",
        "payload",
    }

    @classmethod
    def redact_string(cls, text: str) -> str:
        redacted = cls.PATTERNS["email"].sub(
            lambda m: f"{m.group().split('@')[0][:3]}***@{m.group().split('@')[1]}",
            text,
        )
        return cls.PATTERNS["token"].sub(r"\1=***REDACTED***", redacted)

    @classmethod
    def redact_dict(cls, data: dict[str, Any], max_depth: int = 10) -> dict[str, Any]:
        """Recursively redact sensitive fields in a dictionary."""
        if max_depth <= 0:
            return data

        redacted: dict[str, Any] = {}
        for key, value in data.items():
            if key.lower() in cls.SENSITIVE_FIELD_NAMES:
                redacted[key] = "***REDACTED***"
            elif isinstance(value, dict):
                redacted[key] = cls.redact_dict(value, max_depth - 1)
            elif isinstance(value, list):
                redacted[key] = [
                    cls.redact_dict(item, max_depth - 1)
                    if isinstance(item, dict)
                    else cls.redact_string(str(item))
                    for item in value
                ]
            elif isinstance(value, str):
                redacted[key] = cls.redact_string(value)
            else:
                redacted[key] = value
        return redacted


class AuditLogger:
    """Audit logger with automatic sensitive data redaction."""

    def __init__(self, redact_sensitive: bool = True):
        self.redact_sensitive = redact_sensitive
        self.redactor = SensitiveFieldRedactor()

    def log_event(self, event: AuditEvent) -> None:
        event_dict = event.model_dump(exclude_none=True, mode="json")
        if self.redact_sensitive:
            event_dict = self.redactor.redact_dict(event_dict)

        audit_logger.info(
            f"AUDIT: {event.action.value}",
            extra={
                "audit_event": event_dict,
                "actor": event.actor,
                "action": event.action.value,
                "outcome": event.outcome.value,
                "connection_id": event.connection_id or "-",
                "provider": event.provider or "-",
            },
        )

    def log_connection_event(
        self,
        action: AuditAction,
        outcome: AuditOutcome,
        *,
        connection_id: str,
        provider: str,
        actor: str = "commerce-ingestor",
        actor_type: str = "service",
        correlation_id: str | None = None,
        error_message: str | None = None,
        **details: Any,
    ) -> None:
        """Log a lifecycle or compliance action against one connection."""
        self.log_event(
            AuditEvent(
                action=action,
                outcome=outcome,
                actor=actor,
                actor_type=actor_type,
                connection_id=connection_id,
                provider=provider,
                correlation_id=correlation_id,
                error_message=error_message,
                details=details,
            )
        )

    def log_sync(
        self,
        *,
        connection_id: str,
        provider: str,
        outcome: AuditOutcome,
        correlation_id: str | None = None,
        error_message: str | None = None,
        **details: Any,
    ) -> None:
        """Log the completion of a sync run."""
        action = (
            AuditAction.SYNC_FAILED if outcome is AuditOutcome.FAILURE else AuditAction.SYNC_COMPLETED
        )
        self.log_connection_event(
            action,
            outcome,
            connection_id=connection_id,
            provider=provider,
            correlation_id=correlation_id,
            error_message=error_message,
            **details,
        )


# Global audit logger instance
_audit_logger: AuditLogger | None = None


def get_audit_logger() -> AuditLogger:
    """Get or create the global audit logger instance."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger(redact_sensitive=True)
    return _audit_logger
