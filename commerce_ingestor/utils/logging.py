"""Logging configuration for commerce_ingestor."""

from __future__ import annotations

import json
import logging
import sys
from threading import Lock
from typing import Any, Final

from .config import get_settings

# Define log format with structured context placeholders.
LOG_FORMAT: Final[str] = (
    "%(asctime)s | %(levelname)s | %(name)s | "
    "provider=%(provider)s | connection_id=%(connection_id)s | "
    "correlation_id=%(correlation_id)s | status=%(status)s | "
    "duration_ms=%(duration_ms)s | summary=%(sync_summary)s | %(message)s"
)

DEFAULT_CONTEXT: Final[dict[str, str]] = {
    "provider": "-",
    "connection_id": "-",
    "correlation_id": "-",
    "status": "-",
    "duration_ms": "-",
    "sync_summary": "-",
}

_LOG_CONFIGURED = False
_CONFIG_LOCK: Final = Lock()


class ContextualFormatter(logging.Formatter):
    """Formatter that injects default structured context fields when absent."""

    def __init__(self, fmt: str, defaults: dict[str, str] | None = None) -> None:
        super().__init__(fmt)
        self._defaults = defaults or {}

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        for key, value in self._defaults.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return super().format(record)


def _configure_root_logger() -> None:
    """Configure the root logger exactly once based on global settings."""

    global _LOG_CONFIGURED
    with _CONFIG_LOCK:
        if _LOG_CONFIGURED:
            return

        settings = get_settings()
        resolved_level = getattr(logging, settings.log_level.upper(), logging.INFO)

        root_logger = logging.getLogger()
        root_logger.setLevel(resolved_level)

        formatter = ContextualFormatter(LOG_FORMAT, DEFAULT_CONTEXT)

        if not root_logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setLevel(resolved_level)
            handler.setFormatter(formatter)
            root_logger.addHandler(handler)
        else:
            for handler in root_logger.handlers:
                handler.setFormatter(formatter)

        _LOG_CONFIGURED = True


class StructuredLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that lets per-call extras override defaults."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:  # type: ignore[override]
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **context: Any) -> StructuredLoggerAdapter:
        """Return a child adapter with additional default context."""

        merged = dict(self.extra or {})
        merged.update(context)
        return StructuredLoggerAdapter(self.logger, merged)


def setup_logger(
    name: str,
    *,
    level: str | None = None,
    context: dict[str, Any] | None = None,
) -> StructuredLoggerAdapter:
    """Return a logger configured with the global logging defaults.

    Args:
        name: Logger name to retrieve.
        level: Optional log level override (primarily for tests).
        context: Optional default structured context to include with every entry.

    Returns:
        LoggerAdapter injecting structured defaults for consistent formatting.
    """

    _configure_root_logger()
    logger = logging.getLogger(name)

    if level is not None:
        logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    adapter_context: dict[str, Any] = dict(DEFAULT_CONTEXT)
    if context:
        adapter_context.update(context)

    return StructuredLoggerAdapter(logger, adapter_context)


def log_sync_attempt(
    logger: logging.Logger | logging.LoggerAdapter,
    *,
    operation: str,
    provider: str,
    connection_id: str,
    duration_ms: int,
    status: str,
    **extra_context: Any,
) -> None:
    """
    Log a sync run or webhook delivery with structured context.

    Args:
        logger: Logger instance
        operation: ``sync``, ``webhook`` or ``test_connection``
        provider: Provider identifier
        connection_id: Connection identifier
        duration_ms: Processing duration in milliseconds
        status: Status (success, partial, error, ignored, ...)
        **extra_context: Additional context to log; ``sync_summary`` is JSON encoded
    """
    correlation_id = extra_context.pop("correlation_id", None)
    summary_raw = extra_context.pop("sync_summary", None)

    summary_value = "-"
    if summary_raw is not None:
        summary_value = json.dumps(summary_raw, default=str, sort_keys=True)

    structured_context: dict[str, Any] = {
        "provider": provider,
        "connection_id": connection_id,
        "duration_ms": duration_ms,
        "status": status,
        "correlation_id": correlation_id or "-",
        "sync_summary": summary_value,
    }
    additional_context = {
        key: value for key, value in extra_context.items() if key not in structured_context
    }
    structured_context.update(additional_context)
    message_suffix = f" | context={additional_context}" if additional_context else ""

    status_value = (status or "unknown").lower()
    if status_value in {"success", "ignored", "duplicate"}:
        log_method = logger.info
    elif status_value == "partial":
        log_method = logger.warning
    else:
        log_method = logger.error
    log_method(f"{operation.capitalize()} {status_value}{message_suffix}", extra=structured_context)
