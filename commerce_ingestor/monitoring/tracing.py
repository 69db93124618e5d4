"""Correlation ID propagation and lightweight trace spans.

Correlation IDs live in a ``contextvars.ContextVar`` so they follow a request
or sync run across ``await`` boundaries and ``asyncio.to_thread`` calls.
"""

from __future__ import annotations

import contextvars
import time
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from ..utils.logging import setup_logger

logger = setup_logger(__name__)

_correlation_id_context: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)


@dataclass
class TraceSpan:
    """A single timed operation within a correlated trace."""

    span_id: str
    correlation_id: str
    operation: str
    start_time: float
    end_time: float | None = None
    duration_ms: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def finish(self) -> None:
        """Mark the span as complete and calculate duration."""
        if self.end_time is None:
            self.end_time = time.time()
            self.duration_ms = int((self.end_time - self.start_time) * 1000)


def get_correlation_id() -> str | None:
    """Return the active correlation ID, if any."""
    return _correlation_id_context.get()


def set_correlation_id(correlation_id: str) -> None:
    _correlation_id_context.set(correlation_id)


def clear_correlation_id() -> None:
    _correlation_id_context.set(None)


def ensure_correlation_id(provided_id: str | None = None) -> str:
    """
    Ensure a correlation ID exists, creating one if necessary.

    Args:
        provided_id: Optional correlation ID to use

    Returns:
        The provided ID, existing context ID, or newly generated ID
    """
    if provided_id:
        set_correlation_id(provided_id)
        return provided_id

    existing = get_correlation_id()
    if existing:
        return existing

    new_id = str(uuid.uuid4())
    set_correlation_id(new_id)
    return new_id


@contextmanager
def trace_span(operation: str, **metadata: Any) -> Iterator[TraceSpan]:
    """Time ``operation`` under the active correlation ID.

    Example:
        with trace_span("sync.entity", entity_type="orders") as span:
            span.metadata["pages"] = 3
    """
    corr_id = ensure_correlation_id()
    span = TraceSpan(
        span_id=str(uuid.uuid4()),
        correlation_id=corr_id,
        operation=operation,
        start_time=time.time(),
        metadata=metadata,
    )
    logger.debug("Trace span started: %s", operation, extra={"correlation_id": corr_id})
    try:
        yield span
    finally:
        span.finish()
        logger.debug(
            "Trace span completed: %s (duration: %dms)",
            operation,
            span.duration_ms or 0,
            extra={"correlation_id": corr_id, "duration_ms": span.duration_ms},
        )


def extract_correlation_id_from_headers(headers: Mapping[str, str]) -> str | None:
    """Return the first correlation header present (case-insensitive)."""

    headers_lower = {k.lower(): v for k, v in headers.items()}
    for candidate in ("x-correlation-id", "x-request-id", "correlation-id"):
        if candidate in headers_lower:
            return headers_lower[candidate]
    return None


__all__ = [
    "TraceSpan",
    "get_correlation_id",
    "set_correlation_id",
    "clear_correlation_id",
    "ensure_correlation_id",
    "trace_span",
    "extract_correlation_id_from_headers",
]
