"""Event normalization: provider payloads to canonical metric drafts."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

from ..schemas.events import EVENT_FAMILIES, parse_provider_event
from ..schemas.payload import MetricDraft
from . import google_analytics, shopify, stripe

_HANDLERS: dict[str, Callable[[Any], list[MetricDraft]]] = {
    **shopify.HANDLERS,
    **stripe.HANDLERS,
    **google_analytics.HANDLERS,
}


def normalize_event(event: Any) -> list[MetricDraft]:
    """Map an already validated provider event to metric drafts."""

    handler = _HANDLERS.get(EVENT_FAMILIES[(event.provider, event.kind)])
    if handler is None:
        return []
    return handler(event)


def normalize(
    provider: str,
    kind: str,
    payload: Any,
    *,
    event_id: str | None = None,
    occurred_at: datetime | None = None,
) -> list[MetricDraft]:
    """Return the ordered metric drafts for ``payload``.

    Unmapped ``(provider, kind)`` pairs yield an empty list rather than an
    error.

    Raises:
        PayloadMalformedError: When a mapped payload misses required fields.
    """

    event = parse_provider_event(
        provider, kind, payload, event_id=event_id, occurred_at=occurred_at
    )
    if event is None:
        return []
    return normalize_event(event)


__all__ = ["normalize", "normalize_event"]
