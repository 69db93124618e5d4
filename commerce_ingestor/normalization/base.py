"""Shared helpers for building metric drafts."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from ..schemas.payload import MetricDraft, MetricType

ONE = Decimal(1)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def composite_source_id(provider: str, entity: str, entity_id: Any, *parts: Any) -> str:
    """Build a deterministic source event id such as ``stripe:charge:ch_1``."""

    segments = [provider, entity, str(entity_id)]
    segments.extend(str(part) for part in parts if part is not None)
    return ":".join(segments)


def draft(
    provider: str,
    metric_type: MetricType,
    value: Decimal | int,
    recorded_at: datetime,
    source_event_id: str,
    **metadata: Any,
) -> MetricDraft:
    """Build a :class:`MetricDraft`, dropping ``None`` metadata values."""

    bag: dict[str, Any] = {key: val for key, val in metadata.items() if val is not None}
    bag["sourceEventId"] = source_event_id
    bag["source"] = provider
    return MetricDraft(
        metric_type=metric_type,
        value=Decimal(value),
        recorded_at=as_utc(recorded_at),
        metadata=bag,
    )
