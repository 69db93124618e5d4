"""Avro schema for ``metrics.updated`` events."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

METRICS_UPDATED_SCHEMA: dict[str, Any] = {
    "namespace": "commerce.metrics",
    "type": "record",
    "name": "MetricsUpdated",
    "fields": [
        {"name": "correlation_id", "type": ["null", "string"], "default": None},
        {"name": "organization_id", "type": "string"},
        {"name": "connection_id", "type": "string"},
        {"name": "provider", "type": "string"},
        {"name": "trigger", "type": "string"},
        {"name": "records_written", "type": "int"},
        {"name": "metric_types", "type": {"type": "array", "items": "string"}, "default": []},
        {"name": "timestamp", "type": "string"},
    ],
}


def build_metrics_updated_record(
    *,
    organization_id: str,
    connection_id: str,
    provider: str,
    trigger: str,
    written_by_type: dict[str, int],
    correlation_id: str | None = None,
) -> dict[str, Any]:
    """Build an Avro-ready record; ``trigger`` is ``webhook`` or ``sync``."""

    return {
        "correlation_id": correlation_id,
        "organization_id": organization_id,
        "connection_id": connection_id,
        "provider": provider,
        "trigger": trigger,
        "records_written": sum(written_by_type.values()),
        "metric_types": sorted(written_by_type),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
