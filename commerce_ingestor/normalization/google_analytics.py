"""Google Analytics daily traffic mapping."""

from __future__ import annotations

from datetime import datetime, time, timezone

from ..schemas.events import AnalyticsReportEvent
from ..schemas.payload import MetricDraft, MetricType
from .base import composite_source_id, draft

PROVIDER = "google_analytics"

_COLUMNS = (
    ("sessions", MetricType.SESSIONS),
    ("users", MetricType.USERS),
    ("pageviews", MetricType.PAGEVIEWS),
)


def map_daily_traffic(event: AnalyticsReportEvent) -> list[MetricDraft]:
    row = event.payload
    recorded_at = datetime.combine(row.report_date, time.min, tzinfo=timezone.utc)
    source_id = composite_source_id(PROVIDER, "traffic", row.report_date.isoformat())
    return [
        draft(PROVIDER, metric_type, getattr(row, column), recorded_at, source_id,
              date=row.report_date.isoformat())
        for column, metric_type in _COLUMNS
    ]


HANDLERS = {"google_analytics:daily": map_daily_traffic}
