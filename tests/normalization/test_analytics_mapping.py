"""Tests for Google Analytics daily traffic normalization."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from commerce_ingestor.exceptions import PayloadMalformedError
from commerce_ingestor.normalization import normalize
from commerce_ingestor.schemas.payload import MetricType
from tests.fixtures.provider_payloads import ga_rows


def test_daily_row_yields_three_metrics_at_midnight_utc():
    [row] = ga_rows(1)

    drafts = normalize("google_analytics", "daily_traffic", row)

    assert [(d.metric_type, d.value) for d in drafts] == [
        (MetricType.SESSIONS, Decimal(100)),
        (MetricType.USERS, Decimal(80)),
        (MetricType.PAGEVIEWS, Decimal(300)),
    ]
    assert {d.recorded_at for d in drafts} == {datetime(2026, 10, 1, tzinfo=timezone.utc)}
    assert {d.source_event_id for d in drafts} == {"google_analytics:traffic:2026-10-01"}
    assert drafts[0].metadata["date"] == "2026-10-01"


def test_same_day_reports_share_idempotency_keys():
    first = normalize("google_analytics", "daily_traffic", ga_rows(1)[0])
    again = normalize("google_analytics", "daily_traffic", {**ga_rows(1)[0], "sessions": 999})

    assert [d.idempotency_key for d in first] == [d.idempotency_key for d in again]


def test_row_without_date_is_malformed():
    with pytest.raises(PayloadMalformedError):
        normalize("google_analytics", "daily_traffic", {"sessions": 3})


def test_unmapped_kind_is_ignored():
    assert normalize("google_analytics", "realtime", {"date": "20261001"}) == []
