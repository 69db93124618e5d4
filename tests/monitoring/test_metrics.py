"""Tests for Prometheus metrics helpers."""

from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from commerce_ingestor.monitoring.metrics import (
    adjust_queue_depth,
    decrement_active_syncs,
    increment_active_syncs,
    observe_rate_limit_wait,
    record_provider_request,
    record_provider_retry,
    record_signature_failure,
    record_sync_run,
    record_webhook,
    record_write_summary,
)


def _get_metric_value(metric_name: str, labels: dict[str, str] | None = None) -> float:
    """Helper to retrieve current metric value from registry."""
    labels = labels or {}
    value = REGISTRY.get_sample_value(metric_name, labels)
    return float(value) if value is not None else 0.0


class TestWebhookMetrics:
    """Tests for inbound webhook counters."""

    def test_record_webhook_increments_counter(self) -> None:
        labels = {"provider": "metrics-test", "outcome": "processed"}
        before = _get_metric_value("webhooks_received_total", labels)
        record_webhook("metrics-test", "processed")
        assert _get_metric_value("webhooks_received_total", labels) == pytest.approx(before + 1)

    def test_signature_failure_is_labelled_by_reason(self) -> None:
        labels = {"provider": "metrics-test", "reason": "timestamp_out_of_tolerance"}
        before = _get_metric_value("webhook_signature_failures_total", labels)
        record_signature_failure("metrics-test", "timestamp_out_of_tolerance")
        after = _get_metric_value("webhook_signature_failures_total", labels)
        assert after == pytest.approx(before + 1)


class TestWriteMetrics:
    """Tests for idempotent write counters."""

    def test_write_summary_counts_per_metric_type(self) -> None:
        revenue = {"provider": "metrics-test", "metric_type": "revenue"}
        orders = {"provider": "metrics-test", "metric_type": "orders"}
        duplicates = {"provider": "metrics-test"}
        before = (
            _get_metric_value("metric_records_written_total", revenue),
            _get_metric_value("metric_records_written_total", orders),
            _get_metric_value("metric_records_duplicate_total", duplicates),
            _get_metric_value("metric_records_failed_total", duplicates),
        )

        record_write_summary(
            "metrics-test", written_by_type={"revenue": 3, "orders": 0}, duplicates=2, failed=1
        )

        assert _get_metric_value("metric_records_written_total", revenue) == pytest.approx(before[0] + 3)
        assert _get_metric_value("metric_records_written_total", orders) == pytest.approx(before[1])
        assert _get_metric_value("metric_records_duplicate_total", duplicates) == pytest.approx(before[2] + 2)
        assert _get_metric_value("metric_records_failed_total", duplicates) == pytest.approx(before[3] + 1)


class TestProviderMetrics:
    """Tests for outbound request instrumentation."""

    def test_provider_request_status_is_stringified(self) -> None:
        labels = {"provider": "metrics-test", "status": "429"}
        before = _get_metric_value("provider_requests_total", labels)
        record_provider_request("metrics-test", 429)
        assert _get_metric_value("provider_requests_total", labels) == pytest.approx(before + 1)

    def test_retry_counter(self) -> None:
        labels = {"provider": "metrics-test"}
        before = _get_metric_value("provider_request_retries_total", labels)
        record_provider_retry("metrics-test")
        assert _get_metric_value("provider_request_retries_total", labels) == pytest.approx(before + 1)

    def test_rate_limit_wait_clamps_negative(self) -> None:
        labels = {"provider": "metrics-test"}
        before_count = _get_metric_value("provider_rate_limit_wait_seconds_count", labels)
        before_sum = _get_metric_value("provider_rate_limit_wait_seconds_sum", labels)
        observe_rate_limit_wait("metrics-test", -1.0)
        assert _get_metric_value("provider_rate_limit_wait_seconds_count", labels) == pytest.approx(before_count + 1)
        assert _get_metric_value("provider_rate_limit_wait_seconds_sum", labels) == pytest.approx(before_sum)

    def test_queue_depth_gauge_moves_both_ways(self) -> None:
        labels = {"provider": "metrics-test"}
        before = _get_metric_value("provider_queue_depth", labels)
        adjust_queue_depth("metrics-test", 3)
        assert _get_metric_value("provider_queue_depth", labels) == pytest.approx(before + 3)
        adjust_queue_depth("metrics-test", -3)
        assert _get_metric_value("provider_queue_depth", labels) == pytest.approx(before)


class TestSyncMetrics:
    """Tests for backfill run metrics."""

    def test_record_sync_run_updates_counter_and_histogram(self) -> None:
        counter_labels = {"provider": "metrics-test", "status": "partial"}
        before = _get_metric_value("sync_runs_total", counter_labels)
        before_count = _get_metric_value("sync_duration_seconds_count", {"provider": "metrics-test"})

        record_sync_run("metrics-test", "partial", 12.5)

        assert _get_metric_value("sync_runs_total", counter_labels) == pytest.approx(before + 1)
        assert _get_metric_value(
            "sync_duration_seconds_count", {"provider": "metrics-test"}
        ) == pytest.approx(before_count + 1)

    def test_active_sync_gauge(self) -> None:
        labels = {"provider": "metrics-test"}
        before = _get_metric_value("sync_active", labels)
        increment_active_syncs("metrics-test")
        assert _get_metric_value("sync_active", labels) == pytest.approx(before + 1)
        decrement_active_syncs("metrics-test")
        assert _get_metric_value("sync_active", labels) == pytest.approx(before)
