"""Prometheus metrics definitions for commerce_ingestor."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

WEBHOOKS_RECEIVED = Counter(
    "webhooks_received_total",
    "Inbound webhooks by provider and outcome.",
    labelnames=("provider", "outcome"),
)

SIGNATURE_FAILURES = Counter(
    "webhook_signature_failures_total",
    "Webhook signature verification failures by provider and reason.",
    labelnames=("provider", "reason"),
)

RECORDS_WRITTEN = Counter(
    "metric_records_written_total",
    "Metric records inserted by provider and metric type.",
    labelnames=("provider", "metric_type"),
)

RECORDS_DUPLICATE = Counter(
    "metric_records_duplicate_total",
    "Metric record drafts absorbed as duplicates.",
    labelnames=("provider",),
)

RECORDS_FAILED = Counter(
    "metric_records_failed_total",
    "Metric record drafts that could not be persisted.",
    labelnames=("provider",),
)

PROVIDER_REQUESTS = Counter(
    "provider_requests_total",
    "Outbound provider API requests by final HTTP status.",
    labelnames=("provider", "status"),
)

PROVIDER_RETRIES = Counter(
    "provider_request_retries_total",
    "Outbound provider request retries.",
    labelnames=("provider",),
)

RATE_LIMIT_WAIT = Histogram(
    "provider_rate_limit_wait_seconds",
    "Time requests spent waiting for the per-connection rate window.",
    labelnames=("provider",),
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)

SYNC_RUNS = Counter(
    "sync_runs_total",
    "Backfill runs by provider and status.",
    labelnames=("provider", "status"),
)

SYNC_DURATION = Histogram(
    "sync_duration_seconds",
    "Distribution of backfill durations in seconds.",
    labelnames=("provider",),
    buckets=(0.5, 1, 5, 10, 30, 60, 120, 300, 600, 1800),
)

ACTIVE_SYNCS = Gauge(
    "sync_active",
    "Number of backfills currently running.",
    labelnames=("provider",),
)

QUEUE_DEPTH = Gauge(
    "provider_queue_depth",
    "Requests waiting in per-connection queues.",
    labelnames=("provider",),
)


def record_webhook(provider: str, outcome: str) -> None:
    """Increment the webhook counter with the supplied labels."""

    WEBHOOKS_RECEIVED.labels(provider=provider, outcome=outcome).inc()


def record_signature_failure(provider: str, reason: str) -> None:
    """Increment the signature failure counter."""

    SIGNATURE_FAILURES.labels(provider=provider, reason=reason).inc()


def record_write_summary(
    provider: str,
    *,
    written_by_type: dict[str, int],
    duplicates: int,
    failed: int,
) -> None:
    """Record the outcome of one idempotent write batch."""

    for metric_type, count in written_by_type.items():
        if count:
            RECORDS_WRITTEN.labels(provider=provider, metric_type=metric_type).inc(count)
    if duplicates:
        RECORDS_DUPLICATE.labels(provider=provider).inc(duplicates)
    if failed:
        RECORDS_FAILED.labels(provider=provider).inc(failed)


def record_provider_request(provider: str, status: int | str) -> None:
    """Increment the outbound request counter."""

    PROVIDER_REQUESTS.labels(provider=provider, status=str(status)).inc()


def record_provider_retry(provider: str) -> None:
    """Increment the outbound retry counter."""

    PROVIDER_RETRIES.labels(provider=provider).inc()


def observe_rate_limit_wait(provider: str, seconds: float) -> None:
    """Record time spent waiting for rate-limit admission."""

    RATE_LIMIT_WAIT.labels(provider=provider).observe(max(seconds, 0.0))


def record_sync_run(provider: str, status: str, duration_seconds: float) -> None:
    """Record a finished backfill run."""

    SYNC_RUNS.labels(provider=provider, status=status).inc()
    SYNC_DURATION.labels(provider=provider).observe(max(duration_seconds, 0.0))


def increment_active_syncs(provider: str) -> None:
    ACTIVE_SYNCS.labels(provider=provider).inc()


def decrement_active_syncs(provider: str) -> None:
    ACTIVE_SYNCS.labels(provider=provider).dec()


def adjust_queue_depth(provider: str, delta: int) -> None:
    """Adjust the queued-request gauge by ``delta``."""

    QUEUE_DEPTH.labels(provider=provider).inc(delta)
