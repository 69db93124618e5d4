"""Tests for structured Celery task error reports."""

from __future__ import annotations

import pytest

from commerce_ingestor.exceptions import (
    AuthenticationError,
    ConfigurationError,
    ConnectionInactiveError,
    PayloadMalformedError,
    PersistenceConflictError,
    RateLimitExceededError,
    SyncAlreadyRunningError,
    TaskExecutionError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)
from commerce_ingestor.tasks.error_handling import build_error_report


@pytest.mark.parametrize(
    ("exc", "classification", "retryable", "action"),
    [
        (AuthenticationError("revoked", status_code=401), "authentication", False, "reauthorize"),
        (RateLimitExceededError("slow down", retry_after=2.0), "rate_limited", True, "wait"),
        (UpstreamUnavailableError("down", status_code=503), "upstream", True, "wait"),
        (UpstreamTimeoutError("slow"), "upstream", True, "wait"),
        (PayloadMalformedError("bad"), "validation", False, "investigate"),
        (ConnectionInactiveError("gone"), "connection", False, ConnectionInactiveError.action_required),
        (SyncAlreadyRunningError("conn-1"), "concurrency", False, "none"),
        (ConfigurationError("missing"), "configuration", False, "investigate"),
        (PersistenceConflictError("conflict"), "application", False, "none"),
        (RuntimeError("boom"), "unexpected", False, "investigate"),
    ],
)
def test_classification(exc, classification, retryable, action):
    report = build_error_report(exc, connection_id="conn-1", provider="shopify")

    assert report.classification == classification
    assert report.retryable is retryable
    assert report.action_required == action
    assert report.error_type == type(exc).__name__


def test_rate_limit_report_carries_retry_after():
    report = build_error_report(
        RateLimitExceededError("slow down", retry_after=2.5), connection_id="conn-1"
    )

    assert report.details["retry_after"] == 2.5
    assert report.to_dict()["details"]["retry_after"] == 2.5


def test_retryable_override_and_extra_details():
    report = build_error_report(
        UpstreamUnavailableError("down"),
        connection_id="conn-1",
        correlation_id="corr-9",
        retryable_override=False,
        extra_details={"attempt": 3},
    )

    payload = report.to_dict()
    assert payload["retryable"] is False
    assert payload["correlation_id"] == "corr-9"
    assert payload["details"]["attempt"] == 3
    assert payload["details"]["exception_module"] == "commerce_ingestor.exceptions"


def test_empty_message_falls_back_to_type_name():
    report = build_error_report(RuntimeError(), connection_id="conn-1")
    assert report.message == "RuntimeError"


def test_task_execution_error_exposes_report():
    report = build_error_report(AuthenticationError("revoked"), connection_id="conn-1")
    error = TaskExecutionError(report, original_error=None)

    assert error.retryable is False
    assert error.as_dict() == {
        "message": "revoked",
        "error_type": "AuthenticationError",
        "classification": "authentication",
        "retryable": False,
        "action_required": "reauthorize",
    }
