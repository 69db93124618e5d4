"""Tests for Shopify and Stripe webhook signature verification."""

from __future__ import annotations

import logging
import time

import pytest

from commerce_ingestor.webhooks.verification import (
    header_value,
    sign_shopify,
    sign_stripe,
    verify_shopify,
    verify_stripe,
)

SECRET = "shpss_unit_secret"
BODY = b'{"id":1001,"total_price":"25.00"}'


class TestShopifyVerification:
    """Base64 HMAC-SHA256 over the raw body."""

    def test_valid_signature_returns_parsed_event(self):
        result = verify_shopify(BODY, sign_shopify(BODY, SECRET), SECRET)

        assert result.valid is True
        assert result.reason is None
        assert result.event == {"id": 1001, "total_price": "25.00"}

    def test_single_byte_change_is_rejected(self):
        signature = sign_shopify(BODY, SECRET)
        tampered = BODY.replace(b"25.00", b"26.00")

        result = verify_shopify(tampered, signature, SECRET)

        assert result.valid is False
        assert result.reason == "signature_mismatch"

    def test_wrong_secret_is_rejected(self):
        result = verify_shopify(BODY, sign_shopify(BODY, "other"), SECRET)
        assert result.reason == "signature_mismatch"

    @pytest.mark.parametrize(
        ("header", "reason"),
        [(None, "missing_signature"), ("", "missing_signature"), ("%%%not-b64", "malformed_signature")],
    )
    def test_missing_or_garbled_header(self, header, reason):
        result = verify_shopify(BODY, header, SECRET)
        assert not result
        assert result.reason == reason

    def test_missing_secret_fails_closed(self):
        result = verify_shopify(BODY, sign_shopify(BODY, SECRET), None)
        assert result.reason == "secret_not_configured"

    def test_valid_signature_with_non_json_body_has_no_event(self):
        body = b"not json"
        result = verify_shopify(body, sign_shopify(body, SECRET), SECRET)
        assert result.valid is True
        assert result.event is None


class TestStripeVerification:
    """``t=<unix>,v1=<hex>`` over ``"{t}.{body}"`` with a replay window."""

    def test_valid_signature_within_window(self):
        now = time.time()
        header = sign_stripe(BODY, SECRET, timestamp=int(now))

        result = verify_stripe(BODY, header, SECRET, now=lambda: now)

        assert result.valid is True
        assert result.event["id"] == 1001

    def test_valid_hmac_outside_replay_window_is_rejected(self):
        stamp = 1_700_000_000
        header = sign_stripe(BODY, SECRET, timestamp=stamp)

        result = verify_stripe(BODY, header, SECRET, now=lambda: stamp + 301)

        assert result.valid is False
        assert result.reason == "timestamp_outside_tolerance"

    def test_timestamp_at_window_edge_is_accepted(self):
        stamp = 1_700_000_000
        header = sign_stripe(BODY, SECRET, timestamp=stamp)
        assert verify_stripe(BODY, header, SECRET, now=lambda: stamp + 300).valid

    def test_future_timestamp_beyond_window_is_rejected(self):
        stamp = 1_700_000_000
        header = sign_stripe(BODY, SECRET, timestamp=stamp)
        result = verify_stripe(BODY, header, SECRET, now=lambda: stamp - 301)
        assert result.reason == "timestamp_outside_tolerance"

    def test_any_matching_v1_signature_is_accepted(self):
        stamp = int(time.time())
        valid = sign_stripe(BODY, SECRET, timestamp=stamp).split("v1=")[1]
        header = f"t={stamp},v1={'0' * 64},v1={valid}"

        assert verify_stripe(BODY, header, SECRET).valid

    def test_tampered_body_is_rejected(self):
        header = sign_stripe(BODY, SECRET)
        result = verify_stripe(BODY + b" ", header, SECRET)
        assert result.reason == "signature_mismatch"

    @pytest.mark.parametrize(
        ("header", "reason"),
        [
            (None, "missing_signature"),
            ("v1=abc", "malformed_signature"),
            ("t=123", "malformed_signature"),
            ("t=soon,v1=abc", "malformed_timestamp"),
        ],
    )
    def test_malformed_headers(self, header, reason):
        assert verify_stripe(BODY, header, SECRET).reason == reason

    def test_missing_secret_fails_closed(self):
        assert verify_stripe(BODY, sign_stripe(BODY, SECRET), "").reason == "secret_not_configured"

    def test_custom_replay_window(self):
        stamp = 1_700_000_000
        header = sign_stripe(BODY, SECRET, timestamp=stamp)
        result = verify_stripe(
            BODY, header, SECRET, replay_window_seconds=60, now=lambda: stamp + 61
        )
        assert result.reason == "timestamp_outside_tolerance"


def test_rejections_never_log_secret_or_body(caplog: pytest.LogCaptureFixture):
    """Failure logs carry provider and reason only."""

    caplog.set_level(logging.WARNING)
    secret_body = b'{"customer_email":"private@example.com"}'

    verify_shopify(secret_body, sign_shopify(secret_body, "wrong-secret"), SECRET)
    verify_stripe(secret_body, "t=1,v1=deadbeef", SECRET)

    rejected = [record for record in caplog.records if "rejected" in record.getMessage()]
    assert len(rejected) == 2
    for record in caplog.records:
        text = record.getMessage() + str(record.__dict__)
        assert SECRET not in text
        assert "private@example.com" not in text
    assert {record.provider for record in rejected} == {"shopify", "stripe"}


def test_header_lookup_is_case_insensitive():
    headers = {"X-Shopify-Hmac-Sha256": "abc"}
    assert header_value(headers, "x-shopify-hmac-sha256") == "abc"
    assert header_value(headers, "stripe-signature") is None
