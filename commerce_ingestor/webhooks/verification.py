"""Webhook signature verification with constant-time HMAC comparison.

Verifiers never raise: every failure is returned as a ``VerificationResult``
with a machine readable reason. Missing secrets fail closed. Log lines carry
the provider and reason only, never the secret, signature or body.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from collections.abc import Callable, Mapping
from typing import Any

from ..monitoring.metrics import record_signature_failure
from ..schemas.payload import VerificationResult
from ..utils.logging import setup_logger

logger = setup_logger(__name__)

DEFAULT_REPLAY_WINDOW_SECONDS = 300

SHOPIFY_SIGNATURE_HEADER = "x-shopify-hmac-sha256"
STRIPE_SIGNATURE_HEADER = "stripe-signature"


def _reject(provider: str, reason: str) -> VerificationResult:
    logger.warning(
        "Webhook signature rejected: %s", reason, extra={"provider": provider, "status": "rejected"}
    )
    record_signature_failure(provider, reason)
    return VerificationResult(valid=False, reason=reason)


def _accept(body: bytes) -> VerificationResult:
    try:
        parsed = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError):
        parsed = None
    event = parsed if isinstance(parsed, dict) else None
    return VerificationResult(valid=True, event=event)


def verify_shopify(body: bytes, signature_header: str | None, secret: str | None) -> VerificationResult:
    """Verify Shopify's base64 HMAC-SHA256 of the raw body."""

    provider = "shopify"
    if not secret:
        return _reject(provider, "secret_not_configured")
    if not signature_header:
        return _reject(provider, "missing_signature")

    try:
        provided = base64.b64decode(signature_header.strip(), validate=True)
    except (binascii.Error, ValueError):
        return _reject(provider, "malformed_signature")

    computed = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    if not hmac.compare_digest(computed, provided):
        return _reject(provider, "signature_mismatch")
    return _accept(body)


def _parse_stripe_header(header: str) -> tuple[str | None, list[str]]:
    timestamp: str | None = None
    signatures: list[str] = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def verify_stripe(
    body: bytes,
    signature_header: str | None,
    secret: str | None,
    *,
    replay_window_seconds: int = DEFAULT_REPLAY_WINDOW_SECONDS,
    now: Callable[[], float] = time.time,
) -> VerificationResult:
    """Verify a ``t=<unix>,v1=<hex>`` signature over ``"{t}.{body}"``.

    A valid HMAC is still rejected when the timestamp falls outside the
    replay window.
    """

    provider = "stripe"
    if not secret:
        return _reject(provider, "secret_not_configured")
    if not signature_header:
        return _reject(provider, "missing_signature")

    timestamp_raw, signatures = _parse_stripe_header(signature_header)
    if timestamp_raw is None or not signatures:
        return _reject(provider, "malformed_signature")
    try:
        timestamp = int(timestamp_raw)
    except ValueError:
        return _reject(provider, "malformed_timestamp")

    signed_payload = timestamp_raw.encode("utf-8") + b"." + body
    expected = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        return _reject(provider, "signature_mismatch")

    if abs(now() - timestamp) > replay_window_seconds:
        return _reject(provider, "timestamp_outside_tolerance")
    return _accept(body)


def sign_shopify(body: bytes, secret: str) -> str:
    """Return the header value Shopify would send for ``body``."""

    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def sign_stripe(body: bytes, secret: str, *, timestamp: int | None = None) -> str:
    """Return a ``Stripe-Signature`` header value for ``body``."""

    ts = str(int(time.time()) if timestamp is None else timestamp)
    digest = hmac.new(secret.encode("utf-8"), ts.encode("utf-8") + b"." + body, hashlib.sha256)
    return f"t={ts},v1={digest.hexdigest()}"


def header_value(headers: Mapping[str, str], name: str) -> str | None:
    """Case-insensitive header lookup that works for plain dicts."""

    getter: Any = getattr(headers, "get", None)
    if getter is not None:
        value = getter(name)
        if value is not None:
            return value
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None
