"""Stripe adapter (``starting_after`` cursor pagination)."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

from ..models.connection import ConnectionSnapshot
from ..schemas.events import parse_stripe_envelope
from ..schemas.payload import FetchedPage, VerificationResult
from ..sync.request_queue import ProviderRequest
from ..webhooks.verification import STRIPE_SIGNATURE_HEADER, header_value, verify_stripe
from .base import ProviderAdapter, WebhookEvent


class StripeAdapter(ProviderAdapter):
    """Charges and customers listed newest first within a ``created`` window."""

    provider = "stripe"
    entity_types = ("charges", "customers")

    def verify_signature(
        self, body: bytes, headers: Mapping[str, str], secret: str | None
    ) -> VerificationResult:
        return verify_stripe(
            body,
            header_value(headers, STRIPE_SIGNATURE_HEADER),
            secret,
            replay_window_seconds=self.replay_window_seconds,
        )

    def parse_webhook(self, payload: dict[str, Any], headers: Mapping[str, str]) -> WebhookEvent:
        envelope = parse_stripe_envelope(payload)
        account = payload.get("account")
        return WebhookEvent(
            kind=envelope.type,
            external_id=envelope.id,
            payload=envelope.data.object,
            occurred_at=envelope.created,
            account_id=account if isinstance(account, str) else None,
        )

    def account_matches(self, connection: ConnectionSnapshot, account_id: str | None) -> bool:
        # Platform events carry no ``account``; Connect events must match.
        return account_id is None or account_id == connection.provider_account_id

    def base_url(self, connection: ConnectionSnapshot) -> str:
        return self.settings.api_base_url or "https://api.stripe.com/v1"

    def auth_headers(self, connection: ConnectionSnapshot) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {connection.credential or ''}"}
        stripe_account = connection.settings.get("stripe_account")
        if stripe_account:
            headers["Stripe-Account"] = str(stripe_account)
        return headers

    def build_test_request(self, connection: ConnectionSnapshot) -> ProviderRequest:
        return ProviderRequest("GET", "/account")

    def describe_account(self, body: Any) -> str | None:
        if not isinstance(body, dict):
            return None
        profile = body.get("business_profile") or {}
        return profile.get("name") or body.get("email") or body.get("id")

    def build_page_request(
        self,
        connection: ConnectionSnapshot,
        entity_type: str,
        *,
        since: datetime,
        until: datetime,
        cursor: str | None,
    ) -> ProviderRequest:
        params: dict[str, Any] = {
            "limit": self.page_size,
            "created[gte]": int(since.timestamp()),
            "created[lte]": int(until.timestamp()),
        }
        if cursor:
            params["starting_after"] = cursor
        return ProviderRequest("GET", f"/{entity_type}", params=params)

    def parse_page(self, entity_type: str, body: Any, *, cursor: str | None) -> FetchedPage:
        records = self._records(body, "data")
        next_cursor = None
        if body.get("has_more") and records and records[-1].get("id"):
            next_cursor = str(records[-1]["id"])
        return FetchedPage(
            entity_type=entity_type,
            records=records,
            next_cursor=next_cursor,
            requested_size=self.page_size,
        )
