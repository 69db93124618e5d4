"""Shopify Admin REST adapter (since-id pagination)."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Any

import httpx

from ..exceptions import PayloadMalformedError
from ..models.connection import ConnectionSnapshot
from ..schemas.payload import FetchedPage, VerificationResult
from ..sync.request_queue import ProviderRequest
from ..webhooks.verification import SHOPIFY_SIGNATURE_HEADER, header_value, verify_shopify
from .base import ProviderAdapter, WebhookEvent

CALL_LIMIT_HEADER = "x-shopify-shop-api-call-limit"


def shop_host(account_id: str) -> str:
    """Return ``example.myshopify.com`` for ``example`` or a full domain."""

    account = account_id.strip().lower()
    if account.startswith("https://"):
        account = account[len("https://"):]
    account = account.rstrip("/")
    return account if "." in account else f"{account}.myshopify.com"


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class ShopifyAdapter(ProviderAdapter):
    """Orders and customers walked with ``since_id`` in ascending id order."""

    provider = "shopify"
    entity_types = ("orders", "customers")

    def verify_signature(
        self, body: bytes, headers: Mapping[str, str], secret: str | None
    ) -> VerificationResult:
        return verify_shopify(body, header_value(headers, SHOPIFY_SIGNATURE_HEADER), secret)

    def parse_webhook(self, payload: dict[str, Any], headers: Mapping[str, str]) -> WebhookEvent:
        topic = header_value(headers, "x-shopify-topic")
        if not topic:
            raise PayloadMalformedError("Missing X-Shopify-Topic header")
        external_id = header_value(headers, "x-shopify-webhook-id")
        if not external_id:
            object_id = payload.get("id")
            stamp = payload.get("updated_at") or payload.get("created_at")
            external_id = f"{topic}:{object_id}:{stamp}" if object_id is not None else None
        shop_domain = header_value(headers, "x-shopify-shop-domain")
        return WebhookEvent(
            kind=topic,
            external_id=external_id,
            payload=payload,
            occurred_at=_parse_timestamp(header_value(headers, "x-shopify-triggered-at")),
            account_id=shop_host(shop_domain) if shop_domain else None,
        )

    def account_matches(self, connection: ConnectionSnapshot, account_id: str | None) -> bool:
        return account_id is None or account_id == shop_host(connection.provider_account_id)

    def base_url(self, connection: ConnectionSnapshot) -> str:
        if self.settings.api_base_url:
            return self.settings.api_base_url.format(shop=shop_host(connection.provider_account_id))
        version = self.settings.api_version or "2024-01"
        return f"https://{shop_host(connection.provider_account_id)}/admin/api/{version}"

    def auth_headers(self, connection: ConnectionSnapshot) -> dict[str, str]:
        return {"X-Shopify-Access-Token": connection.credential or ""}

    def build_test_request(self, connection: ConnectionSnapshot) -> ProviderRequest:
        return ProviderRequest("GET", "/shop.json")

    def describe_account(self, body: Any) -> str | None:
        shop = body.get("shop") if isinstance(body, dict) else None
        return shop.get("name") if isinstance(shop, dict) else None

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
            "created_at_min": since.isoformat(),
            "created_at_max": until.isoformat(),
        }
        if entity_type == "orders":
            params["status"] = "any"
        if cursor:
            params["since_id"] = cursor
        return ProviderRequest("GET", f"/{entity_type}.json", params=params)

    def parse_page(self, entity_type: str, body: Any, *, cursor: str | None) -> FetchedPage:
        records = self._records(body, entity_type)
        next_cursor = None
        if len(records) >= self.page_size and records[-1].get("id") is not None:
            next_cursor = str(records[-1]["id"])
        return FetchedPage(
            entity_type=entity_type,
            records=records,
            next_cursor=next_cursor,
            requested_size=self.page_size,
        )

    def throttle_hint(self, response: httpx.Response) -> float:
        """Back off briefly when the leaky bucket is nearly full (``39/40``)."""

        used, _, limit = (response.headers.get(CALL_LIMIT_HEADER) or "").partition("/")
        try:
            if int(used) >= int(limit) - 1:
                return 1.0 / self.settings.requests_per_second
        except ValueError:
            return 0.0
        return 0.0
