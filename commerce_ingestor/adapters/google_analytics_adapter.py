"""Google Analytics 4 Data API adapter (offset pagination, backfill only)."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, time, timedelta, timezone
from typing import Any

from ..exceptions import AuthenticationError, PayloadMalformedError
from ..models.connection import ConnectionSnapshot
from ..schemas.payload import FetchedPage, VerificationResult
from ..sync.request_queue import ProviderRequest, RequestQueue
from .base import ProviderAdapter, RefreshedCredential, WebhookEvent

_METRICS = (("sessions", "sessions"), ("totalUsers", "users"), ("screenPageViews", "pageviews"))


class GoogleAnalyticsAdapter(ProviderAdapter):
    """Daily sessions, users and pageviews for one GA4 property.

    Only complete UTC days are requested so a day's totals never change after
    they have been written.
    """

    provider = "google_analytics"
    entity_types = ("daily_traffic",)
    supports_webhooks = False

    def verify_signature(
        self, body: bytes, headers: Mapping[str, str], secret: str | None
    ) -> VerificationResult:
        return VerificationResult(valid=False, reason="webhooks_not_supported")

    def parse_webhook(self, payload: dict[str, Any], headers: Mapping[str, str]) -> WebhookEvent:
        raise PayloadMalformedError("Google Analytics does not deliver webhooks")

    def base_url(self, connection: ConnectionSnapshot) -> str:
        return self.settings.api_base_url or "https://analyticsdata.googleapis.com/v1beta"

    def auth_headers(self, connection: ConnectionSnapshot) -> dict[str, str]:
        return {"Authorization": f"Bearer {connection.credential or ''}"}

    # OAuth refresh ------------------------------------------------------

    def can_refresh_credential(self, connection: ConnectionSnapshot) -> bool:
        return bool(connection.settings.get("refresh_token") and self.settings.client_id)

    def credential_expired(self, connection: ConnectionSnapshot, now: datetime) -> bool:
        raw = connection.settings.get("token_expires_at")
        if not raw:
            return False
        try:
            expires_at = datetime.fromisoformat(str(raw))
        except ValueError:
            return True
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now + timedelta(seconds=self.settings.refresh_margin_seconds)

    async def refresh_credential(
        self, queue: RequestQueue, connection: ConnectionSnapshot
    ) -> RefreshedCredential:
        """Trade the stored refresh token for a new access token.

        Raises:
            AuthenticationError: No refresh token is stored or Google rejected it.
        """

        if not self.can_refresh_credential(connection):
            raise AuthenticationError("google_analytics connection has no refresh token")
        secret = self.settings.client_secret
        response = await queue.enqueue(
            ProviderRequest(
                "POST",
                self.settings.token_url,
                data={
                    "client_id": self.settings.client_id,
                    "client_secret": secret.get_secret_value() if secret else "",
                    "refresh_token": connection.settings["refresh_token"],
                    "grant_type": "refresh_token",
                },
            )
        )
        if response.status_code in (400, 401, 403):
            raise AuthenticationError(
                f"google_analytics refused the refresh token (HTTP {response.status_code})",
                status_code=response.status_code,
            )
        body = self.decode(response)
        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            raise AuthenticationError("google_analytics token response has no access_token")
        expires_in = int(body.get("expires_in") or 3600)
        return RefreshedCredential(
            access_token=token,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        )

    def build_test_request(self, connection: ConnectionSnapshot) -> ProviderRequest:
        return ProviderRequest("GET", f"/properties/{connection.provider_account_id}/metadata")

    def describe_account(self, body: Any) -> str | None:
        return body.get("name") if isinstance(body, dict) else None

    def build_page_request(
        self,
        connection: ConnectionSnapshot,
        entity_type: str,
        *,
        since: datetime,
        until: datetime,
        cursor: str | None,
    ) -> ProviderRequest | None:
        today = datetime.combine(datetime.now(timezone.utc).date(), time.min, tzinfo=timezone.utc)
        last_day = (min(until, today) - timedelta(microseconds=1)).date()
        first_day = since.date()
        if first_day > last_day:
            return None
        body = {
            "dateRanges": [{"startDate": first_day.isoformat(), "endDate": last_day.isoformat()}],
            "dimensions": [{"name": "date"}],
            "metrics": [{"name": name} for name, _ in _METRICS],
            "orderBys": [{"dimension": {"dimensionName": "date"}}],
            "limit": self.page_size,
            "offset": int(cursor or 0),
        }
        return ProviderRequest(
            "POST", f"/properties/{connection.provider_account_id}:runReport", json=body
        )

    def parse_page(self, entity_type: str, body: Any, *, cursor: str | None) -> FetchedPage:
        rows = self._records(body, "rows") if isinstance(body, dict) and "rows" in body else []
        records: list[dict[str, Any]] = []
        for row in rows:
            dimensions = row.get("dimensionValues") or []
            values = row.get("metricValues") or []
            if not dimensions:
                continue
            record: dict[str, Any] = {"date": dimensions[0].get("value")}
            for index, (_, field_name) in enumerate(_METRICS):
                raw = values[index].get("value") if index < len(values) else 0
                record[field_name] = int(float(raw or 0))
            records.append(record)

        offset = int(cursor or 0)
        row_count = int(body.get("rowCount", 0)) if isinstance(body, dict) else 0
        consumed = offset + len(rows)
        next_cursor = str(consumed) if rows and consumed < row_count else None
        return FetchedPage(
            entity_type=entity_type,
            records=records,
            next_cursor=next_cursor,
            requested_size=self.page_size,
        )
