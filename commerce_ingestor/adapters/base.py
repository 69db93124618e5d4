"""Base class for provider connection adapters.

An adapter knows one provider's wire formats: how to verify and parse its
webhooks, how to request and parse one page of a list endpoint, and how to
map payloads into metric drafts. It never talks to the network directly; all
calls go through the connection's :class:`RequestQueue`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from json import JSONDecodeError
from typing import Any, ClassVar

import httpx

from ..exceptions import AuthenticationError, ValidationFailedError
from ..models.connection import ConnectionSnapshot
from ..normalization import normalize
from ..schemas.payload import FetchedPage, MetricDraft, VerificationResult
from ..sync.request_queue import ProviderRequest, RequestQueue
from ..utils.config import ProviderSettings, tracked_entities_for
from ..utils.logging import setup_logger

logger = setup_logger(__name__)


@dataclass(frozen=True, slots=True)
class WebhookEvent:
    """A verified webhook reduced to what the processor needs."""

    kind: str
    external_id: str | None
    payload: dict[str, Any]
    occurred_at: datetime | None = None
    account_id: str | None = None


@dataclass(frozen=True, slots=True)
class RefreshedCredential:
    """A new access token and when it stops being valid."""

    access_token: str
    expires_at: datetime | None = None


class ProviderAdapter(ABC):
    """Abstract base class for all provider adapters."""

    provider: ClassVar[str]
    entity_types: ClassVar[tuple[str, ...]]
    supports_webhooks: ClassVar[bool] = True

    def __init__(self, settings: ProviderSettings, *, replay_window_seconds: int = 300):
        self.settings = settings
        self.replay_window_seconds = replay_window_seconds

    # Webhooks -----------------------------------------------------------

    @abstractmethod
    def verify_signature(
        self, body: bytes, headers: Mapping[str, str], secret: str | None
    ) -> VerificationResult:
        """Check the webhook signature; never raises."""

    @abstractmethod
    def parse_webhook(self, payload: dict[str, Any], headers: Mapping[str, str]) -> WebhookEvent:
        """Extract kind, identifiers and the object payload from a webhook.

        Raises:
            PayloadMalformedError: Required envelope fields are missing.
        """

    def webhook_secret(self, connection: ConnectionSnapshot) -> str | None:
        """Per-connection secret override, falling back to the provider secret."""

        override = connection.settings.get("webhook_secret")
        if override:
            return str(override)
        return self.settings.secret_value()

    def account_matches(self, connection: ConnectionSnapshot, account_id: str | None) -> bool:
        return account_id is None or account_id == connection.provider_account_id

    # REST ---------------------------------------------------------------

    @abstractmethod
    def base_url(self, connection: ConnectionSnapshot) -> str:
        """Root URL for the connection's API calls."""

    @abstractmethod
    def auth_headers(self, connection: ConnectionSnapshot) -> dict[str, str]:
        """Headers carrying the connection credential."""

    @abstractmethod
    def build_test_request(self, connection: ConnectionSnapshot) -> ProviderRequest:
        """A lightweight authenticated call used by ``test_connection``."""

    @abstractmethod
    def build_page_request(
        self,
        connection: ConnectionSnapshot,
        entity_type: str,
        *,
        since: datetime,
        until: datetime,
        cursor: str | None,
    ) -> ProviderRequest | None:
        """Request for one page, or None when the window holds nothing to fetch."""

    @abstractmethod
    def parse_page(
        self, entity_type: str, body: Any, *, cursor: str | None
    ) -> FetchedPage:
        """Turn a list response into records and the next cursor."""

    def describe_account(self, body: Any) -> str | None:
        return None

    # Credential refresh -------------------------------------------------

    def can_refresh_credential(self, connection: ConnectionSnapshot) -> bool:
        return False

    def credential_expired(self, connection: ConnectionSnapshot, now: datetime) -> bool:
        return False

    async def refresh_credential(
        self, queue: RequestQueue, connection: ConnectionSnapshot
    ) -> RefreshedCredential:
        """Exchange the connection's refresh token for a new access token.

        Raises:
            AuthenticationError: The provider has no refresh flow or rejected it.
        """

        raise AuthenticationError(f"{self.provider} credentials cannot be refreshed")

    def throttle_hint(self, response: httpx.Response) -> float:
        """Seconds to pause after ``response`` based on provider rate headers."""

        return 0.0

    def tracked_entities(self) -> list[str]:
        return tracked_entities_for(self.provider, list(self.entity_types))

    @property
    def page_size(self) -> int:
        return self.settings.page_size

    def raise_for_status(self, response: httpx.Response) -> None:
        """Translate final non-2xx responses into typed errors."""

        status = response.status_code
        if status < 400:
            return
        if status in (401, 403):
            raise AuthenticationError(
                f"{self.provider} rejected the stored credential (HTTP {status})",
                status_code=status,
            )
        raise ValidationFailedError(
            f"{self.provider} returned HTTP {status} for {response.request.url.path}"
        )

    def decode(self, response: httpx.Response) -> Any:
        self.raise_for_status(response)
        try:
            return response.json()
        except (JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationFailedError(
                f"{self.provider} returned a non-JSON body for {response.request.url.path}"
            ) from exc

    async def fetch_page(
        self,
        queue: RequestQueue,
        connection: ConnectionSnapshot,
        entity_type: str,
        *,
        since: datetime,
        until: datetime,
        cursor: str | None = None,
    ) -> FetchedPage:
        """Fetch one page of ``entity_type`` through the connection queue."""

        if entity_type not in self.entity_types:
            raise ValidationFailedError(
                f"{self.provider} does not support entity type '{entity_type}'"
            )
        request = self.build_page_request(
            connection, entity_type, since=since, until=until, cursor=cursor
        )
        if request is None:
            return FetchedPage(entity_type=entity_type, records=[], next_cursor=None)
        response = await queue.enqueue(request)
        return self.parse_page(entity_type, self.decode(response), cursor=cursor)

    async def test_connection(self, queue: RequestQueue, connection: ConnectionSnapshot) -> str | None:
        """Issue one authenticated call; return the account display name."""

        response = await queue.enqueue(self.build_test_request(connection))
        return self.describe_account(self.decode(response))

    def normalize(
        self,
        kind: str,
        payload: Any,
        *,
        event_id: str | None = None,
        occurred_at: datetime | None = None,
    ) -> list[MetricDraft]:
        return normalize(self.provider, kind, payload, event_id=event_id, occurred_at=occurred_at)

    def _records(self, body: Any, key: str) -> list[dict[str, Any]]:
        records = body.get(key) if isinstance(body, dict) else None
        if not isinstance(records, list):
            raise ValidationFailedError(f"{self.provider} response is missing a '{key}' list")
        return [record for record in records if isinstance(record, dict)]
