"""Pytest configuration - isolated SQLite database and provider settings per test."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from commerce_ingestor.models.base import reset_engine, session_scope
from commerce_ingestor.models.connection import ConnectionSnapshot
from commerce_ingestor.models.repository import ConnectionCreate, ConnectionRepository
from commerce_ingestor.monitoring.tracing import clear_correlation_id
from commerce_ingestor.testing.mock_provider import MockProviderAPI
from commerce_ingestor.utils.config import get_service_configuration, get_settings

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"

API_KEY = "test-key"
SHOPIFY_SECRET = "shpss_test_secret"
STRIPE_SECRET = "whsec_test_secret"


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Point every test at its own database and fast provider limits."""

    monkeypatch.setenv("COMMERCE_DATABASE_URL", f"sqlite:///{tmp_path / 'commerce.sqlite'}")
    monkeypatch.setenv("COMMERCE_API_KEYS", f'["{API_KEY}"]')
    monkeypatch.setenv("COMMERCE_CONFIG_DIR", str(CONFIG_DIR))
    monkeypatch.setenv("COMMERCE_ENVIRONMENT", "development")
    monkeypatch.setenv("COMMERCE_SHOPIFY__WEBHOOK_SECRET", SHOPIFY_SECRET)
    monkeypatch.setenv("COMMERCE_STRIPE__WEBHOOK_SECRET", STRIPE_SECRET)
    monkeypatch.setenv("COMMERCE_SHOPIFY__PAGE_SIZE", "50")
    monkeypatch.setenv("COMMERCE_SHOPIFY__REQUESTS_PER_SECOND", "100")
    monkeypatch.setenv("COMMERCE_STRIPE__PAGE_SIZE", "50")
    monkeypatch.setenv("COMMERCE_STRIPE__REQUESTS_PER_SECOND", "100")
    monkeypatch.setenv("COMMERCE_RETRY__BASE_DELAY", "0")
    for name in ("COMMERCE_KAFKA_BOOTSTRAP_SERVERS", "COMMERCE_REDIS_URL", "COMMERCE_CONFIG_PROFILE"):
        monkeypatch.delenv(name, raising=False)

    reset_engine()
    clear_correlation_id()
    get_settings(reload=True)
    get_service_configuration(reload=True)
    yield
    reset_engine()
    get_settings(reload=True)


@pytest.fixture
def make_connection() -> Callable[..., ConnectionSnapshot]:
    """Factory persisting an active connection and returning its snapshot."""

    def _make(
        provider: str = "shopify",
        *,
        organization_id: str = "org-1",
        account_id: str | None = None,
        credential: str = "token-123",
        settings: dict | None = None,
    ) -> ConnectionSnapshot:
        default_accounts = {
            "shopify": "demo-store",
            "stripe": "acct_demo",
            "google_analytics": "123456",
        }
        with session_scope() as session:
            connection = ConnectionRepository(session).upsert_active(
                ConnectionCreate(
                    organization_id=organization_id,
                    provider=provider,
                    provider_account_id=account_id or default_accounts[provider],
                    credential=credential,
                    settings=settings or {},
                )
            )
            return ConnectionSnapshot.from_model(connection)

    return _make


@pytest.fixture
def provider_api() -> MockProviderAPI:
    return MockProviderAPI()
