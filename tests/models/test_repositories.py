"""Tests for connection, receipt, cursor and metric repositories."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from commerce_ingestor.exceptions import ConnectionNotFoundError, ValidationFailedError
from commerce_ingestor.models.base import session_scope
from commerce_ingestor.models.connection import Connection
from commerce_ingestor.models.repository import (
    ConnectionCreate,
    ConnectionRepository,
    MetricRecordRepository,
    SyncCursorRepository,
    WebhookReceiptRepository,
)
from commerce_ingestor.models.writer import IdempotentWriter
from commerce_ingestor.normalization import normalize
from tests.fixtures.provider_payloads import shopify_order


class TestConnectionRepository:
    def test_upsert_same_account_refreshes_credential(self, make_connection):
        first = make_connection(credential="old")
        second = make_connection(credential="new")

        assert first.id == second.id
        assert second.credential == "new"

    def test_second_active_account_for_org_is_rejected(self, make_connection):
        make_connection("stripe", account_id="acct_1")
        with pytest.raises(ValidationFailedError):
            make_connection("stripe", account_id="acct_2")

    def test_database_enforces_one_active_connection(self, make_connection):
        make_connection("shopify")
        with pytest.raises(IntegrityError):
            with session_scope() as session:
                session.add(
                    Connection(
                        organization_id="org-1",
                        provider="shopify",
                        provider_account_id="another-store",
                        credential="x",
                        status="active",
                        settings={},
                    )
                )

    def test_disconnect_allows_a_new_active_connection(self, make_connection):
        old = make_connection("shopify")
        with session_scope() as session:
            repo = ConnectionRepository(session)
            repo.disconnect(repo.require(old.id), "app_uninstalled")

        new = make_connection("shopify", account_id="other-store")

        assert new.id != old.id
        with session_scope() as session:
            stored = ConnectionRepository(session).require(old.id)
            assert stored.status == "disconnected"
            assert stored.credential is None
            assert stored.settings["disconnect_reason"] == "app_uninstalled"

    def test_require_unknown_raises(self):
        with session_scope() as session:
            with pytest.raises(ConnectionNotFoundError):
                ConnectionRepository(session).require("nope")

    def test_find_by_account(self, make_connection):
        connection = make_connection("stripe")
        with session_scope() as session:
            found = ConnectionRepository(session).find_by_account("stripe", "acct_demo")
            assert found is not None and found.id == connection.id
            assert ConnectionRepository(session).find_by_account("stripe", "acct_x") is None


class TestSyncCursorRepository:
    def test_progress_then_complete(self, make_connection):
        connection = make_connection()
        start = datetime(2026, 9, 1, tzinfo=timezone.utc)
        end = start + timedelta(days=30)

        with session_scope() as session:
            repo = SyncCursorRepository(session)
            repo.save_progress(
                connection.id, "orders", position="50", window_start=start, window_end=end,
                records_written=50,
            )
        with session_scope() as session:
            cursor = SyncCursorRepository(session).get(connection.id, "orders")
            assert cursor.in_progress
            assert cursor.position == "50"
            assert cursor.window_start == start

            SyncCursorRepository(session).complete(
                connection.id, "orders", high_water_mark=end, records_written=12
            )
        with session_scope() as session:
            cursor = SyncCursorRepository(session).get(connection.id, "orders")
            assert cursor.position is None
            assert cursor.high_water_mark == end
            assert cursor.records_written == 62


class TestWebhookReceiptRepository:
    def test_find_processed_matches_only_processed(self, make_connection):
        connection = make_connection()
        with session_scope() as session:
            repo = WebhookReceiptRepository(session)
            receipt = repo.create(
                provider="shopify", topic="orders/create", connection_id=connection.id,
                external_id="wh-1",
            )
            assert repo.find_processed(connection.id, "orders/create", "wh-1") is None
            repo.complete(receipt.id, status="processed", records_written=2)
            assert repo.find_processed(connection.id, "orders/create", "wh-1") is not None
            assert repo.find_processed(connection.id, "orders/create", None) is None


class TestMetricRecordRepository:
    def test_redact_customer_strips_pii(self, make_connection):
        connection = make_connection()
        IdempotentWriter().write(connection.id, normalize("shopify", "orders", shopify_order(1)))
        IdempotentWriter().write(
            connection.id, normalize("shopify", "orders", shopify_order(2, customer_id=999))
        )

        with session_scope() as session:
            redacted = MetricRecordRepository(session).redact_customer(connection.id, "501")
        assert redacted == 2

        with session_scope() as session:
            records = MetricRecordRepository(session).list_for_connection(connection.id)
        by_customer = [r.record_metadata for r in records]
        assert all("customerEmail" not in meta for meta in by_customer if meta["customerId"] == "redacted")
        assert sum(1 for meta in by_customer if meta["customerId"] == "999") == 2

    def test_delete_for_connection(self, make_connection):
        connection = make_connection()
        IdempotentWriter().write(connection.id, normalize("shopify", "orders", shopify_order(1)))
        with session_scope() as session:
            assert MetricRecordRepository(session).delete_for_connection(connection.id) == 2
        with session_scope() as session:
            assert MetricRecordRepository(session).count(connection.id) == 0
