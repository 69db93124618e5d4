"""Tests for insert-or-skip metric persistence."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.exc import OperationalError

from commerce_ingestor.models.base import session_scope
from commerce_ingestor.models.repository import MetricRecordRepository
from commerce_ingestor.models.writer import IdempotentWriter
from commerce_ingestor.normalization import normalize
from commerce_ingestor.schemas.payload import MetricDraft, MetricType
from tests.fixtures.provider_payloads import shopify_order, shopify_orders


def _revenue(source_event_id: str, value: str = "10.00") -> MetricDraft:
    return MetricDraft(
        metric_type=MetricType.REVENUE,
        value=Decimal(value),
        recorded_at=datetime(2026, 10, 1, tzinfo=timezone.utc),
        metadata={"sourceEventId": source_event_id, "source": "shopify"},
    )


def _count(connection_id: str, metric_type: str | None = None) -> int:
    with session_scope() as session:
        return MetricRecordRepository(session).count(connection_id, metric_type)


class _FlakyWriter(IdempotentWriter):
    """Fails every insert of one source event id."""

    def __init__(self, poisoned: str) -> None:
        super().__init__(provider="shopify")
        self.poisoned = poisoned

    def _insert(self, session, row):
        if row["source_event_id"] == self.poisoned:
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))
        return super()._insert(session, row)


def test_writes_new_records(make_connection):
    connection = make_connection()
    drafts = [draft for order in shopify_orders(3) for draft in normalize("shopify", "orders", order)]

    summary = IdempotentWriter(provider="shopify").write(connection.id, drafts)

    assert summary.submitted == 6
    assert summary.written == 6
    assert summary.duplicates == 0
    assert summary.written_by_type == {"orders": 3, "revenue": 3}
    assert _count(connection.id) == 6


def test_replaying_the_same_drafts_is_a_no_op(make_connection):
    connection = make_connection()
    drafts = normalize("shopify", "orders/create", shopify_order(1))
    writer = IdempotentWriter(provider="shopify")

    writer.write(connection.id, drafts)
    second = writer.write(connection.id, drafts)

    assert second.written == 0
    assert second.duplicates == len(drafts)
    assert _count(connection.id) == len(drafts)


def test_duplicates_inside_one_batch_are_absorbed(make_connection):
    connection = make_connection()

    summary = IdempotentWriter().write(connection.id, [_revenue("evt-1"), _revenue("evt-1", "99")])

    assert (summary.written, summary.duplicates) == (1, 1)
    with session_scope() as session:
        records = MetricRecordRepository(session).list_for_connection(connection.id)
    assert records[0].value == Decimal("10.00")


def test_same_event_different_metric_types_are_distinct(make_connection):
    connection = make_connection()
    drafts = normalize("shopify", "orders/paid", shopify_order(5))

    IdempotentWriter().write(connection.id, drafts)

    assert _count(connection.id, "orders") == 1
    assert _count(connection.id, "revenue") == 1


def test_idempotency_is_scoped_per_connection(make_connection):
    first = make_connection("shopify", organization_id="org-a", account_id="shop-a")
    second = make_connection("shopify", organization_id="org-b", account_id="shop-b")
    drafts = [_revenue("shopify:order:1")]

    IdempotentWriter().write(first.id, drafts)
    summary = IdempotentWriter().write(second.id, drafts)

    assert summary.written == 1
    assert _count(first.id) == 1
    assert _count(second.id) == 1


def test_one_failing_row_does_not_drop_its_siblings(make_connection):
    connection = make_connection()
    drafts = [_revenue("evt-1"), _revenue("evt-2"), _revenue("evt-3")]

    summary = _FlakyWriter(poisoned="evt-2").write(connection.id, drafts)

    assert summary.written == 2
    assert summary.failed == 1
    assert summary.errors == ["evt-2:revenue:OperationalError"]
    with session_scope() as session:
        stored = {r.source_event_id for r in MetricRecordRepository(session).list_for_connection(connection.id)}
    assert stored == {"evt-1", "evt-3"}


def test_metadata_is_stored_json_safe(make_connection):
    connection = make_connection()
    drafts = normalize("shopify", "orders", shopify_order(8))

    IdempotentWriter().write(connection.id, drafts)

    with session_scope() as session:
        record = MetricRecordRepository(session).list_for_connection(connection.id, "revenue")[0]
    assert record.record_metadata["sourceEventId"] == "shopify:order:8"
    assert record.record_metadata["source"] == "shopify"
    assert record.recorded_at.tzinfo is not None


def test_empty_batch():
    summary = IdempotentWriter().write("missing", [])
    assert summary.submitted == 0
    assert summary.written == 0
