"""Shopify order, customer and refund mappings."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from ..schemas.events import (
    ShopifyCustomerEvent,
    ShopifyOrder,
    ShopifyOrderEvent,
    ShopifyRefund,
    ShopifyRefundEvent,
)
from ..schemas.payload import MetricDraft, MetricType
from .base import ONE, composite_source_id, draft
from .currency import normalize_currency

PROVIDER = "shopify"

# Financial states in which the order has been paid at least once. Refunds are
# tracked as their own metric so a refunded order still counts as revenue.
REVENUE_STATES = frozenset({"paid", "partially_refunded", "refunded"})


def _order_metadata(order: ShopifyOrder) -> dict[str, Any]:
    extra = order.model_extra or {}
    customer_name = None
    if order.customer is not None:
        customer_extra = order.customer.model_extra or {}
        names = [customer_extra.get("first_name"), customer_extra.get("last_name")]
        customer_name = " ".join(part for part in names if part) or None
    return {
        "orderId": str(order.id),
        "orderNumber": extra.get("order_number"),
        "customerId": str(order.customer.id) if order.customer is not None else None,
        "customerEmail": extra.get("email"),
        "customerName": customer_name,
        "currency": normalize_currency(order.currency),
        "financialStatus": order.financial_status,
    }


def _refund_drafts(refund: ShopifyRefund, currency: str) -> list[MetricDraft]:
    amount = sum(
        (
            txn.amount
            for txn in refund.transactions
            if txn.kind == "refund" and txn.status in (None, "success")
        ),
        Decimal(0),
    )
    if amount <= 0:
        return []
    txn_currency = next((txn.currency for txn in refund.transactions if txn.currency), None)
    return [
        draft(
            PROVIDER,
            MetricType.REFUNDS,
            amount,
            refund.created_at,
            composite_source_id(PROVIDER, "refund", refund.id),
            refundId=str(refund.id),
            orderId=str(refund.order_id),
            currency=normalize_currency(txn_currency or currency),
        )
    ]


def map_order(event: ShopifyOrderEvent) -> list[MetricDraft]:
    """Map an order (webhook or backfill) to order, revenue and refund drafts."""

    order = event.payload
    metadata = _order_metadata(order)
    source_id = composite_source_id(PROVIDER, "order", order.id)

    if event.kind == "orders/cancelled":
        cancelled_at = order.cancelled_at or event.occurred_at or order.created_at
        return [
            draft(
                PROVIDER,
                MetricType.ORDER_CANCELLED,
                ONE,
                cancelled_at,
                source_id,
                amount=str(order.total_price),
                **metadata,
            )
        ]

    drafts = [draft(PROVIDER, MetricType.ORDERS, ONE, order.created_at, source_id, **metadata)]
    if (order.financial_status or "").lower() in REVENUE_STATES:
        drafts.append(
            draft(
                PROVIDER,
                MetricType.REVENUE,
                order.total_price,
                order.processed_at or order.created_at,
                source_id,
                **metadata,
            )
        )
    for refund in order.refunds:
        drafts.extend(_refund_drafts(refund, metadata["currency"]))
    return drafts


def map_customer(event: ShopifyCustomerEvent) -> list[MetricDraft]:
    customer = event.payload
    extra = customer.model_extra or {}
    return [
        draft(
            PROVIDER,
            MetricType.CUSTOMERS,
            ONE,
            customer.created_at,
            composite_source_id(PROVIDER, "customer", customer.id),
            customerId=str(customer.id),
            customerEmail=extra.get("email"),
        )
    ]


def map_refund(event: ShopifyRefundEvent) -> list[MetricDraft]:
    return _refund_drafts(event.payload, normalize_currency(None))


HANDLERS = {
    "shopify:order": map_order,
    "shopify:customer": map_customer,
    "shopify:refund": map_refund,
}
