"""Stripe charge, payment, customer, subscription and invoice mappings.

Revenue is recognised from charges only. ``payment_intent.succeeded`` maps to
the same source event id as its latest charge so the two deliveries collapse
into one revenue record.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from ..schemas.events import (
    StripeChargeEvent,
    StripeCheckoutEvent,
    StripeCustomerEvent,
    StripeDisputeEvent,
    StripeInvoiceEvent,
    StripePaymentIntentEvent,
    StripeSubscriptionEvent,
)
from ..schemas.payload import MetricDraft, MetricType
from .base import ONE, composite_source_id, draft
from .currency import normalize_currency, to_major_units

PROVIDER = "stripe"


def _event_time(event: Any, fallback: datetime) -> datetime:
    return event.occurred_at or fallback


def _event_source_id(event: Any, entity: str, entity_id: str, suffix: str) -> str:
    if event.event_id:
        return composite_source_id(PROVIDER, "event", event.event_id)
    occurred = event.occurred_at.isoformat() if event.occurred_at else None
    return composite_source_id(PROVIDER, entity, entity_id, suffix, occurred)


def map_charge(event: StripeChargeEvent) -> list[MetricDraft]:
    """Map a charge (``charges`` backfill or ``charge.*`` webhook)."""

    charge = event.payload
    currency = normalize_currency(charge.currency)
    source_id = composite_source_id(PROVIDER, "charge", charge.id)
    metadata = {
        "chargeId": charge.id,
        "customerId": charge.customer,
        "paymentIntentId": charge.payment_intent,
        "currency": currency,
        "status": charge.status,
    }

    drafts: list[MetricDraft] = []
    if charge.status == "succeeded":
        drafts.append(
            draft(
                PROVIDER,
                MetricType.REVENUE,
                to_major_units(charge.amount, charge.currency),
                charge.created,
                source_id,
                **metadata,
            )
        )
    elif charge.status == "failed":
        drafts.append(
            draft(
                PROVIDER,
                MetricType.CHARGE_FAILED,
                to_major_units(charge.amount, charge.currency),
                charge.created,
                source_id,
                failureCode=charge.failure_code,
                **metadata,
            )
        )

    if charge.amount_refunded > 0:
        drafts.extend(_charge_refunds(event, metadata))
    return drafts


def _charge_refunds(event: StripeChargeEvent, metadata: dict[str, Any]) -> list[MetricDraft]:
    charge = event.payload
    refunds = (charge.refunds or {}).get("data") or []
    drafts: list[MetricDraft] = []
    for refund in refunds:
        if not isinstance(refund, dict) or not refund.get("id"):
            continue
        if refund.get("status") not in (None, "succeeded", "pending"):
            continue
        created = refund.get("created")
        recorded_at = (
            datetime.fromtimestamp(created, tz=charge.created.tzinfo)
            if isinstance(created, int)
            else _event_time(event, charge.created)
        )
        drafts.append(
            draft(
                PROVIDER,
                MetricType.REFUNDS,
                to_major_units(int(refund.get("amount", 0)), charge.currency),
                recorded_at,
                composite_source_id(PROVIDER, "refund", refund["id"]),
                refundId=refund["id"],
                **metadata,
            )
        )
    if drafts:
        return drafts
    # Refund list not expanded: record the charge-level total once.
    return [
        draft(
            PROVIDER,
            MetricType.REFUNDS,
            to_major_units(charge.amount_refunded, charge.currency),
            _event_time(event, charge.created),
            composite_source_id(PROVIDER, "charge", charge.id, "refunds"),
            **metadata,
        )
    ]


def map_payment_intent(event: StripePaymentIntentEvent) -> list[MetricDraft]:
    intent = event.payload
    currency = normalize_currency(intent.currency)
    metadata = {
        "paymentIntentId": intent.id,
        "chargeId": intent.latest_charge,
        "customerId": intent.customer,
        "currency": currency,
        "status": intent.status,
    }
    if event.kind == "payment_intent.succeeded":
        if intent.status != "succeeded":
            return []
        if intent.latest_charge:
            source_id = composite_source_id(PROVIDER, "charge", intent.latest_charge)
        else:
            source_id = composite_source_id(PROVIDER, "payment_intent", intent.id)
        amount = intent.amount_received or intent.amount
        return [
            draft(
                PROVIDER,
                MetricType.REVENUE,
                to_major_units(amount, intent.currency),
                intent.created,
                source_id,
                **metadata,
            )
        ]
    return [
        draft(
            PROVIDER,
            MetricType.PAYMENT_FAILED,
            to_major_units(intent.amount, intent.currency),
            _event_time(event, intent.created),
            _event_source_id(event, "payment_intent", intent.id, "failed"),
            **metadata,
        )
    ]


def map_customer(event: StripeCustomerEvent) -> list[MetricDraft]:
    customer = event.payload
    return [
        draft(
            PROVIDER,
            MetricType.CUSTOMERS,
            ONE,
            customer.created,
            composite_source_id(PROVIDER, "customer", customer.id),
            customerId=customer.id,
            customerEmail=customer.email,
        )
    ]


def _plan_details(items: dict[str, Any] | None) -> dict[str, Any]:
    data = (items or {}).get("data") or []
    if not data or not isinstance(data[0], dict):
        return {}
    price = data[0].get("price") or data[0].get("plan") or {}
    recurring = price.get("recurring") or {}
    amount = price.get("unit_amount", price.get("amount"))
    currency = price.get("currency")
    details: dict[str, Any] = {
        "priceId": price.get("id"),
        "interval": recurring.get("interval") or price.get("interval"),
    }
    if isinstance(amount, int) and currency:
        details["planAmount"] = str(to_major_units(amount, currency))
        details["currency"] = normalize_currency(currency)
    return details


_SUBSCRIPTION_KINDS = {
    "customer.subscription.created": (MetricType.SUBSCRIPTION_CREATED, "created"),
    "customer.subscription.updated": (MetricType.SUBSCRIPTION_UPDATED, "updated"),
    "customer.subscription.deleted": (MetricType.SUBSCRIPTION_CANCELLED, "cancelled"),
}


def map_subscription(event: StripeSubscriptionEvent) -> list[MetricDraft]:
    subscription = event.payload
    metric_type, suffix = _SUBSCRIPTION_KINDS[event.kind]
    if metric_type is MetricType.SUBSCRIPTION_UPDATED:
        # Updates repeat per subscription, so they are keyed by event.
        source_id = _event_source_id(event, "subscription", subscription.id, suffix)
        recorded_at = _event_time(event, subscription.created)
    else:
        source_id = composite_source_id(PROVIDER, "subscription", subscription.id, suffix)
        recorded_at = (
            subscription.created
            if metric_type is MetricType.SUBSCRIPTION_CREATED
            else _event_time(event, subscription.created)
        )
    return [
        draft(
            PROVIDER,
            metric_type,
            ONE,
            recorded_at,
            source_id,
            subscriptionId=subscription.id,
            customerId=subscription.customer,
            status=subscription.status,
            **_plan_details(subscription.items),
        )
    ]


def map_invoice(event: StripeInvoiceEvent) -> list[MetricDraft]:
    invoice = event.payload
    metadata = {
        "invoiceId": invoice.id,
        "customerId": invoice.customer,
        "subscriptionId": invoice.subscription,
        "chargeId": invoice.charge,
        "currency": normalize_currency(invoice.currency),
    }
    if event.kind == "invoice.paid":
        return [
            draft(
                PROVIDER,
                MetricType.INVOICE_PAID,
                to_major_units(invoice.amount_paid, invoice.currency),
                _event_time(event, invoice.created),
                composite_source_id(PROVIDER, "invoice", invoice.id, "paid"),
                **metadata,
            )
        ]
    return [
        draft(
            PROVIDER,
            MetricType.INVOICE_PAYMENT_FAILED,
            to_major_units(invoice.amount_due, invoice.currency),
            _event_time(event, invoice.created),
            composite_source_id(PROVIDER, "invoice", invoice.id, "failed", invoice.attempt_count),
            attemptCount=invoice.attempt_count,
            **metadata,
        )
    ]


def map_dispute(event: StripeDisputeEvent) -> list[MetricDraft]:
    dispute = event.payload
    return [
        draft(
            PROVIDER,
            MetricType.DISPUTE_CREATED,
            to_major_units(dispute.amount, dispute.currency),
            dispute.created,
            composite_source_id(PROVIDER, "dispute", dispute.id),
            disputeId=dispute.id,
            chargeId=dispute.charge,
            reason=dispute.reason,
            currency=normalize_currency(dispute.currency),
        )
    ]


def map_checkout(event: StripeCheckoutEvent) -> list[MetricDraft]:
    session = event.payload
    amount = session.amount_total or 0
    currency = session.currency or "usd"
    return [
        draft(
            PROVIDER,
            MetricType.CHECKOUT_COMPLETED,
            to_major_units(amount, currency),
            session.created,
            composite_source_id(PROVIDER, "checkout_session", session.id),
            checkoutSessionId=session.id,
            customerId=session.customer,
            mode=session.mode,
            paymentStatus=session.payment_status,
            currency=normalize_currency(currency),
        )
    ]


HANDLERS = {
    "stripe:charge": map_charge,
    "stripe:payment_intent": map_payment_intent,
    "stripe:customer": map_customer,
    "stripe:subscription": map_subscription,
    "stripe:invoice": map_invoice,
    "stripe:dispute": map_dispute,
    "stripe:checkout": map_checkout,
}
