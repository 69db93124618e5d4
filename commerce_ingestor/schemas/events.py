"""Typed provider payloads, discriminated by ``(provider, kind)``.

Every webhook event kind and every backfill entity type that has a mapping is
assigned to a payload family. Validation against the family's minimal schema
happens before any mapping code runs, so malformed payloads surface as
``PayloadMalformedError`` instead of ``KeyError`` deep inside a mapper.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from ..exceptions import PayloadMalformedError


class _ProviderObject(BaseModel):
    """Minimal schema for a provider object; unknown keys are kept."""

    model_config = ConfigDict(extra="allow")


def _coerce_decimal(value: Any) -> Any:
    if value is None or isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"not a decimal amount: {value!r}") from exc


def _coerce_epoch(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return value


# Shopify -----------------------------------------------------------------


class ShopifyCustomerRef(_ProviderObject):
    id: int | str


class ShopifyRefundTransaction(_ProviderObject):
    amount: Decimal
    kind: str = "refund"
    status: str | None = None
    currency: str | None = None

    _decimal = field_validator("amount", mode="before")(_coerce_decimal)


class ShopifyRefund(_ProviderObject):
    id: int | str
    order_id: int | str
    created_at: datetime
    transactions: list[ShopifyRefundTransaction] = Field(default_factory=list)


class ShopifyOrder(_ProviderObject):
    id: int | str
    total_price: Decimal
    currency: str = "USD"
    financial_status: str | None = None
    created_at: datetime
    processed_at: datetime | None = None
    cancelled_at: datetime | None = None
    customer: ShopifyCustomerRef | None = None
    refunds: list[ShopifyRefund] = Field(default_factory=list)

    _decimal = field_validator("total_price", mode="before")(_coerce_decimal)


class ShopifyCustomer(_ProviderObject):
    id: int | str
    created_at: datetime


class ShopifyDataRequestRef(_ProviderObject):
    id: int | str


class ShopifyCompliancePayload(_ProviderObject):
    shop_id: int | str | None = None
    shop_domain: str | None = None
    customer: ShopifyCustomerRef | None = None
    data_request: ShopifyDataRequestRef | None = None
    orders_to_redact: list[int | str] = Field(default_factory=list)


class ShopifyShop(_ProviderObject):
    id: int | str | None = None
    domain: str | None = None


# Stripe ------------------------------------------------------------------


class StripeObject(_ProviderObject):
    id: str
    created: datetime

    _epoch = field_validator("created", mode="before")(_coerce_epoch)


class StripeCharge(StripeObject):
    amount: int
    currency: str
    status: str
    paid: bool = False
    customer: str | None = None
    payment_intent: str | None = None
    amount_refunded: int = 0
    refunded: bool = False
    refunds: dict[str, Any] | None = None
    failure_code: str | None = None


class StripePaymentIntent(StripeObject):
    amount: int
    amount_received: int = 0
    currency: str
    status: str
    customer: str | None = None
    latest_charge: str | None = None


class StripeCustomer(StripeObject):
    email: str | None = None


class StripeSubscription(StripeObject):
    status: str
    customer: str | None = None
    currency: str | None = None
    items: dict[str, Any] | None = None


class StripeInvoice(StripeObject):
    amount_paid: int = 0
    amount_due: int = 0
    currency: str
    customer: str | None = None
    subscription: str | None = None
    attempt_count: int = 0
    charge: str | None = None


class StripeDispute(StripeObject):
    amount: int
    currency: str
    charge: str | None = None
    reason: str | None = None


class StripeCheckoutSession(StripeObject):
    amount_total: int | None = None
    currency: str | None = None
    customer: str | None = None
    mode: str | None = None
    payment_status: str | None = None


class StripeEventData(_ProviderObject):
    object: dict[str, Any]


class StripeEventEnvelope(_ProviderObject):
    """Outer Stripe event; ``data.object`` is validated per kind afterwards."""

    id: str
    type: str
    created: datetime | None = None
    data: StripeEventData

    _epoch = field_validator("created", mode="before")(_coerce_epoch)


# Google Analytics --------------------------------------------------------


class AnalyticsDailyRow(_ProviderObject):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    report_date: date = Field(alias="date")
    sessions: int = 0
    users: int = 0
    pageviews: int = 0

    @field_validator("report_date", mode="before")
    @classmethod
    def _parse_compact_date(cls, value: Any) -> Any:
        if isinstance(value, str) and len(value) == 8 and value.isdigit():
            return date(int(value[:4]), int(value[4:6]), int(value[6:]))
        return value


# Envelopes ---------------------------------------------------------------


class _Envelope(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: str
    event_id: str | None = None
    occurred_at: datetime | None = None


class ShopifyOrderEvent(_Envelope):
    provider: Literal["shopify"]
    payload: ShopifyOrder


class ShopifyCustomerEvent(_Envelope):
    provider: Literal["shopify"]
    payload: ShopifyCustomer


class ShopifyRefundEvent(_Envelope):
    provider: Literal["shopify"]
    payload: ShopifyRefund


class ShopifyComplianceEvent(_Envelope):
    provider: Literal["shopify"]
    payload: ShopifyCompliancePayload


class ShopifyShopEvent(_Envelope):
    provider: Literal["shopify"]
    payload: ShopifyShop


class StripeChargeEvent(_Envelope):
    provider: Literal["stripe"]
    payload: StripeCharge


class StripePaymentIntentEvent(_Envelope):
    provider: Literal["stripe"]
    payload: StripePaymentIntent


class StripeCustomerEvent(_Envelope):
    provider: Literal["stripe"]
    payload: StripeCustomer


class StripeSubscriptionEvent(_Envelope):
    provider: Literal["stripe"]
    payload: StripeSubscription


class StripeInvoiceEvent(_Envelope):
    provider: Literal["stripe"]
    payload: StripeInvoice


class StripeDisputeEvent(_Envelope):
    provider: Literal["stripe"]
    payload: StripeDispute


class StripeCheckoutEvent(_Envelope):
    provider: Literal["stripe"]
    payload: StripeCheckoutSession


class AnalyticsReportEvent(_Envelope):
    provider: Literal["google_analytics"]
    payload: AnalyticsDailyRow


EVENT_FAMILIES: dict[tuple[str, str], str] = {
    ("shopify", "orders"): "shopify:order",
    ("shopify", "orders/create"): "shopify:order",
    ("shopify", "orders/updated"): "shopify:order",
    ("shopify", "orders/paid"): "shopify:order",
    ("shopify", "orders/cancelled"): "shopify:order",
    ("shopify", "customers"): "shopify:customer",
    ("shopify", "customers/create"): "shopify:customer",
    ("shopify", "refunds/create"): "shopify:refund",
    ("shopify", "customers/data_request"): "shopify:compliance",
    ("shopify", "customers/redact"): "shopify:compliance",
    ("shopify", "shop/redact"): "shopify:compliance",
    ("shopify", "app/uninstalled"): "shopify:shop",
    ("shopify", "shop/update"): "shopify:shop",
    ("stripe", "charges"): "stripe:charge",
    ("stripe", "charge.succeeded"): "stripe:charge",
    ("stripe", "charge.failed"): "stripe:charge",
    ("stripe", "charge.refunded"): "stripe:charge",
    ("stripe", "payment_intent.succeeded"): "stripe:payment_intent",
    ("stripe", "payment_intent.payment_failed"): "stripe:payment_intent",
    ("stripe", "customers"): "stripe:customer",
    ("stripe", "customer.created"): "stripe:customer",
    ("stripe", "customer.subscription.created"): "stripe:subscription",
    ("stripe", "customer.subscription.updated"): "stripe:subscription",
    ("stripe", "customer.subscription.deleted"): "stripe:subscription",
    ("stripe", "invoice.paid"): "stripe:invoice",
    ("stripe", "invoice.payment_failed"): "stripe:invoice",
    ("stripe", "charge.dispute.created"): "stripe:dispute",
    ("stripe", "checkout.session.completed"): "stripe:checkout",
    ("google_analytics", "daily_traffic"): "google_analytics:daily",
}


def _event_family(value: Any) -> str | None:
    if isinstance(value, dict):
        key = (value.get("provider"), value.get("kind"))
    else:
        key = (getattr(value, "provider", None), getattr(value, "kind", None))
    return EVENT_FAMILIES.get(key)  # type: ignore[arg-type]


ProviderEvent = Annotated[
    Union[
        Annotated[ShopifyOrderEvent, Tag("shopify:order")],
        Annotated[ShopifyCustomerEvent, Tag("shopify:customer")],
        Annotated[ShopifyRefundEvent, Tag("shopify:refund")],
        Annotated[ShopifyComplianceEvent, Tag("shopify:compliance")],
        Annotated[ShopifyShopEvent, Tag("shopify:shop")],
        Annotated[StripeChargeEvent, Tag("stripe:charge")],
        Annotated[StripePaymentIntentEvent, Tag("stripe:payment_intent")],
        Annotated[StripeCustomerEvent, Tag("stripe:customer")],
        Annotated[StripeSubscriptionEvent, Tag("stripe:subscription")],
        Annotated[StripeInvoiceEvent, Tag("stripe:invoice")],
        Annotated[StripeDisputeEvent, Tag("stripe:dispute")],
        Annotated[StripeCheckoutEvent, Tag("stripe:checkout")],
        Annotated[AnalyticsReportEvent, Tag("google_analytics:daily")],
    ],
    Discriminator(_event_family),
]

_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(ProviderEvent)


def is_mapped(provider: str, kind: str) -> bool:
    """Return True when ``(provider, kind)`` has a payload family."""

    return (provider, kind) in EVENT_FAMILIES


def parse_provider_event(
    provider: str,
    kind: str,
    payload: Any,
    *,
    event_id: str | None = None,
    occurred_at: datetime | None = None,
) -> Any | None:
    """Validate ``payload`` against the schema for ``(provider, kind)``.

    Returns ``None`` for unmapped kinds.

    Raises:
        PayloadMalformedError: When the payload misses required fields.
    """

    if not is_mapped(provider, kind):
        return None
    if not isinstance(payload, dict):
        raise PayloadMalformedError(f"{provider} {kind} payload must be a JSON object")

    envelope = {
        "provider": provider,
        "kind": kind,
        "event_id": event_id,
        "occurred_at": occurred_at,
        "payload": payload,
    }
    try:
        return _EVENT_ADAPTER.validate_python(envelope)
    except ValidationError as exc:
        raise PayloadMalformedError(
            f"{provider} {kind} payload failed validation",
            errors=exc.errors(include_url=False, include_input=False),
        ) from exc


def parse_stripe_envelope(body: Any) -> StripeEventEnvelope:
    """Validate the outer Stripe event (``id``, ``type``, ``data.object``)."""

    if not isinstance(body, dict):
        raise PayloadMalformedError("stripe event body must be a JSON object")
    try:
        return StripeEventEnvelope.model_validate(body)
    except ValidationError as exc:
        raise PayloadMalformedError(
            "stripe event envelope failed validation",
            errors=exc.errors(include_url=False, include_input=False),
        ) from exc
