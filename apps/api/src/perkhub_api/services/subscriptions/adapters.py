"""Translate provider webhook payloads into :class:`PaymentEvent` instances.

Adapters return ``None`` for event types the engine does not act on and raise
:class:`MalformedEventError` when a relevant event lacks required fields.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from perkhub_api.models.subscription import PaymentProviderEnum
from perkhub_api.services.errors import MalformedEventError
from perkhub_api.services.identity import IdentityHint
from perkhub_api.services.subscriptions.events import PaymentEvent, PaymentEventKind
from perkhub_api.services.subscriptions.intervals import BillingInterval


LASTLINK_CONFIRMATION_EVENTS = frozenset({"Purchase_Order_Confirmed", "Recurrent_Payment"})
LASTLINK_CANCELLATION_EVENTS = frozenset(
    {"Subscription_Canceled", "Subscription_Expired", "Payment_Refund", "Payment_Chargeback"}
)

STRIPE_CANCELED_STATUSES = frozenset({"canceled", "unpaid", "incomplete_expired"})

# Lastlink product names carry the billing period.
_LASTLINK_PLAN_KEYWORDS: tuple[tuple[str, str, int], ...] = (
    ("anual", "year", 1),
    ("semestral", "month", 6),
    ("trimestral", "month", 3),
    ("mensal", "month", 1),
)


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _first(items: Any) -> Mapping[str, Any]:
    if isinstance(items, list) and items and isinstance(items[0], Mapping):
        return items[0]
    return {}


def _section(payload: Mapping[str, Any], *keys: str) -> Mapping[str, Any]:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, Mapping):
            return value
    return {}


def _decimal(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def interval_from_plan_name(name: str | None) -> BillingInterval | None:
    if not name:
        return None
    lowered = name.lower()
    for keyword, unit, count in _LASTLINK_PLAN_KEYWORDS:
        if keyword in lowered:
            return BillingInterval.parse(unit, count)
    return None


def parse_lastlink_event(payload: Mapping[str, Any], *, received_at: datetime) -> PaymentEvent | None:
    event_type = _text(payload.get("Event") or payload.get("event"))
    if event_type is None:
        raise MalformedEventError("Lastlink payload is missing the event type")
    if event_type in LASTLINK_CONFIRMATION_EVENTS:
        kind = PaymentEventKind.PAYMENT_CONFIRMED
    elif event_type in LASTLINK_CANCELLATION_EVENTS:
        kind = PaymentEventKind.SUBSCRIPTION_CANCELED
    else:
        return None

    data = _section(payload, "Data", "data") or payload
    buyer = _section(data, "Buyer", "buyer")
    purchase = _section(data, "Purchase", "purchase")
    metadata = _section(purchase, "Metadata", "metadata")
    product = _first(data.get("Products") or data.get("products"))
    subscription = _first(data.get("Subscriptions") or data.get("subscriptions"))

    subscription_id = _text(subscription.get("Id"))
    reference = _text(purchase.get("PaymentId"))
    if reference is None and kind == PaymentEventKind.SUBSCRIPTION_CANCELED:
        reference = subscription_id
    if reference is None:
        raise MalformedEventError(f"Lastlink {event_type} event has no payment reference")

    hint = IdentityHint(
        document_id=_text(metadata.get("userId")),
        email=_text(buyer.get("Email")),
    )
    if kind == PaymentEventKind.PAYMENT_CONFIRMED and hint.is_empty():
        raise MalformedEventError(f"Lastlink {event_type} event has no buyer identifiers")

    plan_name = _text(product.get("Name"))
    price = _section(purchase, "Price")
    external_id = _text(payload.get("Id") or data.get("Id")) or f"{event_type}:{reference}"
    return PaymentEvent(
        provider=PaymentProviderEnum.LASTLINK,
        kind=kind,
        payment_reference=reference,
        external_event_id=external_id,
        occurred_at=_parse_timestamp(purchase.get("PaymentDate")) or received_at,
        provider_subscription_id=subscription_id,
        buyer=hint,
        partner_id=_text(metadata.get("partnerId")),
        partner_link_id=_text(metadata.get("partnerLinkId")),
        interval=interval_from_plan_name(plan_name),
        price_id=_text(product.get("Id")),
        plan_name=plan_name,
        amount=_decimal(price.get("Value")),
    )


def parse_stripe_event(payload: Mapping[str, Any], *, received_at: datetime) -> PaymentEvent | None:
    event_type = _text(payload.get("type"))
    event_id = _text(payload.get("id"))
    if event_type is None or event_id is None:
        raise MalformedEventError("Stripe payload is missing the event id or type")
    data_object = _section(_section(payload, "data"), "object")
    occurred_at = _parse_timestamp(payload.get("created")) or received_at

    if event_type == "checkout.session.completed":
        return _stripe_checkout_completed(event_id, data_object, occurred_at)
    if event_type == "customer.subscription.deleted":
        return _stripe_subscription_canceled(event_id, data_object, occurred_at)
    if event_type == "customer.subscription.updated":
        if data_object.get("status") in STRIPE_CANCELED_STATUSES:
            return _stripe_subscription_canceled(event_id, data_object, occurred_at)
    return None


def _stripe_checkout_completed(
    event_id: str, session: Mapping[str, Any], occurred_at: datetime
) -> PaymentEvent | None:
    if session.get("mode") not in (None, "subscription"):
        return None
    metadata = _section(session, "metadata")
    customer_details = _section(session, "customer_details")
    subscription_id = _text(session.get("subscription"))
    reference = subscription_id or _text(session.get("id"))
    if reference is None:
        raise MalformedEventError(f"Stripe event {event_id} has no subscription reference")

    hint = IdentityHint(
        document_id=_text(metadata.get("userId")) or _text(session.get("client_reference_id")),
        external_auth_id=_text(metadata.get("authUid")),
        email=_text(customer_details.get("email")) or _text(session.get("customer_email")),
    )
    if hint.is_empty():
        raise MalformedEventError(f"Stripe event {event_id} has no buyer identifiers")

    amount_total = session.get("amount_total")
    return PaymentEvent(
        provider=PaymentProviderEnum.STRIPE,
        kind=PaymentEventKind.PAYMENT_CONFIRMED,
        payment_reference=reference,
        external_event_id=event_id,
        occurred_at=occurred_at,
        provider_subscription_id=subscription_id,
        buyer=hint,
        partner_id=_text(metadata.get("partnerId")),
        partner_link_id=_text(metadata.get("partnerLinkId")),
        interval=BillingInterval.parse(metadata.get("interval"), metadata.get("interval_count") or 1),
        period_end=_parse_timestamp(metadata.get("current_period_end")),
        price_id=_text(metadata.get("priceId")),
        plan_name=_text(metadata.get("planName")),
        amount=Decimal(amount_total) / Decimal(100) if isinstance(amount_total, int) else None,
    )


def _stripe_subscription_canceled(
    event_id: str, subscription: Mapping[str, Any], occurred_at: datetime
) -> PaymentEvent:
    reference = _text(subscription.get("id"))
    if reference is None:
        raise MalformedEventError(f"Stripe event {event_id} has no subscription id")
    return PaymentEvent(
        provider=PaymentProviderEnum.STRIPE,
        kind=PaymentEventKind.SUBSCRIPTION_CANCELED,
        payment_reference=reference,
        external_event_id=event_id,
        occurred_at=_parse_timestamp(subscription.get("canceled_at")) or occurred_at,
        provider_subscription_id=reference,
    )


_PARSERS = {
    PaymentProviderEnum.STRIPE: parse_stripe_event,
    PaymentProviderEnum.LASTLINK: parse_lastlink_event,
}


def parse_payment_event(
    provider: PaymentProviderEnum, payload: Mapping[str, Any], *, received_at: datetime
) -> PaymentEvent | None:
    parser = _PARSERS.get(PaymentProviderEnum(provider))
    if parser is None:
        raise MalformedEventError(f"No adapter registered for provider {provider}")
    if not isinstance(payload, Mapping):
        raise MalformedEventError("Payment payload must be a JSON object")
    return parser(payload, received_at=received_at)


def event_type_of(provider: PaymentProviderEnum, payload: Mapping[str, Any]) -> str | None:
    if PaymentProviderEnum(provider) == PaymentProviderEnum.STRIPE:
        return _text(payload.get("type"))
    return _text(payload.get("Event") or payload.get("event"))


def external_id_of(provider: PaymentProviderEnum, payload: Mapping[str, Any], payload_hash: str) -> str:
    """Ledger key for an inbound payload; falls back to the payload hash."""

    if PaymentProviderEnum(provider) == PaymentProviderEnum.STRIPE:
        return _text(payload.get("id")) or payload_hash
    data = _section(payload, "Data", "data") or payload
    explicit = _text(payload.get("Id") or data.get("Id"))
    if explicit:
        return explicit
    event_type = event_type_of(provider, payload)
    reference = _text(_section(data, "Purchase", "purchase").get("PaymentId"))
    if event_type and reference:
        return f"{event_type}:{reference}"
    return payload_hash
