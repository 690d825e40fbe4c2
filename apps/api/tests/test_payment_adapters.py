from datetime import datetime, timezone
from decimal import Decimal

import pytest

from perkhub_api.models.subscription import BillingIntervalUnitEnum, PaymentProviderEnum
from perkhub_api.services.errors import MalformedEventError
from perkhub_api.services.subscriptions.adapters import (
    external_id_of,
    interval_from_plan_name,
    parse_payment_event,
)
from perkhub_api.services.subscriptions.events import PaymentEventKind
from perkhub_api.services.subscriptions.intervals import BillingInterval


RECEIVED_AT = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


def _lastlink_payload(event: str = "Purchase_Order_Confirmed", **purchase_overrides):
    purchase = {
        "PaymentId": "pay_123",
        "PaymentDate": "2024-05-01T10:00:00Z",
        "Price": {"Value": 49.9},
        "Metadata": {"userId": "member-doc", "partnerId": "partner-doc"},
    }
    purchase.update(purchase_overrides)
    return {
        "Event": event,
        "Data": {
            "Buyer": {"Email": "buyer@example.com"},
            "Purchase": purchase,
            "Products": [{"Id": "prod_1", "Name": "Clube Premium Trimestral"}],
            "Subscriptions": [{"Id": "sub_ll_1"}],
        },
    }


def test_lastlink_confirmation_is_normalized():
    event = parse_payment_event(PaymentProviderEnum.LASTLINK, _lastlink_payload(), received_at=RECEIVED_AT)

    assert event.kind == PaymentEventKind.PAYMENT_CONFIRMED
    assert event.payment_reference == "pay_123"
    assert event.provider_subscription_id == "sub_ll_1"
    assert event.buyer.document_id == "member-doc"
    assert event.buyer.email == "buyer@example.com"
    assert event.partner_id == "partner-doc"
    assert event.interval == BillingInterval(BillingIntervalUnitEnum.MONTH, 3)
    assert event.amount == Decimal("49.9")
    assert event.price_id == "prod_1"
    assert event.occurred_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def test_lastlink_cancellation_falls_back_to_subscription_id():
    payload = _lastlink_payload("Subscription_Canceled")
    del payload["Data"]["Purchase"]["PaymentId"]

    event = parse_payment_event(PaymentProviderEnum.LASTLINK, payload, received_at=RECEIVED_AT)

    assert event.kind == PaymentEventKind.SUBSCRIPTION_CANCELED
    assert event.payment_reference == "sub_ll_1"
    assert event.provider_subscription_id == "sub_ll_1"


def test_lastlink_irrelevant_events_are_skipped():
    assert parse_payment_event(
        PaymentProviderEnum.LASTLINK, _lastlink_payload("Abandoned_Cart"), received_at=RECEIVED_AT
    ) is None


def test_lastlink_confirmation_without_buyer_is_malformed():
    payload = _lastlink_payload(Metadata={})
    payload["Data"]["Buyer"] = {}

    with pytest.raises(MalformedEventError):
        parse_payment_event(PaymentProviderEnum.LASTLINK, payload, received_at=RECEIVED_AT)


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("Plano Anual", BillingInterval(BillingIntervalUnitEnum.YEAR, 1)),
        ("Plano Semestral", BillingInterval(BillingIntervalUnitEnum.MONTH, 6)),
        ("plano mensal", BillingInterval(BillingIntervalUnitEnum.MONTH, 1)),
        ("Plano Vitalicio", None),
        (None, None),
    ],
)
def test_interval_from_plan_name(name, expected):
    assert interval_from_plan_name(name) == expected


def test_stripe_checkout_completed_is_normalized():
    payload = {
        "id": "evt_checkout",
        "type": "checkout.session.completed",
        "created": 1714557600,
        "data": {
            "object": {
                "id": "cs_test_1",
                "mode": "subscription",
                "subscription": "sub_123",
                "amount_total": 2990,
                "customer_details": {"email": "buyer@example.com"},
                "metadata": {
                    "userId": "member-doc",
                    "authUid": "auth-buyer",
                    "partnerLinkId": "LINK01",
                    "interval": "month",
                    "interval_count": "1",
                },
            }
        },
    }

    event = parse_payment_event(PaymentProviderEnum.STRIPE, payload, received_at=RECEIVED_AT)

    assert event.kind == PaymentEventKind.PAYMENT_CONFIRMED
    assert event.payment_reference == "sub_123"
    assert event.external_event_id == "evt_checkout"
    assert event.buyer.external_auth_id == "auth-buyer"
    assert event.partner_link_id == "LINK01"
    assert event.amount == Decimal("29.9")
    assert event.interval == BillingInterval(BillingIntervalUnitEnum.MONTH, 1)
    assert event.occurred_at == datetime.fromtimestamp(1714557600, tz=timezone.utc)


def test_stripe_payment_mode_checkout_is_skipped():
    payload = {
        "id": "evt_payment",
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_2", "mode": "payment", "customer_email": "a@example.com"}},
    }
    assert parse_payment_event(PaymentProviderEnum.STRIPE, payload, received_at=RECEIVED_AT) is None


@pytest.mark.parametrize(
    ("event_type", "status", "expected_kind"),
    [
        ("customer.subscription.deleted", "canceled", PaymentEventKind.SUBSCRIPTION_CANCELED),
        ("customer.subscription.updated", "unpaid", PaymentEventKind.SUBSCRIPTION_CANCELED),
        ("customer.subscription.updated", "active", None),
    ],
)
def test_stripe_subscription_lifecycle(event_type, status, expected_kind):
    payload = {"id": "evt_sub", "type": event_type, "data": {"object": {"id": "sub_123", "status": status}}}

    event = parse_payment_event(PaymentProviderEnum.STRIPE, payload, received_at=RECEIVED_AT)

    if expected_kind is None:
        assert event is None
    else:
        assert event.kind == expected_kind
        assert event.payment_reference == "sub_123"
        assert event.occurred_at == RECEIVED_AT


def test_stripe_payload_without_id_is_malformed():
    with pytest.raises(MalformedEventError):
        parse_payment_event(PaymentProviderEnum.STRIPE, {"type": "checkout.session.completed"}, received_at=RECEIVED_AT)


def test_external_id_prefers_provider_identifiers():
    assert external_id_of(PaymentProviderEnum.STRIPE, {"id": "evt_1"}, "hash") == "evt_1"
    assert external_id_of(PaymentProviderEnum.LASTLINK, _lastlink_payload(), "hash") == "Purchase_Order_Confirmed:pay_123"
    assert external_id_of(PaymentProviderEnum.LASTLINK, {"Event": "Purchase_Order_Confirmed"}, "hash") == "hash"
