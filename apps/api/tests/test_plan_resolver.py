from decimal import Decimal

import pytest
import stripe

from perkhub_api.core.settings import settings
from perkhub_api.models.subscription import BillingIntervalUnitEnum, PaymentProviderEnum, SubscriptionPlan
from perkhub_api.services.subscriptions.intervals import BillingInterval
from perkhub_api.services.subscriptions.plans import (
    PLAN_SOURCE_CATALOG,
    PLAN_SOURCE_DEFAULT,
    PLAN_SOURCE_PROVIDER,
    PlanDetails,
    PlanResolver,
    StripePriceCatalog,
)


class _FakeCatalog:
    def __init__(self, plan=None):
        self.plan = plan
        self.calls = []

    async def lookup(self, price_id):
        self.calls.append(price_id)
        return self.plan


@pytest.mark.asyncio
async def test_local_catalog_is_consulted_first(session_factory):
    catalog = _FakeCatalog()
    async with session_factory() as session:
        session.add(
            SubscriptionPlan(
                price_id="price_local",
                provider=PaymentProviderEnum.STRIPE,
                name="Premium Semestral",
                interval=BillingIntervalUnitEnum.MONTH,
                interval_count=6,
                amount=Decimal("179.40"),
            )
        )
        await session.commit()

        plan = await PlanResolver(session, stripe_catalog=catalog).resolve(PaymentProviderEnum.STRIPE, "price_local")

    assert plan.source == PLAN_SOURCE_CATALOG
    assert plan.interval == BillingInterval(BillingIntervalUnitEnum.MONTH, 6)
    assert catalog.calls == []


@pytest.mark.asyncio
async def test_stripe_catalog_used_for_unknown_price(session_factory):
    provider_plan = PlanDetails(
        name="Premium",
        interval=BillingInterval(BillingIntervalUnitEnum.YEAR, 1),
        amount=Decimal("299.00"),
        source=PLAN_SOURCE_PROVIDER,
    )
    catalog = _FakeCatalog(provider_plan)
    async with session_factory() as session:
        plan = await PlanResolver(session, stripe_catalog=catalog).resolve(PaymentProviderEnum.STRIPE, "price_remote")

    assert plan is provider_plan
    assert catalog.calls == ["price_remote"]


@pytest.mark.asyncio
async def test_default_plan_only_for_configured_providers(session_factory, monkeypatch):
    monkeypatch.setattr(settings, "default_plan_providers", ["lastlink"])
    async with session_factory() as session:
        resolver = PlanResolver(session, stripe_catalog=_FakeCatalog())

        lastlink_plan = await resolver.resolve(PaymentProviderEnum.LASTLINK, "prod_unknown")
        stripe_plan = await resolver.resolve(PaymentProviderEnum.STRIPE, "price_unknown")

    assert lastlink_plan.source == PLAN_SOURCE_DEFAULT
    assert lastlink_plan.name == settings.default_plan_name
    assert stripe_plan is None


@pytest.mark.asyncio
async def test_stripe_price_lookup_maps_recurring_price(monkeypatch):
    def _retrieve(price_id, expand=None, api_key=None):
        assert api_key == "sk_test_plans"
        assert expand == ["product"]
        return {
            "id": price_id,
            "unit_amount": 4990,
            "recurring": {"interval": "month", "interval_count": 3},
            "product": {"name": "Clube Trimestral"},
        }

    monkeypatch.setattr(stripe.Price, "retrieve", _retrieve)

    plan = await StripePriceCatalog("sk_test_plans").lookup("price_quarterly")

    assert plan.name == "Clube Trimestral"
    assert plan.interval == BillingInterval(BillingIntervalUnitEnum.MONTH, 3)
    assert plan.amount == Decimal("49.9")


@pytest.mark.asyncio
async def test_stripe_price_lookup_failure_returns_none(monkeypatch):
    def _retrieve(price_id, expand=None, api_key=None):
        raise stripe.InvalidRequestError("No such price", param="price")

    monkeypatch.setattr(stripe.Price, "retrieve", _retrieve)

    assert await StripePriceCatalog("sk_test_plans").lookup("price_missing") is None


def test_catalog_disabled_without_secret(monkeypatch):
    monkeypatch.setattr(settings, "stripe_secret_key", "")
    assert StripePriceCatalog.from_settings() is None
    monkeypatch.setattr(settings, "stripe_secret_key", "sk_test_plans")
    assert isinstance(StripePriceCatalog.from_settings(), StripePriceCatalog)
