"""Tiered plan lookup: local catalog, provider price catalog, configured default."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import stripe
from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from perkhub_api.core.settings import settings
from perkhub_api.models.subscription import PaymentProviderEnum, SubscriptionPlan
from perkhub_api.services.subscriptions.intervals import BillingInterval


PLAN_SOURCE_CATALOG = "catalog"
PLAN_SOURCE_PROVIDER = "provider"
PLAN_SOURCE_DEFAULT = "default"


@dataclass(slots=True)
class PlanDetails:
    name: str
    interval: BillingInterval
    amount: Decimal | None
    source: str


class StripePriceCatalog:
    """Thin asynchronous wrapper around Stripe price lookups."""

    def __init__(self, secret_key: str) -> None:
        self._secret_key = secret_key

    @classmethod
    def from_settings(cls) -> "StripePriceCatalog | None":
        if not settings.stripe_secret_key:
            return None
        return cls(settings.stripe_secret_key)

    async def _run(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """Execute blocking Stripe SDK calls in a worker thread."""

        return await asyncio.to_thread(func, *args, **kwargs)

    @staticmethod
    def _from_cents(amount: int | None) -> Decimal | None:
        if amount is None:
            return None
        return Decimal(amount) / Decimal(100)

    async def lookup(self, price_id: str) -> PlanDetails | None:
        try:
            price = await self._run(
                stripe.Price.retrieve,
                price_id,
                expand=["product"],
                api_key=self._secret_key,
            )
        except stripe.StripeError as exc:
            logger.warning("Stripe price lookup failed", price_id=price_id, error=str(exc))
            return None

        recurring = price.get("recurring") or {}
        interval = BillingInterval.parse(recurring.get("interval"), recurring.get("interval_count") or 1)
        if interval is None:
            return None
        product = price.get("product")
        name = product.get("name") if hasattr(product, "get") else None
        return PlanDetails(
            name=name or price.get("nickname") or settings.default_plan_name,
            interval=interval,
            amount=self._from_cents(price.get("unit_amount")),
            source=PLAN_SOURCE_PROVIDER,
        )


class PlanResolver:
    """Resolve billing details for a price id, trying cheaper sources first.

    The configured default plan is only offered for providers listed in
    ``settings.default_plan_providers``; other providers fall through to the
    event's own period end or to manual review.
    """

    def __init__(self, session: AsyncSession, *, stripe_catalog: StripePriceCatalog | None = None) -> None:
        self._session = session
        self._stripe_catalog = stripe_catalog if stripe_catalog is not None else StripePriceCatalog.from_settings()

    async def resolve(self, provider: PaymentProviderEnum, price_id: str | None) -> PlanDetails | None:
        if price_id:
            plan = await self._from_catalog(provider, price_id)
            if plan is not None:
                return plan
            if provider == PaymentProviderEnum.STRIPE and self._stripe_catalog is not None:
                plan = await self._stripe_catalog.lookup(price_id)
                if plan is not None:
                    return plan
        return self.default_for(provider)

    def default_for(self, provider: PaymentProviderEnum) -> PlanDetails | None:
        if PaymentProviderEnum(provider).value not in settings.default_plan_providers:
            return None
        return PlanDetails(
            name=settings.default_plan_name,
            interval=BillingInterval.parse(settings.default_plan_interval, settings.default_plan_interval_count),
            amount=None,
            source=PLAN_SOURCE_DEFAULT,
        )

    async def _from_catalog(self, provider: PaymentProviderEnum, price_id: str) -> PlanDetails | None:
        stmt = select(SubscriptionPlan).where(
            SubscriptionPlan.price_id == price_id,
            SubscriptionPlan.provider == provider,
            SubscriptionPlan.active.is_(True),
        )
        plan = (await self._session.execute(stmt)).scalar_one_or_none()
        if plan is None:
            return None
        return PlanDetails(
            name=plan.name,
            interval=BillingInterval(unit=plan.interval, count=plan.interval_count or 1),
            amount=plan.amount,
            source=PLAN_SOURCE_CATALOG,
        )
