"""Canonical payment events and reconciliation results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from perkhub_api.models.subscription import PaymentProviderEnum
from perkhub_api.services.identity import IdentityHint
from perkhub_api.services.subscriptions.intervals import BillingInterval


class PaymentEventKind(str, Enum):
    PAYMENT_CONFIRMED = "payment_confirmed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"


class ReconciliationOutcome(str, Enum):
    RECONCILED = "reconciled"
    ALREADY_RECONCILED = "already_reconciled"
    DEACTIVATED = "deactivated"
    PARKED_BUYER = "parked_buyer"
    PARKED_PARTNER = "parked_partner"
    MALFORMED = "malformed"


@dataclass(slots=True)
class PaymentEvent:
    """Provider-neutral view of a payment notification."""

    provider: PaymentProviderEnum
    kind: PaymentEventKind
    payment_reference: str
    external_event_id: str
    occurred_at: datetime
    provider_subscription_id: str | None = None
    buyer: IdentityHint = field(default_factory=IdentityHint)
    partner_id: str | None = None
    partner_link_id: str | None = None
    interval: BillingInterval | None = None
    period_end: datetime | None = None
    price_id: str | None = None
    plan_name: str | None = None
    amount: Decimal | None = None


@dataclass(slots=True)
class ReconciliationResult:
    outcome: ReconciliationOutcome
    subscription_id: UUID | None = None
    reason: str | None = None

    @property
    def parked(self) -> bool:
        return self.outcome in (ReconciliationOutcome.PARKED_BUYER, ReconciliationOutcome.PARKED_PARTNER)


__all__ = [
    "PaymentEvent",
    "PaymentEventKind",
    "ReconciliationOutcome",
    "ReconciliationResult",
]
