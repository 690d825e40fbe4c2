"""Entitlement models: subscriptions, attribution links and the local plan catalog."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    false,
    func,
    true,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from perkhub_api.db.base import Base


class SubscriptionStatusEnum(str, Enum):
    INITIATED = "initiated"
    ACTIVE = "active"
    INACTIVE = "inactive"


class PaymentProviderEnum(str, Enum):
    STRIPE = "stripe"
    LASTLINK = "lastlink"
    MANUAL = "manual"


class BillingIntervalUnitEnum(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [item.value for item in enum_cls]


class Subscription(Base):
    """Entitlement granting a member access to a partner's discounts."""

    __tablename__ = "subscriptions"
    __table_args__ = (
        UniqueConstraint(
            "member_id",
            "partner_id",
            "payment_reference",
            name="uq_subscriptions_member_partner_reference",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    member_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    partner_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    status = Column(
        SqlEnum(SubscriptionStatusEnum, name="subscription_status_enum", values_callable=_enum_values),
        nullable=False,
        default=SubscriptionStatusEnum.INITIATED,
    )
    payment_provider = Column(
        SqlEnum(PaymentProviderEnum, name="payment_provider_enum", values_callable=_enum_values),
        nullable=False,
    )
    payment_reference = Column(String(128), nullable=True, index=True)
    provider_subscription_id = Column(String(128), nullable=True, index=True)
    partner_link_id = Column(UUID(as_uuid=True), ForeignKey("partner_links.id", ondelete="SET NULL"), nullable=True)
    plan_name = Column(String, nullable=True)
    plan_interval = Column(
        SqlEnum(BillingIntervalUnitEnum, name="billing_interval_unit_enum", values_callable=_enum_values),
        nullable=True,
    )
    plan_interval_count = Column(Integer, nullable=True)
    amount = Column(Numeric(12, 2), nullable=True)
    review_required = Column(Boolean, nullable=False, default=False, server_default=false())
    review_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)

    partner_link = relationship("PartnerLink")


class PartnerLink(Base):
    """Attribution link a partner shares to sell memberships."""

    __tablename__ = "partner_links"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    partner_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    code = Column(String(32), nullable=False, unique=True)
    name = Column(String, nullable=True)
    price_id = Column(String(128), nullable=True)
    clicks = Column(Integer, nullable=False, default=0, server_default="0")
    conversions = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class SubscriptionPlan(Base):
    """Local plan catalog consulted before asking the payment provider."""

    __tablename__ = "subscription_plans"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    price_id = Column(String(128), nullable=False, unique=True)
    provider = Column(
        SqlEnum(PaymentProviderEnum, name="payment_provider_enum", values_callable=_enum_values),
        nullable=False,
    )
    name = Column(String, nullable=False)
    interval = Column(
        SqlEnum(BillingIntervalUnitEnum, name="billing_interval_unit_enum", values_callable=_enum_values),
        nullable=False,
    )
    interval_count = Column(Integer, nullable=False, default=1, server_default="1")
    amount = Column(Numeric(12, 2), nullable=True)
    active = Column(Boolean, nullable=False, default=True, server_default=true())
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
