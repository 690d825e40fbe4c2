"""Subscription linking, checkout intents and member subscription listing."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from perkhub_api.api.dependencies.security import admin_api_key_dependency
from perkhub_api.api.errors import http_error_from
from perkhub_api.db.session import get_session
from perkhub_api.models.subscription import PaymentProviderEnum, Subscription
from perkhub_api.services.errors import EngineError
from perkhub_api.services.identity import IdentityHint
from perkhub_api.services.subscriptions import EntitlementReconciler, PartnerAssignment
from perkhub_api.services.vouchers.expiration import as_utc


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


class PartnerAssignmentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    partner_id: UUID = Field(alias="partnerId")
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")


class BatchLinkRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    member_id: UUID = Field(alias="memberId")
    partners: List[PartnerAssignmentRequest] = Field(default_factory=list)


class SubscriptionResponse(BaseModel):
    id: UUID
    memberId: UUID
    partnerId: UUID
    status: str
    paymentProvider: str
    paymentReference: Optional[str]
    planName: Optional[str]
    planInterval: Optional[str]
    planIntervalCount: Optional[int]
    amount: Optional[Decimal]
    expiresAt: Optional[datetime]
    reviewRequired: bool
    lapsed: Optional[bool] = None


class BatchLinkResponse(BaseModel):
    created: List[SubscriptionResponse]
    kept: List[UUID]
    deactivated: List[UUID]


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    member_id: Optional[str] = Field(default=None, alias="memberId")
    email: Optional[str] = None
    partner_id: Optional[str] = Field(default=None, alias="partnerId")
    partner_link_id: Optional[str] = Field(default=None, alias="partnerLinkId")
    provider: Literal["stripe", "lastlink"] = "stripe"

    @model_validator(mode="after")
    def _require_identifiers(self) -> "CheckoutRequest":
        if not (self.member_id or self.email):
            raise ValueError("memberId or email is required")
        if not (self.partner_id or self.partner_link_id):
            raise ValueError("partnerId or partnerLinkId is required")
        return self


class CheckoutResponse(BaseModel):
    subscriptionId: UUID
    status: str
    expiresAt: datetime


class PurgeResponse(BaseModel):
    purged: int


def _serialize_subscription(subscription: Subscription, *, lapsed: bool | None = None) -> SubscriptionResponse:
    return SubscriptionResponse(
        id=subscription.id,
        memberId=subscription.member_id,
        partnerId=subscription.partner_id,
        status=subscription.status.value,
        paymentProvider=subscription.payment_provider.value,
        paymentReference=subscription.payment_reference,
        planName=subscription.plan_name,
        planInterval=subscription.plan_interval.value if subscription.plan_interval else None,
        planIntervalCount=subscription.plan_interval_count,
        amount=subscription.amount,
        expiresAt=as_utc(subscription.expires_at),
        reviewRequired=bool(subscription.review_required),
        lapsed=lapsed,
    )


@router.post(
    "/batch",
    response_model=BatchLinkResponse,
    dependencies=[admin_api_key_dependency()],
)
async def batch_link_member(
    payload: BatchLinkRequest,
    db: AsyncSession = Depends(get_session),
) -> BatchLinkResponse:
    assignments = [PartnerAssignment(partner_id=item.partner_id, expires_at=item.expires_at) for item in payload.partners]
    try:
        result = await EntitlementReconciler(db).batch_link_member(payload.member_id, assignments)
    except EngineError as exc:
        raise http_error_from(exc) from exc
    return BatchLinkResponse(
        created=[_serialize_subscription(item) for item in result.created],
        kept=[item.id for item in result.kept],
        deactivated=[item.id for item in result.deactivated],
    )


@router.post("/checkout", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def begin_checkout(
    payload: CheckoutRequest,
    db: AsyncSession = Depends(get_session),
) -> CheckoutResponse:
    try:
        subscription = await EntitlementReconciler(db).begin_checkout(
            IdentityHint(document_id=payload.member_id, email=payload.email),
            provider=PaymentProviderEnum(payload.provider),
            partner_id=payload.partner_id,
            partner_link_id=payload.partner_link_id,
        )
    except EngineError as exc:
        raise http_error_from(exc) from exc
    return CheckoutResponse(
        subscriptionId=subscription.id,
        status=subscription.status.value,
        expiresAt=as_utc(subscription.expires_at),
    )


@router.post(
    "/checkout/purge",
    response_model=PurgeResponse,
    dependencies=[admin_api_key_dependency()],
)
async def purge_stale_checkouts(db: AsyncSession = Depends(get_session)) -> PurgeResponse:
    purged = await EntitlementReconciler(db).purge_stale_checkouts()
    return PurgeResponse(purged=purged)


@router.get("/members/{member_id}", response_model=List[SubscriptionResponse])
async def list_member_subscriptions(
    member_id: str,
    db: AsyncSession = Depends(get_session),
) -> List[SubscriptionResponse]:
    views = await EntitlementReconciler(db).list_member_subscriptions(member_id)
    return [_serialize_subscription(view.subscription, lapsed=view.lapsed) for view in views]
