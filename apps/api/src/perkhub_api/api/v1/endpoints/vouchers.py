"""Voucher generation, validation and check-in endpoints."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from perkhub_api.api.dependencies.session import require_operator_session
from perkhub_api.api.errors import http_error_from
from perkhub_api.db.session import get_session
from perkhub_api.models.user import User
from perkhub_api.models.voucher import Voucher
from perkhub_api.services.errors import EngineError
from perkhub_api.services.vouchers import ThrottleGate, VoucherStateMachine
from perkhub_api.services.vouchers.expiration import as_utc


router = APIRouter(prefix="/vouchers", tags=["vouchers"])


class GenerateVoucherRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    establishment_id: UUID = Field(alias="establishmentId")
    member_id: str = Field(alias="memberId", min_length=1, max_length=128)


class GenerateVoucherResponse(BaseModel):
    code: str
    expiresAt: datetime


class CooldownResponse(BaseModel):
    canGenerate: bool
    nextAvailableAt: Optional[datetime]


class VoucherCodeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str = Field(min_length=1, max_length=32)
    establishment_id: Optional[UUID] = Field(default=None, alias="establishmentId")


class VoucherResponse(BaseModel):
    id: UUID
    code: str
    status: str
    establishmentId: UUID
    memberId: str
    createdAt: datetime
    expiresAt: datetime
    verifiedAt: Optional[datetime]
    usedAt: Optional[datetime]


class MemberSummaryResponse(BaseModel):
    id: UUID
    name: Optional[str]
    email: str
    phoneNumber: Optional[str]
    photoUrl: Optional[str]


class EstablishmentSummaryResponse(BaseModel):
    id: UUID
    name: str
    discountDescription: Optional[str]


class ValidateVoucherResponse(BaseModel):
    voucher: VoucherResponse
    member: Optional[MemberSummaryResponse]
    establishment: EstablishmentSummaryResponse


class CheckInResponse(BaseModel):
    ok: bool


def _serialize_voucher(voucher: Voucher, *, status_override: str | None = None) -> VoucherResponse:
    return VoucherResponse(
        id=voucher.id,
        code=voucher.code,
        status=status_override or voucher.status.value,
        establishmentId=voucher.establishment_id,
        memberId=voucher.member_id,
        createdAt=as_utc(voucher.created_at),
        expiresAt=as_utc(voucher.expires_at),
        verifiedAt=as_utc(voucher.verified_at),
        usedAt=as_utc(voucher.used_at),
    )


@router.post("", response_model=GenerateVoucherResponse, status_code=status.HTTP_201_CREATED)
async def generate_voucher(
    payload: GenerateVoucherRequest,
    db: AsyncSession = Depends(get_session),
) -> GenerateVoucherResponse:
    try:
        voucher = await VoucherStateMachine(db).generate(
            establishment_id=payload.establishment_id,
            member_id=payload.member_id,
        )
    except EngineError as exc:
        raise http_error_from(exc) from exc
    return GenerateVoucherResponse(code=voucher.code, expiresAt=as_utc(voucher.expires_at))


@router.get("/cooldown", response_model=CooldownResponse)
async def voucher_cooldown(
    establishment_id: UUID = Query(..., alias="establishmentId"),
    member_id: str = Query(..., alias="memberId", min_length=1),
    db: AsyncSession = Depends(get_session),
) -> CooldownResponse:
    try:
        next_available_at = await ThrottleGate(db).next_available_at(
            establishment_id, member_id, datetime.now(timezone.utc)
        )
    except EngineError as exc:
        raise http_error_from(exc) from exc
    return CooldownResponse(canGenerate=next_available_at is None, nextAvailableAt=next_available_at)


@router.post("/validate", response_model=ValidateVoucherResponse)
async def validate_voucher(
    payload: VoucherCodeRequest,
    operator: User = Depends(require_operator_session),
    db: AsyncSession = Depends(get_session),
) -> ValidateVoucherResponse:
    try:
        validation = await VoucherStateMachine(db).validate(
            code=payload.code,
            operator_id=str(operator.id),
            establishment_id=payload.establishment_id,
        )
    except EngineError as exc:
        raise http_error_from(exc) from exc

    member = validation.member
    establishment = validation.establishment
    return ValidateVoucherResponse(
        voucher=_serialize_voucher(validation.voucher),
        member=(
            MemberSummaryResponse(
                id=member.id,
                name=member.name,
                email=member.email,
                phoneNumber=member.phone_number,
                photoUrl=member.photo_url,
            )
            if member
            else None
        ),
        establishment=EstablishmentSummaryResponse(
            id=establishment.id,
            name=establishment.name,
            discountDescription=establishment.discount_description,
        ),
    )


@router.post("/check-in", response_model=CheckInResponse)
async def check_in_voucher(
    payload: VoucherCodeRequest,
    operator: User = Depends(require_operator_session),
    db: AsyncSession = Depends(get_session),
) -> CheckInResponse:
    try:
        await VoucherStateMachine(db).check_in(
            code=payload.code,
            operator_id=str(operator.id),
            establishment_id=payload.establishment_id,
        )
    except EngineError as exc:
        raise http_error_from(exc) from exc
    return CheckInResponse(ok=True)


@router.get("/members/{member_id}", response_model=List[VoucherResponse])
async def list_member_vouchers(
    member_id: str,
    db: AsyncSession = Depends(get_session),
) -> List[VoucherResponse]:
    views = await VoucherStateMachine(db).list_member_vouchers(member_id)
    return [_serialize_voucher(view.voucher, status_override=view.effective_status.value) for view in views]
