"""Voucher lifecycle: generation, validation, check-in and lazy expiration."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

from loguru import logger
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from perkhub_api.core.settings import settings
from perkhub_api.models.establishment import Establishment, EstablishmentStatusEnum
from perkhub_api.models.notification import Notification, NotificationCategoryEnum
from perkhub_api.models.voucher import Voucher, VoucherStatusEnum
from perkhub_api.services.errors import (
    EngineError,
    InvalidStateError,
    NotFoundError,
    ThrottledError,
    TransactionConflictError,
)
from perkhub_api.services.identity import IdentityHint, IdentityResolver, IdentitySummary, ResolvedIdentity
from perkhub_api.services.vouchers.expiration import effective_voucher_status, is_expired
from perkhub_api.services.vouchers.throttle import ThrottleGate


@dataclass(slots=True)
class EstablishmentSummary:
    id: UUID
    name: str
    discount_description: str | None


@dataclass(slots=True)
class VoucherValidation:
    """Validated voucher enriched for the operator screen."""

    voucher: Voucher
    member: IdentitySummary | None
    establishment: EstablishmentSummary


@dataclass(slots=True)
class VoucherView:
    voucher: Voucher
    effective_status: VoucherStatusEnum


class VoucherStateMachine:
    """Moves vouchers forward through pending -> verified -> used.

    Any open voucher whose ``expires_at`` has passed is moved to ``expired`` the
    first time a write path touches it. Read paths only report the effective
    status.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        resolver: IdentityResolver | None = None,
        throttle: ThrottleGate | None = None,
    ) -> None:
        self._session = session
        self._resolver = resolver or IdentityResolver(session)
        self._throttle = throttle or ThrottleGate(session)

    async def generate(self, *, establishment_id: UUID, member_id: str, now: datetime | None = None) -> Voucher:
        """Issue a pending voucher if the establishment is open and the cooldown has passed."""

        now = now or datetime.now(timezone.utc)
        member_id = str(member_id)
        establishment = await self._get_establishment(establishment_id)
        if establishment.status != EstablishmentStatusEnum.ACTIVE:
            raise InvalidStateError("establishment_inactive", f"Establishment {establishment_id} is not active")

        next_available_at = await self._throttle.next_available_at(establishment.id, member_id, now)
        if next_available_at is not None:
            logger.info(
                "Voucher generation throttled",
                establishment_id=str(establishment.id),
                member_id=member_id,
                next_available_at=next_available_at.isoformat(),
            )
            raise ThrottledError(next_available_at)

        identity = await self._resolver.resolve(IdentityHint(document_id=member_id))
        expiration_hours = establishment.voucher_expiration_hours
        if expiration_hours is None:
            expiration_hours = settings.voucher_default_expiration_hours

        voucher = Voucher(
            code=await self._generate_unique_code(),
            establishment_id=establishment.id,
            member_id=member_id,
            member_email=identity.user.email if identity.user is not None else None,
            status=VoucherStatusEnum.PENDING,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(hours=float(expiration_hours)),
        )
        self._session.add(voucher)
        await self._throttle.record_generation(establishment.id, member_id, now)
        try:
            await self._session.commit()
        except IntegrityError as exc:
            await self._session.rollback()
            raise TransactionConflictError("Voucher code collided with a concurrent generation") from exc

        logger.info(
            "Voucher generated",
            voucher_id=str(voucher.id),
            establishment_id=str(establishment.id),
            member_id=member_id,
        )
        await self._apply_repair(identity, voucher)
        return voucher

    async def validate(
        self,
        *,
        code: str,
        operator_id: str,
        establishment_id: UUID | None = None,
        now: datetime | None = None,
    ) -> VoucherValidation:
        """Mark a pending voucher as verified and return the operator view."""

        now = now or datetime.now(timezone.utc)
        voucher = await self._get_by_code(code)
        establishment = await self._get_establishment(voucher.establishment_id)
        self._ensure_scope(voucher, establishment, operator_id, establishment_id)
        summary = EstablishmentSummary(
            id=establishment.id,
            name=establishment.name,
            discount_description=establishment.discount_description,
        )
        await self._expire_if_due(voucher, now)
        self._ensure_open(voucher)

        if voucher.status == VoucherStatusEnum.PENDING:
            stmt = (
                update(Voucher)
                .where(Voucher.id == voucher.id, Voucher.status == VoucherStatusEnum.PENDING)
                .values(
                    status=VoucherStatusEnum.VERIFIED,
                    verified_at=now,
                    verified_by=operator_id,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            result = await self._session.execute(stmt)
            if result.rowcount == 0:
                await self._session.rollback()
            else:
                await self._session.commit()
                logger.info("Voucher verified", voucher_id=str(voucher.id), operator_id=operator_id)
            await self._session.refresh(voucher)
            # A concurrent validator may have won; it is only a failure if the voucher moved past verified.
            self._ensure_open(voucher)

        identity = await self._resolver.resolve(
            IdentityHint(document_id=voucher.member_id, email=voucher.member_email)
        )
        member = self._resolver.describe(identity)
        await self._apply_repair(identity, voucher)
        return VoucherValidation(voucher=voucher, member=member, establishment=summary)

    async def check_in(
        self,
        *,
        code: str,
        operator_id: str,
        establishment_id: UUID | None = None,
        now: datetime | None = None,
    ) -> Voucher:
        """Consume a verified voucher and queue its rating request in one transaction."""

        now = now or datetime.now(timezone.utc)
        voucher = await self._load_for_update(code)
        try:
            establishment = await self._get_establishment(voucher.establishment_id)
            self._ensure_scope(voucher, establishment, operator_id, establishment_id)
            await self._expire_if_due(voucher, now)
            self._ensure_open(voucher)
            if voucher.status != VoucherStatusEnum.VERIFIED:
                raise InvalidStateError("not_verified", f"Voucher {code} has not been validated")
        except EngineError:
            # Release the row lock taken by _load_for_update.
            await self._session.rollback()
            raise

        stmt = (
            update(Voucher)
            .where(Voucher.id == voucher.id, Voucher.status == VoucherStatusEnum.VERIFIED)
            .values(status=VoucherStatusEnum.USED, used_at=now, used_by=operator_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            await self._session.rollback()
            raise InvalidStateError("already_used", f"Voucher {code} was already checked in")

        self._session.add(
            Notification(
                category=NotificationCategoryEnum.RATING_REQUEST,
                voucher_id=voucher.id,
                member_id=voucher.member_id,
                establishment_id=voucher.establishment_id,
                created_at=now,
            )
        )
        try:
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise TransactionConflictError(f"Check-in for voucher {code} could not be committed") from exc

        await self._session.refresh(voucher)
        logger.info(
            "Voucher checked in",
            voucher_id=str(voucher.id),
            establishment_id=str(voucher.establishment_id),
            operator_id=operator_id,
        )
        return voucher

    async def list_member_vouchers(self, member_id: str, *, now: datetime | None = None) -> list[VoucherView]:
        """Vouchers stored under any identifier the member is known by, newest first."""

        now = now or datetime.now(timezone.utc)
        identity = await self._resolver.resolve(IdentityHint(document_id=str(member_id)))
        reference_ids = identity.reference_ids() | {str(member_id)}
        clauses = [Voucher.member_id.in_(sorted(reference_ids))]
        if identity.user is not None:
            clauses.append(Voucher.member_email == identity.user.email)
        stmt = select(Voucher).where(or_(*clauses)).order_by(Voucher.created_at.desc())
        vouchers = (await self._session.execute(stmt)).scalars().all()
        return [VoucherView(voucher=item, effective_status=effective_voucher_status(item, now)) for item in vouchers]

    async def list_establishment_vouchers(
        self, establishment_id: UUID, *, now: datetime | None = None
    ) -> list[VoucherView]:
        now = now or datetime.now(timezone.utc)
        stmt = (
            select(Voucher)
            .where(Voucher.establishment_id == establishment_id)
            .order_by(Voucher.created_at.desc())
        )
        vouchers = (await self._session.execute(stmt)).scalars().all()
        return [VoucherView(voucher=item, effective_status=effective_voucher_status(item, now)) for item in vouchers]

    async def _expire_if_due(self, voucher: Voucher, now: datetime) -> None:
        if voucher.status not in (VoucherStatusEnum.PENDING, VoucherStatusEnum.VERIFIED):
            return
        if not is_expired(voucher.expires_at, now):
            return
        stmt = (
            update(Voucher)
            .where(
                Voucher.id == voucher.id,
                Voucher.status.in_([VoucherStatusEnum.PENDING, VoucherStatusEnum.VERIFIED]),
            )
            .values(status=VoucherStatusEnum.EXPIRED, expired_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.commit()
        await self._session.refresh(voucher)
        logger.info("Voucher expired on access", voucher_id=str(voucher.id), status=voucher.status.value)

    def _ensure_open(self, voucher: Voucher) -> None:
        if voucher.status == VoucherStatusEnum.USED:
            raise InvalidStateError("already_used", f"Voucher {voucher.code} was already checked in")
        if voucher.status == VoucherStatusEnum.EXPIRED:
            raise InvalidStateError("expired", f"Voucher {voucher.code} has expired")

    def _ensure_scope(
        self,
        voucher: Voucher,
        establishment: Establishment,
        operator_id: str,
        establishment_id: UUID | None,
    ) -> None:
        if establishment_id is not None and voucher.establishment_id != establishment_id:
            raise InvalidStateError("wrong_establishment", f"Voucher {voucher.code} belongs to another establishment")
        if establishment.operator_id is not None and str(establishment.operator_id) != str(operator_id):
            raise InvalidStateError("wrong_establishment", f"Operator {operator_id} does not run this establishment")

    async def _get_by_code(self, code: str) -> Voucher:
        stmt = select(Voucher).where(Voucher.code == code)
        voucher = (await self._session.execute(stmt)).scalar_one_or_none()
        if voucher is None:
            raise NotFoundError("voucher", code)
        return voucher

    async def _load_for_update(self, code: str) -> Voucher:
        stmt = (
            select(Voucher)
            .where(Voucher.code == code)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        voucher = (await self._session.execute(stmt)).scalar_one_or_none()
        if voucher is None:
            raise NotFoundError("voucher", code)
        return voucher

    async def _get_establishment(self, establishment_id: UUID) -> Establishment:
        establishment = await self._session.get(Establishment, establishment_id)
        if establishment is None:
            raise NotFoundError("establishment", establishment_id)
        return establishment

    async def _generate_unique_code(self) -> str:
        alphabet = settings.voucher_code_alphabet
        for _ in range(settings.voucher_code_max_attempts):
            candidate = "".join(secrets.choice(alphabet) for _ in range(settings.voucher_code_length))
            stmt = select(Voucher.id).where(Voucher.code == candidate)
            if (await self._session.execute(stmt)).scalar_one_or_none() is None:
                return candidate
        raise TransactionConflictError("Unable to allocate a unique voucher code")

    async def _apply_repair(self, identity: ResolvedIdentity, voucher: Voucher) -> None:
        if identity.repair is None:
            return
        await self._resolver.apply_repairs([identity.repair])
        # A failed repair rolls back and expires everything loaded in the session.
        await self._session.refresh(voucher)
