"""Cooldown window between voucher generations for a member at one establishment."""

from __future__ import annotations

from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from perkhub_api.core.settings import settings
from perkhub_api.models.establishment import Establishment
from perkhub_api.models.voucher import GenerationThrottle, Voucher
from perkhub_api.services.errors import NotFoundError
from perkhub_api.services.vouchers.expiration import as_utc


class ThrottleGate:
    """Decides whether a (member, establishment) pair is outside its cooldown.

    The gate is advisory: two concurrent requests may both pass before either
    records its generation.
    """

    def __init__(self, session: AsyncSession, *, default_cooldown_hours: float | None = None) -> None:
        self._session = session
        self._default_cooldown_hours = (
            settings.voucher_default_cooldown_hours if default_cooldown_hours is None else default_cooldown_hours
        )

    async def can_generate(self, establishment_id: UUID, member_id: str, now: datetime) -> bool:
        return await self.next_available_at(establishment_id, member_id, now) is None

    async def next_available_at(self, establishment_id: UUID, member_id: str, now: datetime) -> datetime | None:
        """Return when the pair may generate again, or ``None`` if it may now."""

        cooldown = await self.cooldown_for(establishment_id)
        if cooldown <= timedelta(0):
            return None
        last_generated_at = await self.last_generated_at(establishment_id, member_id)
        if last_generated_at is None:
            return None
        available_at = last_generated_at + cooldown
        if as_utc(now) >= available_at:
            return None
        return available_at

    async def cooldown_for(self, establishment_id: UUID) -> timedelta:
        establishment = await self._session.get(Establishment, establishment_id)
        if establishment is None:
            raise NotFoundError("establishment", establishment_id)
        hours = establishment.voucher_cooldown_hours
        if hours is None:
            hours = self._default_cooldown_hours
        return timedelta(hours=max(float(hours), 0.0))

    async def last_generated_at(self, establishment_id: UUID, member_id: str) -> datetime | None:
        throttle = await self._get_throttle(establishment_id, member_id)
        if throttle is not None:
            return as_utc(throttle.last_generated_at)

        # Vouchers issued before throttle rows existed.
        stmt = select(func.max(Voucher.created_at)).where(
            Voucher.establishment_id == establishment_id,
            Voucher.member_id == str(member_id),
        )
        latest = (await self._session.execute(stmt)).scalar_one_or_none()
        return as_utc(latest)

    async def record_generation(
        self, establishment_id: UUID, member_id: str, generated_at: datetime
    ) -> GenerationThrottle:
        """Upsert the throttle row; the caller commits."""

        throttle = await self._get_throttle(establishment_id, member_id)
        if throttle is None:
            throttle = GenerationThrottle(
                establishment_id=establishment_id,
                member_id=str(member_id),
                last_generated_at=generated_at,
            )
            self._session.add(throttle)
        else:
            throttle.last_generated_at = generated_at
        await self._session.flush()
        return throttle

    async def _get_throttle(self, establishment_id: UUID, member_id: str) -> GenerationThrottle | None:
        stmt = select(GenerationThrottle).where(
            GenerationThrottle.establishment_id == establishment_id,
            GenerationThrottle.member_id == str(member_id),
        )
        return (await self._session.execute(stmt)).scalar_one_or_none()
