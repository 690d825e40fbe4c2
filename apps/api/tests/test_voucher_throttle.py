from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from perkhub_api.models.establishment import Establishment
from perkhub_api.models.user import User, UserRoleEnum
from perkhub_api.models.voucher import Voucher, VoucherStatusEnum
from perkhub_api.services.errors import NotFoundError
from perkhub_api.services.vouchers import ThrottleGate


NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


async def _establishment(session, *, cooldown_hours=None) -> Establishment:
    partner = User(id=uuid4(), email=f"partner-{uuid4().hex[:8]}@example.com", role=UserRoleEnum.PARTNER.value)
    session.add(partner)
    establishment = Establishment(
        id=uuid4(),
        partner_id=partner.id,
        name="Cafe Central",
        voucher_cooldown_hours=cooldown_hours,
    )
    session.add(establishment)
    await session.commit()
    return establishment


@pytest.mark.asyncio
async def test_first_generation_is_allowed(session_factory):
    async with session_factory() as session:
        establishment = await _establishment(session, cooldown_hours=12)
        gate = ThrottleGate(session)

        assert await gate.can_generate(establishment.id, "member-1", NOW)
        assert await gate.next_available_at(establishment.id, "member-1", NOW) is None


@pytest.mark.asyncio
async def test_cooldown_blocks_until_window_passes(session_factory):
    async with session_factory() as session:
        establishment = await _establishment(session, cooldown_hours=12)
        gate = ThrottleGate(session)
        await gate.record_generation(establishment.id, "member-1", NOW)
        await session.commit()

        next_at = await gate.next_available_at(establishment.id, "member-1", NOW + timedelta(hours=1))
        assert next_at == NOW + timedelta(hours=12)
        assert not await gate.can_generate(establishment.id, "member-1", NOW + timedelta(hours=11, minutes=59))
        assert await gate.can_generate(establishment.id, "member-1", NOW + timedelta(hours=12))
        # Other members are not affected.
        assert await gate.can_generate(establishment.id, "member-2", NOW + timedelta(hours=1))


@pytest.mark.asyncio
async def test_zero_cooldown_disables_throttle(session_factory):
    async with session_factory() as session:
        establishment = await _establishment(session, cooldown_hours=0)
        gate = ThrottleGate(session)
        await gate.record_generation(establishment.id, "member-1", NOW)
        await session.commit()

        assert await gate.can_generate(establishment.id, "member-1", NOW)


@pytest.mark.asyncio
async def test_default_cooldown_applies_when_establishment_has_none(session_factory):
    async with session_factory() as session:
        establishment = await _establishment(session)
        gate = ThrottleGate(session, default_cooldown_hours=6)

        assert await gate.cooldown_for(establishment.id) == timedelta(hours=6)


@pytest.mark.asyncio
async def test_vouchers_without_throttle_rows_still_count(session_factory):
    async with session_factory() as session:
        establishment = await _establishment(session, cooldown_hours=24)
        session.add(
            Voucher(
                code="LEG001",
                establishment_id=establishment.id,
                member_id="member-legacy",
                status=VoucherStatusEnum.USED,
                created_at=NOW - timedelta(hours=2),
                updated_at=NOW - timedelta(hours=2),
                expires_at=NOW + timedelta(hours=22),
            )
        )
        await session.commit()

        gate = ThrottleGate(session)
        assert await gate.last_generated_at(establishment.id, "member-legacy") == NOW - timedelta(hours=2)
        assert await gate.next_available_at(establishment.id, "member-legacy", NOW) == NOW + timedelta(hours=22)


@pytest.mark.asyncio
async def test_unknown_establishment_raises(session_factory):
    async with session_factory() as session:
        with pytest.raises(NotFoundError):
            await ThrottleGate(session).next_available_at(uuid4(), "member-1", NOW)
