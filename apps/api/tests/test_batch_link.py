from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from perkhub_api.models.subscription import PaymentProviderEnum, Subscription, SubscriptionStatusEnum
from perkhub_api.models.user import User, UserRoleEnum
from perkhub_api.services.errors import NotFoundError
from perkhub_api.services.subscriptions import EntitlementReconciler, PartnerAssignment


NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


async def _seed(session):
    member = User(id=uuid4(), email="member@example.com")
    partners = [
        User(id=uuid4(), email=f"partner{index}@example.com", role=UserRoleEnum.PARTNER.value)
        for index in range(3)
    ]
    session.add_all([member, *partners])
    await session.commit()
    return member.id, [partner.id for partner in partners]


@pytest.mark.asyncio
async def test_batch_link_replaces_active_partner_set(session_factory):
    async with session_factory() as session:
        member_id, (first, second, third) = await _seed(session)
        reconciler = EntitlementReconciler(session)

        initial = await reconciler.batch_link_member(
            member_id,
            [PartnerAssignment(partner_id=first), PartnerAssignment(partner_id=second)],
            now=NOW,
        )
        assert {item.partner_id for item in initial.created} == {first, second}
        assert all(item.payment_provider == PaymentProviderEnum.MANUAL for item in initial.created)
        assert all(item.payment_reference.startswith("manual_") for item in initial.created)

        new_expiry = NOW + timedelta(days=90)
        result = await reconciler.batch_link_member(
            member_id,
            [
                PartnerAssignment(partner_id=second, expires_at=new_expiry),
                PartnerAssignment(partner_id=third),
            ],
            now=NOW + timedelta(days=1),
        )

        assert [item.partner_id for item in result.created] == [third]
        assert [item.partner_id for item in result.kept] == [second]
        assert [item.partner_id for item in result.deactivated] == [first]

    async with session_factory() as session:
        stmt = select(Subscription).where(Subscription.member_id == member_id)
        rows = {row.partner_id: row for row in (await session.execute(stmt)).scalars().all()}

    assert len(rows) == 3
    assert rows[first].status == SubscriptionStatusEnum.INACTIVE
    assert rows[first].canceled_at is not None
    assert rows[second].status == SubscriptionStatusEnum.ACTIVE
    assert rows[second].expires_at.replace(tzinfo=timezone.utc) == new_expiry
    assert rows[third].status == SubscriptionStatusEnum.ACTIVE


@pytest.mark.asyncio
async def test_empty_assignment_list_deactivates_everything(session_factory):
    async with session_factory() as session:
        member_id, (first, _, _) = await _seed(session)
        reconciler = EntitlementReconciler(session)
        await reconciler.batch_link_member(member_id, [PartnerAssignment(partner_id=first)], now=NOW)

        result = await reconciler.batch_link_member(member_id, [], now=NOW)

    assert len(result.deactivated) == 1
    assert result.created == []


@pytest.mark.asyncio
async def test_batch_link_validates_roles(session_factory):
    async with session_factory() as session:
        member_id, (first, _, _) = await _seed(session)
        reconciler = EntitlementReconciler(session)

        with pytest.raises(NotFoundError) as excinfo:
            await reconciler.batch_link_member(first, [], now=NOW)
        assert excinfo.value.entity == "member"

        with pytest.raises(NotFoundError) as excinfo:
            await reconciler.batch_link_member(member_id, [PartnerAssignment(partner_id=member_id)], now=NOW)
        assert excinfo.value.entity == "partner"

        with pytest.raises(NotFoundError):
            await reconciler.batch_link_member(uuid4(), [], now=NOW)
