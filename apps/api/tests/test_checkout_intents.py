from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from perkhub_api.models.subscription import PaymentProviderEnum, Subscription, SubscriptionStatusEnum
from perkhub_api.models.user import User, UserRoleEnum
from perkhub_api.services.errors import IdentityUnresolvableError, NotFoundError
from perkhub_api.services.identity import IdentityHint
from perkhub_api.services.subscriptions import EntitlementReconciler, PartnerAssignment


NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


async def _seed(session):
    member = User(id=uuid4(), email="member@example.com")
    partner = User(id=uuid4(), email="partner@example.com", role=UserRoleEnum.PARTNER.value)
    session.add_all([member, partner])
    await session.commit()
    return member.id, partner.id


@pytest.mark.asyncio
async def test_checkout_creates_initiated_record_hidden_from_listing(session_factory):
    async with session_factory() as session:
        member_id, partner_id = await _seed(session)
        reconciler = EntitlementReconciler(session)

        intent = await reconciler.begin_checkout(
            IdentityHint(email="MEMBER@example.com"),
            provider=PaymentProviderEnum.STRIPE,
            partner_id=str(partner_id),
            now=NOW,
        )

        assert intent.status == SubscriptionStatusEnum.INITIATED
        assert intent.member_id == member_id
        assert intent.payment_reference is None
        assert intent.expires_at == NOW + timedelta(minutes=60)
        assert await reconciler.list_member_subscriptions(str(member_id), now=NOW) == []


@pytest.mark.asyncio
async def test_checkout_rejects_unknown_member_and_partner(session_factory):
    async with session_factory() as session:
        member_id, partner_id = await _seed(session)
        reconciler = EntitlementReconciler(session)

        with pytest.raises(IdentityUnresolvableError):
            await reconciler.begin_checkout(
                IdentityHint(document_id="auth-unknown"),
                provider=PaymentProviderEnum.STRIPE,
                partner_id=str(partner_id),
                now=NOW,
            )

        with pytest.raises(NotFoundError):
            await reconciler.begin_checkout(
                IdentityHint(document_id=str(member_id)),
                provider=PaymentProviderEnum.STRIPE,
                partner_id=str(member_id),
                now=NOW,
            )


@pytest.mark.asyncio
async def test_purge_removes_only_stale_intents(session_factory):
    async with session_factory() as session:
        member_id, partner_id = await _seed(session)
        reconciler = EntitlementReconciler(session)
        await reconciler.begin_checkout(
            IdentityHint(document_id=str(member_id)),
            provider=PaymentProviderEnum.STRIPE,
            partner_id=str(partner_id),
            now=NOW,
        )
        fresh = await reconciler.begin_checkout(
            IdentityHint(document_id=str(member_id)),
            provider=PaymentProviderEnum.LASTLINK,
            partner_id=str(partner_id),
            now=NOW + timedelta(hours=2),
        )
        fresh_id = fresh.id
        await reconciler.batch_link_member(member_id, [PartnerAssignment(partner_id=partner_id)], now=NOW)

        purged = await reconciler.purge_stale_checkouts(now=NOW + timedelta(hours=2))

    assert purged == 1

    async with session_factory() as session:
        rows = (await session.execute(select(Subscription))).scalars().all()

    statuses = sorted((row.status.value, row.id == fresh_id) for row in rows)
    assert statuses == [("active", False), ("initiated", True)]
