from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from perkhub_api.core.settings import settings
from perkhub_api.models.user import User, UserRoleEnum


async def _seed(session_factory):
    async with session_factory() as session:
        member = User(id=uuid4(), email="member@example.com")
        first = User(id=uuid4(), email="first.partner@example.com", role=UserRoleEnum.PARTNER.value)
        second = User(id=uuid4(), email="second.partner@example.com", role=UserRoleEnum.PARTNER.value)
        session.add_all([member, first, second])
        await session.commit()
        return member.id, first.id, second.id


@pytest.mark.asyncio
async def test_batch_link_endpoint_requires_admin_key(app_with_db, monkeypatch):
    app, session_factory = app_with_db
    monkeypatch.setattr(settings, "admin_api_key", "admin-secret")
    member_id, first_id, second_id = await _seed(session_factory)
    body = {"memberId": str(member_id), "partners": [{"partnerId": str(first_id)}]}

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        unauthorized = await client.post("/api/v1/subscriptions/batch", json=body)
        created = await client.post("/api/v1/subscriptions/batch", json=body, headers={"X-API-Key": "admin-secret"})
        replaced = await client.post(
            "/api/v1/subscriptions/batch",
            json={
                "memberId": str(member_id),
                "partners": [{"partnerId": str(second_id), "expiresAt": "2030-01-01T00:00:00Z"}],
            },
            headers={"X-API-Key": "admin-secret"},
        )
        listing = await client.get(f"/api/v1/subscriptions/members/{member_id}")

    assert unauthorized.status_code == 401
    assert created.status_code == 200
    first_subscription = created.json()["created"][0]
    assert first_subscription["partnerId"] == str(first_id)
    assert first_subscription["paymentProvider"] == "manual"

    assert replaced.status_code == 200
    assert replaced.json()["deactivated"] == [first_subscription["id"]]
    assert len(replaced.json()["created"]) == 1

    by_partner = {item["partnerId"]: item for item in listing.json()}
    assert by_partner[str(first_id)]["status"] == "inactive"
    assert by_partner[str(first_id)]["lapsed"] is True
    assert by_partner[str(second_id)]["status"] == "active"
    assert by_partner[str(second_id)]["lapsed"] is False


@pytest.mark.asyncio
async def test_batch_link_unknown_partner_is_404(app_with_db, monkeypatch):
    app, session_factory = app_with_db
    monkeypatch.setattr(settings, "admin_api_key", "")
    member_id, _, _ = await _seed(session_factory)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            "/api/v1/subscriptions/batch",
            json={"memberId": str(member_id), "partners": [{"partnerId": str(uuid4())}]},
        )

    assert response.status_code == 404
    assert response.json()["detail"]["entity"] == "partner"


@pytest.mark.asyncio
async def test_checkout_and_purge_endpoints(app_with_db, monkeypatch):
    app, session_factory = app_with_db
    monkeypatch.setattr(settings, "admin_api_key", "")
    member_id, first_id, _ = await _seed(session_factory)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        created = await client.post(
            "/api/v1/subscriptions/checkout",
            json={"memberId": str(member_id), "partnerId": str(first_id), "provider": "lastlink"},
        )
        invalid = await client.post("/api/v1/subscriptions/checkout", json={"memberId": str(member_id)})
        unknown_member = await client.post(
            "/api/v1/subscriptions/checkout",
            json={"email": "ghost@example.com", "partnerId": str(first_id)},
        )
        purge = await client.post("/api/v1/subscriptions/checkout/purge")

    assert created.status_code == 201
    assert created.json()["status"] == "initiated"
    assert invalid.status_code == 422
    assert unknown_member.status_code == 422
    assert unknown_member.json()["detail"]["reason"] == "identity_unresolvable"
    assert purge.status_code == 200
    assert purge.json() == {"purged": 0}
