import pytest

from conftest import ALICE, MILESTONE_CONFIG
from referral_engine.config import settings

PERIODS = "/api/admin/referral/periods"


async def create_period(client, headers, **overrides) -> dict:
    body = {
        "name": "Launch quest",
        "strategy": "milestone_quest",
        "strategyConfig": MILESTONE_CONFIG,
        **overrides,
    }
    response = await client.post(PERIODS, json=body, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


@pytest.mark.asyncio
async def test_admin_disabled_without_key(client, monkeypatch):
    monkeypatch.setattr(settings, "admin_secret_key", "")
    response = await client.get(PERIODS, headers={"Authorization": "Bearer anything"})
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_admin_rejects_bad_key(client, admin_key):
    response = await client.get(PERIODS, headers={"Authorization": "Bearer wrong"})
    assert response.status_code == 401

    response = await client.get(PERIODS)
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_verify(client, admin_headers):
    response = await client.post("/api/admin/verify", headers=admin_headers)
    assert response.status_code == 200
    assert response.json() == {"valid": True}


@pytest.mark.asyncio
async def test_create_and_list_periods(client, admin_headers):
    created = await create_period(client, admin_headers)
    assert created["status"] == "draft"
    assert created["strategy"] == "milestone_quest"
    assert created["resetMode"] == "manual"

    response = await client.get(PERIODS, headers=admin_headers)
    data = response.json()
    assert data["count"] == 1
    assert data["periods"][0]["id"] == created["id"]


@pytest.mark.asyncio
async def test_create_period_validation(client, admin_headers):
    response = await client.post(
        PERIODS,
        json={"name": "Bad", "strategy": "revenue_share", "strategyConfig": {"sharePercentage": 75}},
        headers=admin_headers,
    )
    assert response.status_code == 400

    response = await client.post(
        PERIODS,
        json={"name": "Bad", "strategy": "revenue_share", "strategyConfig": {}, "color": "red"},
        headers=admin_headers,
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_activation_conflict(client, admin_headers):
    first = await create_period(client, admin_headers, name="One")
    second = await create_period(client, admin_headers, name="Two")

    response = await client.patch(f"{PERIODS}/{first['id']}/activate", headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["status"] == "active"

    response = await client.patch(f"{PERIODS}/{second['id']}/activate", headers=admin_headers)
    assert response.status_code == 409
    assert "already active" in response.json()["detail"]


@pytest.mark.asyncio
async def test_update_and_delete_draft(client, admin_headers):
    period = await create_period(client, admin_headers)

    response = await client.patch(f"{PERIODS}/{period['id']}", json={"name": "Renamed"}, headers=admin_headers)
    assert response.status_code == 200
    assert response.json()["name"] == "Renamed"

    response = await client.patch(
        f"{PERIODS}/{period['id']}", json={"strategy": "team_volume"}, headers=admin_headers
    )
    assert response.status_code == 400

    response = await client.delete(f"{PERIODS}/{period['id']}", headers=admin_headers)
    assert response.json() == {"deleted": True}

    response = await client.get(f"{PERIODS}/{period['id']}", headers=admin_headers)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_active_period_not_deleted(client, admin_headers):
    period = await create_period(client, admin_headers)
    await client.patch(f"{PERIODS}/{period['id']}/activate", headers=admin_headers)

    response = await client.delete(f"{PERIODS}/{period['id']}", headers=admin_headers)
    assert response.json() == {"deleted": False}


@pytest.mark.asyncio
async def test_manual_reset(client, admin_headers):
    period = await create_period(client, admin_headers)
    await client.patch(f"{PERIODS}/{period['id']}/activate", headers=admin_headers)

    response = await client.post(
        "/api/admin/referral/reset",
        json={"periodId": period["id"], "createNew": True},
        headers=admin_headers,
    )
    assert response.status_code == 200
    data = response.json()
    assert data["completedPeriod"]["status"] == "completed"
    assert data["newPeriod"]["status"] == "draft"
    assert data["newPeriod"]["name"] == "Launch quest (continued)"

    response = await client.patch(f"{PERIODS}/{period['id']}/complete", headers=admin_headers)
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_period_detail_includes_stats(client, admin_headers):
    period = await create_period(client, admin_headers)

    response = await client.get(f"{PERIODS}/{period['id']}", headers=admin_headers)

    assert response.status_code == 200
    assert response.json()["stats"] == {"totalReferrals": 0, "activeReferrals": 0, "usersWithBonuses": 0}


@pytest.mark.asyncio
async def test_set_trading_points(client, admin_headers):
    response = await client.post(
        "/api/admin/referral/trading-points",
        json={"address": ALICE.upper().replace("0X", "0x"), "points": 250},
        headers=admin_headers,
    )
    assert response.status_code == 200
    assert response.json() == {"address": ALICE, "points": 250}


@pytest.mark.asyncio
async def test_activity_rejects_bad_address(client, admin_headers):
    response = await client.post(
        "/api/admin/referral/activity",
        json={"address": "not-an-address", "amount": 5},
        headers=admin_headers,
    )
    assert response.status_code == 400
