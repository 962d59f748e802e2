import pytest

from conftest import ALICE, BOB, CAROL, MILESTONE_CONFIG

PERIODS = "/api/admin/referral/periods"


async def start_period(client, headers, **overrides) -> dict:
    body = {"name": "Launch quest", "strategy": "milestone_quest", "strategyConfig": MILESTONE_CONFIG, **overrides}
    period = (await client.post(PERIODS, json=body, headers=headers)).json()
    response = await client.patch(f"{PERIODS}/{period['id']}/activate", headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


async def sign_up(client, referrer: str, referee: str) -> dict:
    code = (await client.get(f"/api/referral/my-code/{referrer}")).json()["code"]
    response = await client.post("/api/referral/track-signup", json={"code": code, "address": referee})
    assert response.status_code == 200, response.text
    return response.json()


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_no_active_period(client):
    response = await client.get("/api/referral/active-period")
    assert response.json() == {"period": None}

    response = await client.get(f"/api/referral/{ALICE}/bonus")
    assert response.json() == {
        "address": ALICE,
        "periodId": None,
        "strategy": None,
        "totalBonus": 0,
        "breakdown": [],
    }


@pytest.mark.asyncio
async def test_active_period_info(client, admin_headers):
    period = await start_period(
        client,
        admin_headers,
        resetMode="scheduled",
        resetConfig={"schedule": {"frequency": "weekly", "dayOfWeek": 1}},
    )

    data = (await client.get("/api/referral/active-period")).json()["period"]

    assert data["id"] == period["id"]
    assert data["strategy"] == "milestone_quest"
    assert data["resetMode"] == "scheduled"
    assert data["nextResetAt"] is not None
    assert data["refereeBenefits"]["signupBonus"] == 100


@pytest.mark.asyncio
async def test_my_code(client):
    response = await client.get(f"/api/referral/my-code/{ALICE}")
    assert response.status_code == 200
    data = response.json()
    assert len(data["code"]) == 8
    assert data["shareUrl"].endswith(f"?ref={data['code']}")
    assert data["referralCount"] == 0

    again = (await client.get(f"/api/referral/my-code/{ALICE}")).json()
    assert again["code"] == data["code"]


@pytest.mark.asyncio
async def test_bad_address_rejected(client):
    response = await client.get("/api/referral/my-code/0x1234")
    assert response.status_code == 400

    response = await client.get("/api/referral/not-a-wallet/bonus")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_signup_and_bonus_flow(client, admin_headers):
    period = await start_period(client, admin_headers)

    signup = await sign_up(client, ALICE, BOB)
    assert signup["linked"] is True
    assert signup["link"]["status"] == "pending"
    assert signup["link"]["periodId"] == period["id"]

    first = (await client.get(f"/api/referral/{ALICE}/bonus")).json()
    assert first["periodId"] == period["id"]
    assert first["strategy"] == "milestone_quest"
    assert first["totalBonus"] == 100
    assert first["breakdown"][0]["sourceAddress"] == BOB
    assert first["breakdown"][0]["bonusType"] == "milestone"

    second = (await client.get(f"/api/referral/{ALICE}/bonus")).json()
    assert second["totalBonus"] == 100

    referrals = (await client.get(f"/api/referral/{ALICE}/referrals")).json()
    assert referrals["count"] == 1
    assert referrals["referrals"][0]["address"] == BOB


@pytest.mark.asyncio
async def test_signup_errors(client, admin_headers):
    await start_period(client, admin_headers)
    code = (await client.get(f"/api/referral/my-code/{ALICE}")).json()["code"]

    response = await client.post("/api/referral/track-signup", json={"code": code, "address": ALICE})
    assert response.status_code == 409

    response = await client.post("/api/referral/track-signup", json={"code": "ZZZZ9999", "address": BOB})
    assert response.status_code == 404

    await sign_up(client, ALICE, BOB)
    carol_code = (await client.get(f"/api/referral/my-code/{CAROL}")).json()["code"]
    response = await client.post("/api/referral/track-signup", json={"code": carol_code, "address": BOB})
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_activity_activates_link(client, admin_headers):
    await start_period(client, admin_headers)
    await sign_up(client, ALICE, BOB)

    response = await client.post(
        "/api/admin/referral/activity",
        json={"address": BOB, "amount": 42.5},
        headers=admin_headers,
    )

    data = response.json()
    assert data["tracked"] is True
    assert data["link"]["status"] == "active"
    assert data["link"]["lifetimeVolume"] == 42.5


@pytest.mark.asyncio
async def test_leaderboard_archived_after_complete(client, admin_headers):
    period = await start_period(client, admin_headers)
    await sign_up(client, ALICE, BOB)
    await client.post(
        "/api/admin/referral/trading-points",
        json={"address": ALICE, "points": 20},
        headers=admin_headers,
    )

    live = (await client.get("/api/referral/leaderboard")).json()
    assert live["archived"] is False
    assert live["entries"][0]["address"] == ALICE

    response = await client.patch(f"{PERIODS}/{period['id']}/complete", headers=admin_headers)
    assert response.status_code == 200

    board = (await client.get(f"/api/referral/leaderboard/{period['id']}")).json()
    assert board["archived"] is True
    assert board["entries"][0]["points"] == 120

    archives = (await client.get("/api/referral/archives")).json()
    assert archives["count"] == 1
    assert archives["archives"][0]["periodId"] == period["id"]

    archive = (await client.get(f"/api/referral/archives/{period['id']}")).json()
    assert archive["stats"]["topReferrer"] == ALICE


@pytest.mark.asyncio
async def test_unknown_period_and_archive(client):
    assert (await client.get("/api/referral/leaderboard/9999")).status_code == 404
    assert (await client.get("/api/referral/archives/9999")).status_code == 404
    assert (await client.get(f"/api/referral/{ALICE}/bonus?periodId=9999")).status_code == 404
