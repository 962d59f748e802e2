"""Tests for live leaderboards and frozen archives."""

import pytest

from conftest import ALICE, BOB, CAROL, DAVE
from referral_engine.core.exceptions import NotFoundError
from referral_engine.services.leaderboard_service import LeaderboardService
from referral_engine.services.link_service import LinkService
from referral_engine.services.period_service import PeriodService
from referral_engine.services.trading_points import StoredTradingPointsSource


@pytest.mark.asyncio
async def test_live_rankings_combine_trading_and_bonus_points(test_session, active_milestone_period):
    links = LinkService(test_session)
    await links.create_referral_link(active_milestone_period.id, ALICE, BOB, "CODE2345")
    await links.create_referral_link(active_milestone_period.id, CAROL, DAVE, "CODE6789")
    points = StoredTradingPointsSource(test_session)
    await points.set_trading_points(ALICE, 50)
    await points.set_trading_points(CAROL, 300)
    await PeriodService(test_session, trading_points=points).complete_period(active_milestone_period.id)

    rankings = await LeaderboardService(test_session, points).compute_rankings(active_milestone_period.id)

    assert [row["address"] for row in rankings] == [CAROL, ALICE]
    assert rankings[0] == {
        "address": CAROL,
        "points": 400,
        "tradingPoints": 300,
        "bonusPoints": 100,
        "referrals": 1,
        "rank": 1,
    }
    assert rankings[1]["points"] == 150
    assert rankings[1]["rank"] == 2


@pytest.mark.asyncio
async def test_ties_break_by_address(test_session, active_milestone_period):
    links = LinkService(test_session)
    await links.create_referral_link(active_milestone_period.id, CAROL, DAVE, "CODE6789")
    await links.create_referral_link(active_milestone_period.id, ALICE, BOB, "CODE2345")

    rankings = await LeaderboardService(test_session).compute_rankings(active_milestone_period.id)

    assert [row["address"] for row in rankings] == [ALICE, CAROL]
    assert [row["rank"] for row in rankings] == [1, 2]


@pytest.mark.asyncio
async def test_active_leaderboard(test_session, active_milestone_period):
    await LinkService(test_session).create_referral_link(active_milestone_period.id, ALICE, BOB, "CODE2345")

    board = await LeaderboardService(test_session).get_leaderboard()

    assert board["periodId"] == active_milestone_period.id
    assert board["archived"] is False
    assert [entry["address"] for entry in board["entries"]] == [ALICE]


@pytest.mark.asyncio
async def test_no_active_period_gives_empty_board(test_session):
    board = await LeaderboardService(test_session).get_leaderboard()
    assert board["periodId"] is None
    assert board["entries"] == []


@pytest.mark.asyncio
async def test_completed_period_served_from_archive(test_session, active_milestone_period):
    await LinkService(test_session).create_referral_link(active_milestone_period.id, ALICE, BOB, "CODE2345")
    points = StoredTradingPointsSource(test_session)
    await points.set_trading_points(ALICE, 10)
    await PeriodService(test_session, trading_points=points).complete_period(active_milestone_period.id)

    service = LeaderboardService(test_session, points)
    archive = await service.get_archive(active_milestone_period.id)
    assert archive.period_id == active_milestone_period.id
    assert archive.rankings[0]["points"] == 110
    assert archive.stats == {
        "totalUsers": 1,
        "totalReferrals": 1,
        "totalBonusAwarded": 100,
        "topReferrer": ALICE,
    }

    # Later trading activity does not move a frozen leaderboard
    await points.set_trading_points(ALICE, 10_000)
    board = await service.get_leaderboard(active_milestone_period.id)

    assert board["archived"] is True
    assert board["entries"][0]["points"] == 110


@pytest.mark.asyncio
async def test_build_archive_is_idempotent(test_session, active_milestone_period):
    service = LeaderboardService(test_session)
    first = await service.build_archive(active_milestone_period)
    second = await service.build_archive(active_milestone_period)

    assert first.id == second.id
    assert len(await service.list_archives()) == 1


@pytest.mark.asyncio
async def test_unknown_period_and_archive(test_session, active_milestone_period):
    service = LeaderboardService(test_session)
    with pytest.raises(NotFoundError):
        await service.get_leaderboard(9999)
    with pytest.raises(NotFoundError):
        await service.get_archive(active_milestone_period.id)


@pytest.mark.asyncio
async def test_leaderboard_limit(test_session, active_milestone_period):
    links = LinkService(test_session)
    await links.create_referral_link(active_milestone_period.id, ALICE, BOB, "CODE2345")
    await links.create_referral_link(active_milestone_period.id, CAROL, DAVE, "CODE6789")

    board = await LeaderboardService(test_session).get_leaderboard(limit=1)

    assert len(board["entries"]) == 1
