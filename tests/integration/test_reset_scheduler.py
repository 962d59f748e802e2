"""Tests for scheduled period rollover."""

from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import select

from conftest import ALICE, BOB, MILESTONE_CONFIG
from referral_engine.core.exceptions import TransientError
from referral_engine.db.database import utcnow
from referral_engine.db.models import LeaderboardArchive, ReferralPeriod
from referral_engine.services.link_service import LinkService
from referral_engine.services.period_service import PeriodService
from referral_engine.services.reset_scheduler import ResetScheduler
from referral_engine.services.schedule import get_next_reset_at, with_next_reset_at

DAILY = {"schedule": {"frequency": "daily", "timeUtc": "00:00"}}


class FailingSource:
    async def get_trading_points(self, address):
        raise TransientError("activity API unavailable")

    async def get_trading_points_batch(self, addresses):
        raise TransientError("activity API unavailable")


@pytest_asyncio.fixture
async def rollover_scheduler(file_session_factory):
    scheduler = ResetScheduler(session_factory=file_session_factory, interval=3600)
    yield scheduler
    await scheduler.stop()


async def create_scheduled_period(session_factory, overdue: bool = True) -> int:
    async with session_factory() as session:
        service = PeriodService(session)
        period = await service.create_period(
            name="Daily",
            strategy="milestone_quest",
            strategy_config=MILESTONE_CONFIG,
            reset_mode="scheduled",
            reset_config=DAILY,
        )
        await service.activate_period(period.id)
        await LinkService(session).create_referral_link(period.id, ALICE, BOB, "CODE2345")
        if overdue:
            period.reset_config = with_next_reset_at(period.reset_config, utcnow() - timedelta(minutes=5))
        await session.commit()
        return period.id


async def load_periods(session_factory) -> list[ReferralPeriod]:
    async with session_factory() as session:
        result = await session.execute(select(ReferralPeriod).order_by(ReferralPeriod.id))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_overdue_period_rolls_over(file_session_factory, rollover_scheduler):
    period_id = await create_scheduled_period(file_session_factory)

    new_period = await rollover_scheduler.check_for_reset()

    assert new_period is not None
    assert new_period.name == "Daily (continued)"
    assert get_next_reset_at(new_period.reset_config) > utcnow()

    old, new = await load_periods(file_session_factory)
    assert old.id == period_id
    assert old.status == "completed"
    assert new.status == "active"
    assert new.strategy_config == old.strategy_config

    async with file_session_factory() as session:
        archive = await session.scalar(
            select(LeaderboardArchive).where(LeaderboardArchive.period_id == period_id)
        )
        assert archive.stats["totalBonusAwarded"] == 100


@pytest.mark.asyncio
async def test_period_not_yet_due(file_session_factory, rollover_scheduler):
    await create_scheduled_period(file_session_factory, overdue=False)

    assert await rollover_scheduler.check_for_reset() is None
    assert [p.status for p in await load_periods(file_session_factory)] == ["active"]


@pytest.mark.asyncio
async def test_manual_period_never_rolls_over(file_session_factory, rollover_scheduler):
    async with file_session_factory() as session:
        service = PeriodService(session)
        period = await service.create_period(name="M", strategy="milestone_quest", strategy_config=MILESTONE_CONFIG)
        await service.activate_period(period.id)
        await session.commit()

    assert await rollover_scheduler.check_for_reset(now=utcnow() + timedelta(days=365)) is None


@pytest.mark.asyncio
async def test_failed_rollover_leaves_period_active(file_session_factory):
    await create_scheduled_period(file_session_factory)
    scheduler = ResetScheduler(session_factory=file_session_factory, interval=3600, trading_points=FailingSource())

    assert await scheduler.check_for_reset() is None

    periods = await load_periods(file_session_factory)
    assert [p.status for p in periods] == ["active"]


@pytest.mark.asyncio
async def test_initialize_catches_up_and_monitors(file_session_factory, rollover_scheduler):
    await create_scheduled_period(file_session_factory)

    await rollover_scheduler.initialize()

    assert rollover_scheduler.is_monitoring
    assert [p.status for p in await load_periods(file_session_factory)] == ["completed", "active"]

    await rollover_scheduler.stop()
    assert not rollover_scheduler.is_monitoring


@pytest.mark.asyncio
async def test_initialize_without_scheduled_period(file_session_factory, rollover_scheduler):
    await rollover_scheduler.initialize()
    assert not rollover_scheduler.is_monitoring
