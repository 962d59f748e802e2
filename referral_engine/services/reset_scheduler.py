"""
Scheduled period rollover.

A single background task polls the active period's ``nextResetAt``. When it
is due, the period is completed, cloned and the clone activated in one
transaction, so there is never a window with no active period. State lives
in the database, so an overdue rollover fires as soon as the process comes
back up.
"""

import asyncio
import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from referral_engine.config import settings
from referral_engine.core.metrics import record_scheduler_run
from referral_engine.db.database import async_session_factory, utcnow
from referral_engine.db.models.period import PeriodStatus, ReferralPeriod, ResetMode
from referral_engine.services.period_service import PeriodService
from referral_engine.services.schedule import get_next_reset_at
from referral_engine.services.trading_points import TradingPointsSource, get_trading_points_source

logger = logging.getLogger(__name__)


class ResetScheduler:
    """Monitors the active scheduled period and rolls it over when due."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        interval: float | None = None,
        trading_points: TradingPointsSource | None = None,
    ):
        self.session_factory = session_factory or async_session_factory
        self.interval = interval if interval is not None else settings.reset_check_interval_seconds
        self.trading_points = trading_points

        self._task: asyncio.Task | None = None

    @property
    def is_monitoring(self) -> bool:
        return self._task is not None and not self._task.done()

    async def initialize(self) -> None:
        """Resume monitoring after startup, firing any overdue rollover at once."""
        await self.check_for_reset()
        if await self._has_scheduled_period():
            self.start_monitoring()

    def start_monitoring(self) -> None:
        """Start the monitor, replacing any running one."""
        if self.is_monitoring:
            self._task.cancel()
        self._task = asyncio.create_task(self._monitor())
        logger.info(f"Reset scheduler monitoring every {self.interval}s")

    async def stop(self) -> None:
        """Cancel the monitor and wait for it to finish."""
        task, self._task = self._task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Reset scheduler stopped")

    async def _monitor(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.check_for_reset()
                if not await self._has_scheduled_period():
                    logger.info("No active scheduled period, reset scheduler exiting")
                    break
            except asyncio.CancelledError:
                raise
            except Exception:
                # Keep monitoring, the next tick retries
                logger.exception("Reset scheduler tick failed")

    async def _has_scheduled_period(self) -> bool:
        async with self.session_factory() as session:
            period = await self._get_active_period(session)
            return period is not None and period.reset_mode == ResetMode.SCHEDULED.value

    @staticmethod
    async def _get_active_period(session: AsyncSession) -> ReferralPeriod | None:
        result = await session.execute(
            select(ReferralPeriod).where(ReferralPeriod.status == PeriodStatus.ACTIVE.value)
        )
        return result.scalar_one_or_none()

    async def check_for_reset(self, now: datetime | None = None) -> ReferralPeriod | None:
        """Roll the active period over if its reset time has passed.

        Returns the newly activated period, or None when nothing was due or
        the rollover failed (it is retried on the next tick).
        """
        now = now or utcnow()
        async with self.session_factory() as session:
            period = await self._get_active_period(session)
            if period is None or period.reset_mode != ResetMode.SCHEDULED.value:
                record_scheduler_run("idle")
                return None

            next_reset_at = get_next_reset_at(period.reset_config)
            if next_reset_at is None or now < next_reset_at:
                record_scheduler_run("idle")
                return None

            logger.info(f"Period {period.id} reached its reset time {next_reset_at.isoformat()}")
            try:
                new_period = await self._rollover(session, period, now)
                await session.commit()
            except Exception:
                await session.rollback()
                record_scheduler_run("error")
                logger.exception(f"Rollover of period {period.id} failed, will retry")
                return None

        record_scheduler_run("rolled_over")
        logger.info(
            f"Period {new_period.id} {new_period.name!r} activated, "
            f"next reset at {get_next_reset_at(new_period.reset_config).isoformat()}"
        )
        return new_period

    async def _rollover(self, session: AsyncSession, period: ReferralPeriod, now: datetime) -> ReferralPeriod:
        trading_points = self.trading_points or get_trading_points_source(session)
        # No scheduler handle: this task keeps running across the rollover
        service = PeriodService(session, scheduler=None, trading_points=trading_points)

        await service.complete_period(period.id, now)
        new_period = await service.clone_period(period, now)
        return await service.activate_period(new_period.id, now)


# Global reset scheduler
reset_scheduler = ResetScheduler()
