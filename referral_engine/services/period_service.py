"""
Referral period lifecycle.

Periods move draft -> active -> completed. At most one period is active,
enforced by a partial unique index; completion settles the ledger and
freezes the leaderboard in the same transaction.
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, distinct, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from referral_engine.core.exceptions import ConflictError, NotFoundError, ValidationError
from referral_engine.core.metrics import record_period_transition
from referral_engine.db.database import as_utc, utcnow
from referral_engine.db.models.bonus import ReferralBonus
from referral_engine.db.models.link import LinkStatus, ReferralLink
from referral_engine.db.models.period import PeriodStatus, ReferralPeriod, ResetMode
from referral_engine.services.leaderboard_service import LeaderboardService
from referral_engine.services.ledger import BonusLedger
from referral_engine.services.schedule import (
    calculate_next_reset_time,
    get_next_reset_at,
    get_schedule,
    normalize_referee_benefits,
    normalize_reset_config,
    parse_reset_mode,
    with_next_reset_at,
)
from referral_engine.services.strategies import parse_strategy_type, validate_strategy_config
from referral_engine.services.trading_points import TradingPointsSource

if TYPE_CHECKING:
    from referral_engine.services.reset_scheduler import ResetScheduler

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {
    "name",
    "strategy",
    "strategy_config",
    "reset_mode",
    "reset_config",
    "referee_benefits",
    "starts_at",
    "ends_at",
}


class PeriodService:
    """Service for managing referral periods."""

    def __init__(
        self,
        session: AsyncSession,
        scheduler: "ResetScheduler | None" = None,
        trading_points: TradingPointsSource | None = None,
    ):
        self.session = session
        self.scheduler = scheduler
        self.trading_points = trading_points

    async def _get_or_404(self, period_id: int) -> ReferralPeriod:
        period = await self.session.get(ReferralPeriod, period_id)
        if period is None:
            raise NotFoundError(f"Period {period_id} not found")
        return period

    @staticmethod
    def _check_window(starts_at: datetime | None, ends_at: datetime | None) -> None:
        if starts_at and ends_at and as_utc(ends_at) <= as_utc(starts_at):
            raise ValidationError("endsAt must be after startsAt")

    async def create_period(
        self,
        name: str,
        strategy: str,
        strategy_config: dict[str, Any],
        reset_mode: str = ResetMode.MANUAL.value,
        reset_config: dict[str, Any] | None = None,
        referee_benefits: dict[str, Any] | None = None,
        starts_at: datetime | None = None,
        ends_at: datetime | None = None,
    ) -> ReferralPeriod:
        """Create a new draft period."""
        if not name or not name.strip():
            raise ValidationError("Period name is required")

        strategy_type = parse_strategy_type(strategy)
        config = validate_strategy_config(strategy_type, strategy_config)
        mode = parse_reset_mode(reset_mode)
        self._check_window(starts_at, ends_at)

        period = ReferralPeriod(
            name=name.strip(),
            strategy=strategy_type.value,
            strategy_config=config.model_dump(by_alias=True),
            reset_mode=mode.value,
            reset_config=normalize_reset_config(mode, reset_config),
            referee_benefits=normalize_referee_benefits(referee_benefits),
            status=PeriodStatus.DRAFT.value,
            starts_at=as_utc(starts_at),
            ends_at=as_utc(ends_at),
        )
        self.session.add(period)
        await self.session.flush()

        record_period_transition("created")
        logger.info(f"Created period {period.id} {period.name!r} ({period.strategy}, {period.reset_mode})")
        return period

    async def update_period(self, period_id: int, **changes: Any) -> ReferralPeriod:
        """Edit a draft period. The strategy kind never changes."""
        period = await self._get_or_404(period_id)
        if period.status != PeriodStatus.DRAFT.value:
            raise ConflictError(f"Only draft periods can be edited (period is {period.status})")

        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")

        if "strategy" in changes and changes["strategy"] != period.strategy:
            raise ValidationError("Strategy cannot be changed after creation")

        if "name" in changes:
            if not changes["name"] or not changes["name"].strip():
                raise ValidationError("Period name is required")
            period.name = changes["name"].strip()

        if "strategy_config" in changes:
            config = validate_strategy_config(period.strategy, changes["strategy_config"])
            period.strategy_config = config.model_dump(by_alias=True)

        if "reset_mode" in changes or "reset_config" in changes:
            mode = parse_reset_mode(changes.get("reset_mode", period.reset_mode))
            reset_config = changes.get("reset_config", period.reset_config)
            period.reset_mode = mode.value
            period.reset_config = normalize_reset_config(mode, reset_config)

        if "referee_benefits" in changes:
            period.referee_benefits = normalize_referee_benefits(changes["referee_benefits"])

        starts_at = changes.get("starts_at", period.starts_at)
        ends_at = changes.get("ends_at", period.ends_at)
        self._check_window(starts_at, ends_at)
        period.starts_at = as_utc(starts_at)
        period.ends_at = as_utc(ends_at)

        await self.session.flush()
        logger.info(f"Updated period {period.id}: {', '.join(sorted(changes))}")
        return period

    async def activate_period(self, period_id: int, now: datetime | None = None) -> ReferralPeriod:
        """Make a draft period the single active period."""
        period = await self._get_or_404(period_id)
        if period.status != PeriodStatus.DRAFT.value:
            raise ConflictError(f"Only draft periods can be activated (period is {period.status})")

        active = await self.get_active_period()
        if active is not None:
            raise ConflictError(f"Period {active.id} is already active", code="already_active")

        # A stored config may predate a stricter validator
        validate_strategy_config(period.strategy, period.strategy_config)

        now = now or utcnow()
        period.status = PeriodStatus.ACTIVE.value
        if period.starts_at is None:
            period.starts_at = now

        if period.reset_mode == ResetMode.SCHEDULED.value:
            next_reset_at = get_next_reset_at(period.reset_config)
            if next_reset_at is None or next_reset_at <= now:
                schedule = get_schedule(period.reset_config)
                period.reset_config = with_next_reset_at(
                    period.reset_config, calculate_next_reset_time(schedule, now)
                )

        try:
            await self.session.flush()
        except IntegrityError as e:
            # Another activation won the race for the active slot
            await self.session.rollback()
            raise ConflictError("Another period is already active", code="already_active") from e

        record_period_transition("activated")
        logger.info(f"Activated period {period.id} {period.name!r}")

        if period.reset_mode == ResetMode.SCHEDULED.value and self.scheduler is not None:
            self.scheduler.start_monitoring()

        return period

    async def complete_period(self, period_id: int, now: datetime | None = None) -> ReferralPeriod:
        """Settle bonuses, archive the leaderboard and mark the period completed.

        Runs in the caller's transaction; any failure leaves the period active.
        The monitor is not stopped here; it exits on its own once no scheduled
        period is active.
        """
        period = await self._get_or_404(period_id)
        if period.status != PeriodStatus.ACTIVE.value:
            raise ConflictError(f"Only active periods can be completed (period is {period.status})")

        now = now or utcnow()
        await BonusLedger(self.session, self.trading_points).settle_period(period, now)
        await LeaderboardService(self.session, self.trading_points).build_archive(period, now)

        period.status = PeriodStatus.COMPLETED.value
        period.completed_at = now
        if period.ends_at is None:
            period.ends_at = now
        await self.session.flush()

        record_period_transition("completed")
        logger.info(f"Completed period {period.id} {period.name!r}")
        return period

    async def clone_period(self, period: ReferralPeriod, now: datetime | None = None) -> ReferralPeriod:
        """New draft with the same strategy, config, reset settings and benefits."""
        reset_config = dict(period.reset_config or {})
        if reset_config.get("schedule"):
            schedule = dict(reset_config["schedule"])
            schedule.pop("nextResetAt", None)
            reset_config["schedule"] = schedule
            reset_config = normalize_reset_config(period.reset_mode, reset_config, now)

        clone = ReferralPeriod(
            name=f"{period.name} (continued)",
            strategy=period.strategy,
            strategy_config=dict(period.strategy_config),
            reset_mode=period.reset_mode,
            reset_config=reset_config,
            referee_benefits=dict(period.referee_benefits or {}),
            status=PeriodStatus.DRAFT.value,
        )
        self.session.add(clone)
        await self.session.flush()

        record_period_transition("created")
        logger.info(f"Cloned period {period.id} into draft {clone.id}")
        return clone

    async def manual_reset(
        self,
        period_id: int,
        create_new: bool = True,
        now: datetime | None = None,
    ) -> tuple[ReferralPeriod, ReferralPeriod | None]:
        """Complete a period and optionally clone it into a fresh draft."""
        completed = await self.complete_period(period_id, now)
        new_period = await self.clone_period(completed, now) if create_new else None
        return completed, new_period

    async def delete_period(self, period_id: int) -> bool:
        """Delete a draft period and its links. Non-draft periods are left alone."""
        period = await self._get_or_404(period_id)
        if period.status != PeriodStatus.DRAFT.value:
            return False

        await self.session.execute(delete(ReferralLink).where(ReferralLink.period_id == period.id))
        await self.session.execute(delete(ReferralBonus).where(ReferralBonus.period_id == period.id))
        await self.session.delete(period)
        await self.session.flush()

        record_period_transition("deleted")
        logger.info(f"Deleted draft period {period_id}")
        return True

    async def get_active_period(self) -> ReferralPeriod | None:
        result = await self.session.execute(
            select(ReferralPeriod).where(ReferralPeriod.status == PeriodStatus.ACTIVE.value)
        )
        return result.scalar_one_or_none()

    async def get_period(self, period_id: int) -> ReferralPeriod:
        return await self._get_or_404(period_id)

    async def list_periods(self) -> list[ReferralPeriod]:
        result = await self.session.execute(
            select(ReferralPeriod).order_by(ReferralPeriod.created_at.desc(), ReferralPeriod.id.desc())
        )
        return list(result.scalars().all())

    async def get_period_stats(self, period_id: int) -> dict[str, int]:
        await self._get_or_404(period_id)

        total = await self.session.scalar(
            select(func.count(ReferralLink.id)).where(ReferralLink.period_id == period_id)
        )
        active = await self.session.scalar(
            select(func.count(ReferralLink.id)).where(
                ReferralLink.period_id == period_id,
                ReferralLink.status == LinkStatus.ACTIVE.value,
            )
        )
        with_bonuses = await self.session.scalar(
            select(func.count(distinct(ReferralBonus.recipient_address))).where(
                ReferralBonus.period_id == period_id
            )
        )
        return {
            "totalReferrals": total or 0,
            "activeReferrals": active or 0,
            "usersWithBonuses": with_bonuses or 0,
        }
