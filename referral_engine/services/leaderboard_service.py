"""
Leaderboard and archive builder.

Live leaderboards combine trading points with ledger bonus totals.
Completed periods are served from their frozen archive.
"""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from referral_engine.config import settings
from referral_engine.core.exceptions import NotFoundError
from referral_engine.db.database import as_utc, utcnow
from referral_engine.db.models.archive import LeaderboardArchive
from referral_engine.db.models.bonus import ReferralBonus
from referral_engine.db.models.link import ReferralLink
from referral_engine.db.models.period import PeriodStatus, ReferralPeriod
from referral_engine.services.trading_points import (
    TradingPointsSource,
    fetch_trading_points,
    get_trading_points_source,
)

logger = logging.getLogger(__name__)


class LeaderboardService:
    def __init__(self, session: AsyncSession, trading_points: TradingPointsSource | None = None):
        self.session = session
        self.trading_points = trading_points or get_trading_points_source(session)

    async def _referral_counts(self, period_id: int) -> dict[str, int]:
        result = await self.session.execute(
            select(ReferralLink.referrer_address, func.count(ReferralLink.id))
            .where(ReferralLink.period_id == period_id)
            .group_by(ReferralLink.referrer_address)
        )
        return {address: count for address, count in result.all()}

    async def _bonus_totals(self, period_id: int) -> dict[str, int]:
        result = await self.session.execute(
            select(ReferralBonus.recipient_address, func.sum(ReferralBonus.points))
            .where(ReferralBonus.period_id == period_id)
            .group_by(ReferralBonus.recipient_address)
        )
        return {address: int(total or 0) for address, total in result.all()}

    async def compute_rankings(self, period_id: int, limit: int | None = None) -> list[dict[str, Any]]:
        """Rank every referrer or bonus recipient by trading + bonus points."""
        referrals = await self._referral_counts(period_id)
        bonuses = await self._bonus_totals(period_id)
        addresses = set(referrals) | set(bonuses)
        if not addresses:
            return []

        trading = await fetch_trading_points(self.trading_points, sorted(addresses))

        rows = []
        for address in addresses:
            trading_points = trading.get(address, 0)
            bonus_points = bonuses.get(address, 0)
            rows.append({
                "address": address,
                "points": trading_points + bonus_points,
                "tradingPoints": trading_points,
                "bonusPoints": bonus_points,
                "referrals": referrals.get(address, 0),
            })

        rows.sort(key=lambda row: (-row["points"], row["address"]))
        if limit is not None:
            rows = rows[:limit]
        for rank, row in enumerate(rows, start=1):
            row["rank"] = rank
        return rows

    async def get_leaderboard(self, period_id: int | None = None, limit: int | None = None) -> dict[str, Any]:
        """Leaderboard for a period, or the active one when no id is given."""
        limit = limit or settings.leaderboard_default_limit

        if period_id is None:
            result = await self.session.execute(
                select(ReferralPeriod).where(ReferralPeriod.status == PeriodStatus.ACTIVE.value)
            )
            period = result.scalar_one_or_none()
            if period is None:
                return {"periodId": None, "periodName": None, "archived": False, "entries": []}
        else:
            period = await self.session.get(ReferralPeriod, period_id)
            if period is None:
                raise NotFoundError(f"Period {period_id} not found")

        if period.status == PeriodStatus.COMPLETED.value:
            archive = await self.get_archive_or_none(period.id)
            if archive is not None:
                return {
                    "periodId": period.id,
                    "periodName": period.name,
                    "archived": True,
                    "entries": list(archive.rankings)[:limit],
                }

        return {
            "periodId": period.id,
            "periodName": period.name,
            "archived": False,
            "entries": await self.compute_rankings(period.id, limit),
        }

    async def build_archive(self, period: ReferralPeriod, now: datetime | None = None) -> LeaderboardArchive:
        """Freeze the period's rankings. Returns the existing archive if one was already built."""
        existing = await self.get_archive_or_none(period.id)
        if existing is not None:
            return existing

        now = now or utcnow()
        rankings = await self.compute_rankings(period.id)
        referral_total = sum(row["referrals"] for row in rankings)
        top_referrer = min(
            (row for row in rankings if row["referrals"] > 0),
            key=lambda row: (-row["referrals"], row["address"]),
            default=None,
        )

        archive = LeaderboardArchive(
            period_id=period.id,
            period_start=as_utc(period.starts_at),
            period_end=now,
            reset_mode=period.reset_mode,
            rankings=[
                {
                    "rank": row["rank"],
                    "address": row["address"],
                    "points": row["points"],
                    "referrals": row["referrals"],
                    "bonusPoints": row["bonusPoints"],
                }
                for row in rankings[: settings.archive_max_rankings]
            ],
            stats={
                "totalUsers": len(rankings),
                "totalReferrals": referral_total,
                "totalBonusAwarded": sum(row["bonusPoints"] for row in rankings),
                "topReferrer": top_referrer["address"] if top_referrer else None,
            },
            created_at=now,
        )
        self.session.add(archive)
        await self.session.flush()

        logger.info(f"Archived leaderboard for period {period.id} ({len(rankings)} users)")
        return archive

    async def get_archive_or_none(self, period_id: int) -> LeaderboardArchive | None:
        result = await self.session.execute(
            select(LeaderboardArchive).where(LeaderboardArchive.period_id == period_id)
        )
        return result.scalar_one_or_none()

    async def get_archive(self, period_id: int) -> LeaderboardArchive:
        archive = await self.get_archive_or_none(period_id)
        if archive is None:
            raise NotFoundError(f"No archive for period {period_id}")
        return archive

    async def list_archives(self) -> list[LeaderboardArchive]:
        """All archives, newest first."""
        result = await self.session.execute(
            select(LeaderboardArchive).order_by(
                LeaderboardArchive.created_at.desc(), LeaderboardArchive.id.desc()
            )
        )
        return list(result.scalars().all())
