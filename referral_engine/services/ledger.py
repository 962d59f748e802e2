"""
Bonus ledger.

Bonuses are appended, never updated. Milestones are written once per
milestone key. Continuous bonus types (revenue share, growth multiplier,
team volume) are written as top-ups: when the computed entitlement for a
stream exceeds what the ledger already holds, the difference is appended
under a key naming the mark it extends, so racing writers cannot both
extend the same mark. The unique (recipient, period, award_key) constraint
turns a lost race into a no-op.
"""

import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import distinct, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from referral_engine.core.exceptions import NotFoundError
from referral_engine.core.metrics import record_bonus_awarded
from referral_engine.db.database import utcnow
from referral_engine.db.models.bonus import BonusType, ReferralBonus
from referral_engine.db.models.link import ReferralLink
from referral_engine.db.models.period import PeriodStatus, ReferralPeriod
from referral_engine.services.strategies import (
    AwardedBonus,
    BonusContext,
    BonusItem,
    BonusResult,
    LinkSnapshot,
    calculate_bonus,
    short_address,
)
from referral_engine.services.trading_points import (
    TradingPointsSource,
    fetch_trading_points,
    get_trading_points_source,
)

logger = logging.getLogger(__name__)


def stream_key_for(bonus: ReferralBonus) -> str:
    if bonus.milestone_key:
        return bonus.milestone_key
    return f"{bonus.bonus_type}:{bonus.source_address or 'self'}"


class BonusLedger:
    """Computes bonuses for a referrer and appends what is newly earned."""

    def __init__(self, session: AsyncSession, trading_points: TradingPointsSource | None = None):
        self.session = session
        self.trading_points = trading_points or get_trading_points_source(session)

    async def get_links_for_referrer(
        self,
        period: ReferralPeriod,
        referrer_address: str,
        now: datetime | None = None,
    ) -> list[ReferralLink]:
        """Links counted for bonus purposes. Rolling expiry is a read-time filter only."""
        query = select(ReferralLink).where(
            ReferralLink.period_id == period.id,
            ReferralLink.referrer_address == referrer_address.lower(),
        )
        window_days = period.rolling_window_days
        if window_days:
            cutoff = (now or utcnow()) - timedelta(days=window_days)
            query = query.where(ReferralLink.linked_at >= cutoff)

        result = await self.session.execute(query.order_by(ReferralLink.id))
        return list(result.scalars().all())

    async def get_bonus_rows(self, recipient_address: str, period_id: int) -> list[ReferralBonus]:
        result = await self.session.execute(
            select(ReferralBonus)
            .where(
                ReferralBonus.recipient_address == recipient_address.lower(),
                ReferralBonus.period_id == period_id,
            )
            .order_by(ReferralBonus.id)
        )
        return list(result.scalars().all())

    async def get_referrers(self, period_id: int) -> list[str]:
        result = await self.session.execute(
            select(distinct(ReferralLink.referrer_address)).where(ReferralLink.period_id == period_id)
        )
        return sorted(result.scalars().all())

    async def compute(
        self,
        period: ReferralPeriod,
        referrer_address: str,
        now: datetime | None = None,
        existing: list[ReferralBonus] | None = None,
    ) -> BonusResult:
        """Run the period's strategy for one referrer without writing anything."""
        now = now or utcnow()
        referrer_address = referrer_address.lower()

        links = await self.get_links_for_referrer(period, referrer_address, now)
        if not links:
            return BonusResult()

        if existing is None:
            existing = await self.get_bonus_rows(referrer_address, period.id)

        addresses = [referrer_address] + [link.referred_address for link in links]
        trading_points = await fetch_trading_points(self.trading_points, addresses)

        context = BonusContext(
            referrer_address=referrer_address,
            period_id=period.id,
            links=tuple(LinkSnapshot.from_model(link) for link in links),
            trading_points=trading_points,
            existing_bonuses=tuple(
                AwardedBonus(
                    bonus_type=row.bonus_type,
                    points=row.points,
                    source_address=row.source_address,
                    milestone_key=row.milestone_key,
                )
                for row in existing
            ),
            now=now,
        )
        return calculate_bonus(period.strategy, period.strategy_config, context)

    async def record(
        self,
        period: ReferralPeriod,
        recipient_address: str,
        result: BonusResult,
        existing: list[ReferralBonus],
    ) -> int:
        """Append rows for what ``result`` earns beyond ``existing``. Returns rows written."""
        recipient_address = recipient_address.lower()
        recorded: dict[str, int] = {}
        for row in existing:
            key = stream_key_for(row)
            recorded[key] = recorded.get(key, 0) + row.points

        written = 0
        for item in result.breakdown:
            if item.points <= 0:
                continue

            if item.milestone_key:
                if item.milestone_key in recorded:
                    continue
                metadata = {"milestoneKey": item.milestone_key, **item.details}
                if await self._append(period.id, recipient_address, item, item.points, item.milestone_key, metadata):
                    written += 1
                continue

            already = recorded.get(item.stream_key, 0)
            if item.points <= already:
                continue
            award_key = f"{item.stream_key}:{already}"
            metadata = {"entitlement": item.points, "reason": item.reason}
            if await self._append(period.id, recipient_address, item, item.points - already, award_key, metadata):
                written += 1

        return written

    async def _append(
        self,
        period_id: int,
        recipient_address: str,
        item: BonusItem,
        points: int,
        award_key: str,
        metadata: dict[str, Any],
    ) -> bool:
        dialect = self.session.bind.dialect.name
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        table = ReferralBonus.__table__

        stmt = (
            insert(table)
            .values(
                recipient_address=recipient_address,
                period_id=period_id,
                bonus_type=item.bonus_type,
                points=points,
                source_address=item.source_address,
                award_key=award_key,
                metadata=metadata,
                awarded_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=["recipient_address", "period_id", "award_key"])
            .returning(table.c.id)
        )
        inserted = (await self.session.execute(stmt)).scalar_one_or_none()
        if inserted is None:
            logger.debug(f"Bonus {award_key} for {recipient_address} already awarded")
            return False

        record_bonus_awarded(item.bonus_type, points)
        logger.info(f"Awarded {points} {item.bonus_type} points to {recipient_address} ({award_key})")
        return True

    def ledger_view(self, rows: list[ReferralBonus]) -> BonusResult:
        """Collapse ledger rows into one breakdown entry per award stream."""
        streams: OrderedDict[str, BonusItem] = OrderedDict()
        for row in rows:
            key = stream_key_for(row)
            item = streams.get(key)
            if item is None:
                item = BonusItem(
                    source_address=row.source_address,
                    bonus_type=row.bonus_type,
                    points=0,
                    reason="",
                    milestone_key=row.milestone_key,
                )
                streams[key] = item
            item.points += row.points
            item.reason = self._reason_for(row)

        breakdown = list(streams.values())
        return BonusResult(total_bonus=sum(item.points for item in breakdown), breakdown=breakdown)

    @staticmethod
    def _reason_for(row: ReferralBonus) -> str:
        metadata = row.bonus_metadata or {}
        if row.bonus_type == BonusType.MILESTONE.value:
            label = metadata.get("label") or f"${metadata.get('volumeThreshold', 0):g} volume"
            if row.source_address:
                return f"{label} ({short_address(row.source_address)})"
            return label
        return metadata.get("reason", row.bonus_type)

    async def settle(self, period: ReferralPeriod, referrer_address: str, now: datetime | None = None) -> BonusResult:
        """Compute, append what is new, and return the ledger view."""
        existing = await self.get_bonus_rows(referrer_address, period.id)
        if period.status == PeriodStatus.ACTIVE.value:
            result = await self.compute(period, referrer_address, now=now, existing=existing)
            if await self.record(period, referrer_address, result, existing):
                existing = await self.get_bonus_rows(referrer_address, period.id)
        return self.ledger_view(existing)

    async def settle_period(self, period: ReferralPeriod, now: datetime | None = None) -> int:
        """Settle every referrer in the period. Returns total rows written."""
        now = now or utcnow()
        written = 0
        for referrer in await self.get_referrers(period.id):
            existing = await self.get_bonus_rows(referrer, period.id)
            result = await self.compute(period, referrer, now=now, existing=existing)
            written += await self.record(period, referrer, result, existing)
        logger.info(f"Settled period {period.id}: {written} new bonus rows")
        return written

    async def total_for(self, recipient_address: str, period_id: int) -> int:
        result = await self.session.execute(
            select(func.coalesce(func.sum(ReferralBonus.points), 0)).where(
                ReferralBonus.recipient_address == recipient_address.lower(),
                ReferralBonus.period_id == period_id,
            )
        )
        return int(result.scalar_one())

    async def calculate_bonus_for_user(
        self,
        address: str,
        period_id: int | None = None,
    ) -> tuple[ReferralPeriod | None, BonusResult]:
        """Bonus for ``address`` in the given period, or the active one."""
        if period_id is not None:
            period = await self.session.get(ReferralPeriod, period_id)
            if period is None:
                raise NotFoundError(f"Period {period_id} not found")
        else:
            result = await self.session.execute(
                select(ReferralPeriod).where(ReferralPeriod.status == PeriodStatus.ACTIVE.value)
            )
            period = result.scalar_one_or_none()
            if period is None:
                return None, BonusResult()

        return period, await self.settle(period, address)
