import logging
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from referral_engine.core.exceptions import ConflictError, NotFoundError, ValidationError
from referral_engine.db.database import utcnow
from referral_engine.db.models.link import LinkStatus, ReferralLink
from referral_engine.db.models.period import PeriodStatus, ReferralPeriod

logger = logging.getLogger(__name__)


class LinkService:
    """Period-scoped referral links and the activity pushed onto them."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _get_active_period(self) -> ReferralPeriod | None:
        result = await self.session.execute(
            select(ReferralPeriod).where(ReferralPeriod.status == PeriodStatus.ACTIVE.value)
        )
        return result.scalar_one_or_none()

    async def get_link(self, referred_address: str, period_id: int) -> ReferralLink | None:
        result = await self.session.execute(
            select(ReferralLink).where(
                ReferralLink.referred_address == referred_address.lower(),
                ReferralLink.period_id == period_id,
            )
        )
        return result.scalar_one_or_none()

    async def create_referral_link(
        self,
        period_id: int,
        referrer_address: str,
        referred_address: str,
        referral_code: str,
    ) -> ReferralLink:
        referrer_address = referrer_address.lower()
        referred_address = referred_address.lower()

        if referrer_address == referred_address:
            raise ConflictError("Cannot refer yourself", code="self_referral")

        period = await self.session.get(ReferralPeriod, period_id)
        if period is None:
            raise NotFoundError(f"Period {period_id} not found")

        if await self.get_link(referred_address, period_id):
            raise ConflictError("Address already referred in this period", code="already_referred")

        link = ReferralLink(
            period_id=period_id,
            referrer_address=referrer_address,
            referred_address=referred_address,
            referral_code=referral_code.upper(),
            status=LinkStatus.PENDING.value,
            linked_at=utcnow(),
            lifetime_volume=0.0,
        )
        self.session.add(link)
        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            raise ConflictError("Address already referred in this period", code="already_referred") from e

        logger.info(f"Linked {referred_address} to {referrer_address} in period {period_id}")
        return link

    async def track_bet(
        self,
        referred_address: str,
        amount: float,
        at: datetime | None = None,
    ) -> ReferralLink | None:
        """Record a bet on the referred user's link in the active period.

        Returns None when there is no active period or no link.
        """
        if amount < 0:
            raise ValidationError("Bet amount must be non-negative")

        period = await self._get_active_period()
        if period is None:
            return None

        link = await self.get_link(referred_address, period.id)
        if link is None:
            return None

        at = at or utcnow()
        link.lifetime_volume = (link.lifetime_volume or 0.0) + amount
        link.last_bet_at = at
        if link.first_bet_at is None:
            link.first_bet_at = at
            link.status = LinkStatus.ACTIVE.value
            logger.info(f"Referral {link.referred_address} became active in period {period.id}")

        await self.session.flush()
        return link

    async def get_referrals_for_user(
        self,
        address: str,
        period_id: int | None = None,
    ) -> list[ReferralLink]:
        """Links where ``address`` is the referrer, newest first."""
        if period_id is None:
            period = await self._get_active_period()
            if period is None:
                return []
            period_id = period.id

        result = await self.session.execute(
            select(ReferralLink)
            .where(
                ReferralLink.referrer_address == address.lower(),
                ReferralLink.period_id == period_id,
            )
            .order_by(ReferralLink.linked_at.desc(), ReferralLink.id.desc())
        )
        return list(result.scalars().all())
