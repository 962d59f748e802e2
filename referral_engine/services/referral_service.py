"""Referral code service.

Handles:
- Referral code generation
- Signup tracking (durable referrer + period link)
- Code info for sharing
"""

import logging
import secrets
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from referral_engine.config import settings
from referral_engine.core.exceptions import ConflictError, NotFoundError
from referral_engine.core.metrics import record_signup
from referral_engine.db.models.link import ReferralLink
from referral_engine.db.models.period import PeriodStatus, ReferralPeriod
from referral_engine.db.models.referral import Referral, ReferralCode
from referral_engine.services.link_service import LinkService

logger = logging.getLogger(__name__)

# No 0/O or 1/I/L
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
MAX_CODE_ATTEMPTS = 10


def generate_referral_code(length: int | None = None) -> str:
    """Generate a random referral code."""
    length = length or settings.referral_code_length
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


@dataclass
class CodeInfo:
    code: str
    share_url: str
    referral_count: int
    uses: int

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "shareUrl": self.share_url,
            "referralCount": self.referral_count,
            "uses": self.uses,
        }


class ReferralService:
    """Service for issuing referral codes and tracking signups."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _get_code_for_address(self, address: str) -> ReferralCode | None:
        result = await self.session.execute(
            select(ReferralCode).where(ReferralCode.address == address)
        )
        return result.scalar_one_or_none()

    async def get_or_create_code(self, address: str) -> ReferralCode:
        """Get or create the referral code for an address."""
        address = address.lower()
        existing = await self._get_code_for_address(address)
        if existing:
            return existing

        for _ in range(MAX_CODE_ATTEMPTS):
            code = generate_referral_code()
            if await self.get_code_by_string(code) is None:
                break
        else:
            raise ConflictError("Could not generate a unique referral code", code="code_collision")

        referral_code = ReferralCode(address=address, code=code, uses=0)
        self.session.add(referral_code)
        try:
            await self.session.flush()
        except IntegrityError as e:
            # A concurrent request issued a code for this address, or took ours
            await self.session.rollback()
            existing = await self._get_code_for_address(address)
            if existing:
                return existing
            raise ConflictError("Referral code already taken", code="code_collision") from e

        logger.info(f"Issued referral code {code} to {address}")
        return referral_code

    async def get_code_by_string(self, code: str) -> ReferralCode | None:
        """Look up a referral code, case-insensitively."""
        result = await self.session.execute(
            select(ReferralCode).where(func.upper(ReferralCode.code) == code.strip().upper())
        )
        return result.scalar_one_or_none()

    async def get_referrer(self, address: str) -> str | None:
        """Get the referrer for an address, if any."""
        result = await self.session.execute(
            select(Referral).where(Referral.referred_address == address.lower())
        )
        referral = result.scalar_one_or_none()
        return referral.referrer_address if referral else None

    async def track_signup(self, code: str, referee_address: str) -> ReferralLink | None:
        """Apply a referral code for a new signup.

        Records the permanent referrer relationship and, if a period is
        active, links the referee to the referrer in that period.
        """
        referee_address = referee_address.lower()

        referral_code = await self.get_code_by_string(code)
        if referral_code is None:
            raise NotFoundError("Invalid referral code", code="invalid_code")

        if referral_code.address == referee_address:
            raise ConflictError("Cannot use your own referral code", code="self_referral")

        if await self.get_referrer(referee_address) is not None:
            raise ConflictError("Address has already been referred", code="already_referred")

        self.session.add(
            Referral(
                referrer_address=referral_code.address,
                referred_address=referee_address,
                code_used=referral_code.code,
            )
        )
        referral_code.uses = (referral_code.uses or 0) + 1
        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            raise ConflictError("Address has already been referred", code="already_referred") from e

        link = None
        result = await self.session.execute(
            select(ReferralPeriod).where(ReferralPeriod.status == PeriodStatus.ACTIVE.value)
        )
        period = result.scalar_one_or_none()
        if period is not None:
            link = await LinkService(self.session).create_referral_link(
                period.id, referral_code.address, referee_address, referral_code.code
            )

        record_signup(linked=link is not None)
        logger.info(
            f"{referee_address} signed up with {referral_code.code} from {referral_code.address}"
            + (f" (period {period.id})" if period else " (no active period)")
        )
        return link

    async def get_code_info(self, address: str) -> CodeInfo:
        """Code, share link and referral count in the active period."""
        referral_code = await self.get_or_create_code(address)

        count = 0
        result = await self.session.execute(
            select(ReferralPeriod.id).where(ReferralPeriod.status == PeriodStatus.ACTIVE.value)
        )
        period_id = result.scalar_one_or_none()
        if period_id is not None:
            count = await self.session.scalar(
                select(func.count(ReferralLink.id)).where(
                    ReferralLink.period_id == period_id,
                    ReferralLink.referrer_address == referral_code.address,
                )
            ) or 0

        return CodeInfo(
            code=referral_code.code,
            share_url=f"{settings.share_base_url.rstrip('/')}?ref={referral_code.code}",
            referral_count=count,
            uses=referral_code.uses or 0,
        )
