"""Public API routes for the referral system."""

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from referral_engine.core.addresses import normalize_address
from referral_engine.core.exceptions import ReferralEngineError, http_error
from referral_engine.db.database import get_session
from referral_engine.services.leaderboard_service import LeaderboardService
from referral_engine.services.ledger import BonusLedger
from referral_engine.services.link_service import LinkService
from referral_engine.services.period_service import PeriodService
from referral_engine.services.referral_service import ReferralService
from referral_engine.services.schedule import get_next_reset_at

router = APIRouter()


class TrackSignupRequest(BaseModel):
    """Request to apply a referral code for a new signup."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    code: str = Field(..., min_length=1, max_length=20)
    address: str


@router.get("/active-period")
async def get_active_period(session: AsyncSession = Depends(get_session)) -> dict:
    """Public info about the active period."""
    period = await PeriodService(session).get_active_period()
    if period is None:
        return {"period": None}

    next_reset_at = get_next_reset_at(period.reset_config)
    return {
        "period": {
            "id": period.id,
            "name": period.name,
            "strategy": period.strategy,
            "strategyConfig": period.strategy_config,
            "resetMode": period.reset_mode,
            "startsAt": period.starts_at.isoformat() if period.starts_at else None,
            "endsAt": period.ends_at.isoformat() if period.ends_at else None,
            "nextResetAt": next_reset_at.isoformat() if next_reset_at else None,
            "rollingWindowDays": period.rolling_window_days,
            "refereeBenefits": period.referee_benefits,
        }
    }


@router.get("/my-code/{address}")
async def get_my_code(address: str, session: AsyncSession = Depends(get_session)) -> dict:
    """Get or generate the address's referral code."""
    address = normalize_address(address)
    try:
        info = await ReferralService(session).get_code_info(address)
    except ReferralEngineError as e:
        raise http_error(e)
    return info.to_dict()


@router.post("/track-signup")
async def track_signup(
    request: TrackSignupRequest,
    session: AsyncSession = Depends(get_session),
) -> dict:
    """Apply a referral code for a new signup."""
    address = normalize_address(request.address)
    try:
        link = await ReferralService(session).track_signup(request.code, address)
    except ReferralEngineError as e:
        raise http_error(e)

    return {
        "success": True,
        "linked": link is not None,
        "link": link.to_dict() if link else None,
    }


@router.get("/leaderboard")
async def get_leaderboard(
    limit: int | None = Query(default=None, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """Leaderboard for the active period."""
    try:
        return await LeaderboardService(session).get_leaderboard(limit=limit)
    except ReferralEngineError as e:
        raise http_error(e)


@router.get("/leaderboard/{period_id}")
async def get_period_leaderboard(
    period_id: int,
    limit: int | None = Query(default=None, ge=1, le=1000),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """Leaderboard for a specific period, from its archive once completed."""
    try:
        return await LeaderboardService(session).get_leaderboard(period_id, limit=limit)
    except ReferralEngineError as e:
        raise http_error(e)


@router.get("/archives")
async def list_archives(session: AsyncSession = Depends(get_session)) -> dict:
    """Historical leaderboard archives, newest first."""
    archives = await LeaderboardService(session).list_archives()
    return {
        "archives": [
            {
                "periodId": archive.period_id,
                "periodStart": archive.period_start.isoformat() if archive.period_start else None,
                "periodEnd": archive.period_end.isoformat() if archive.period_end else None,
                "resetMode": archive.reset_mode,
                "stats": archive.stats,
                "createdAt": archive.created_at.isoformat() if archive.created_at else None,
            }
            for archive in archives
        ],
        "count": len(archives),
    }


@router.get("/archives/{period_id}")
async def get_archive(period_id: int, session: AsyncSession = Depends(get_session)) -> dict:
    try:
        archive = await LeaderboardService(session).get_archive(period_id)
    except ReferralEngineError as e:
        raise http_error(e)
    return archive.to_dict()


@router.get("/{address}/bonus")
async def get_bonus(
    address: str,
    period_id: int | None = Query(default=None, alias="periodId"),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """Current bonus total and breakdown for an address."""
    address = normalize_address(address)
    try:
        period, result = await BonusLedger(session).calculate_bonus_for_user(address, period_id)
    except ReferralEngineError as e:
        raise http_error(e)

    return {
        "address": address,
        "periodId": period.id if period else None,
        "strategy": period.strategy if period else None,
        **result.to_dict(),
    }


@router.get("/{address}/referrals")
async def get_referrals(
    address: str,
    period_id: int | None = Query(default=None, alias="periodId"),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """Users referred by an address in the active (or given) period."""
    address = normalize_address(address)
    links = await LinkService(session).get_referrals_for_user(address, period_id)
    return {
        "address": address,
        "referrals": [link.to_dict() for link in links],
        "count": len(links),
    }

