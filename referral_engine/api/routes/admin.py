"""Admin API routes for referral period management.

All routes require the ``ADMIN_SECRET_KEY`` bearer token.
"""

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from referral_engine.core.addresses import normalize_address
from referral_engine.core.admin_auth import require_admin
from referral_engine.core.exceptions import ReferralEngineError, http_error
from referral_engine.db.database import get_session
from referral_engine.services.link_service import LinkService
from referral_engine.services.period_service import PeriodService
from referral_engine.services.reset_scheduler import ResetScheduler, reset_scheduler
from referral_engine.services.trading_points import StoredTradingPointsSource

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])


def get_reset_scheduler() -> ResetScheduler:
    return reset_scheduler


class AdminRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class CreatePeriodRequest(AdminRequest):
    name: str = Field(..., min_length=1, max_length=255)
    strategy: str
    strategy_config: dict[str, Any]
    reset_mode: str = "manual"
    reset_config: dict[str, Any] | None = None
    referee_benefits: dict[str, Any] | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None


class UpdatePeriodRequest(AdminRequest):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    strategy: str | None = None
    strategy_config: dict[str, Any] | None = None
    reset_mode: str | None = None
    reset_config: dict[str, Any] | None = None
    referee_benefits: dict[str, Any] | None = None
    starts_at: datetime | None = None
    ends_at: datetime | None = None


class ManualResetRequest(AdminRequest):
    period_id: int
    create_new: bool = True


class TrackActivityRequest(AdminRequest):
    address: str
    amount: float = Field(..., ge=0)


class SetTradingPointsRequest(AdminRequest):
    address: str
    points: int = Field(..., ge=0)


def _period_service(
    session: AsyncSession = Depends(get_session),
    scheduler: ResetScheduler = Depends(get_reset_scheduler),
) -> PeriodService:
    return PeriodService(session, scheduler=scheduler)


@router.post("/verify")
async def verify_admin() -> dict:
    """Check the admin bearer token."""
    return {"valid": True}


@router.post("/referral/periods")
async def create_period(
    request: CreatePeriodRequest,
    service: PeriodService = Depends(_period_service),
) -> dict:
    """Create a draft referral period."""
    try:
        period = await service.create_period(**request.model_dump())
    except ReferralEngineError as e:
        raise http_error(e)
    return period.to_dict()


@router.get("/referral/periods")
async def list_periods(service: PeriodService = Depends(_period_service)) -> dict:
    periods = await service.list_periods()
    return {"periods": [p.to_dict() for p in periods], "count": len(periods)}


@router.get("/referral/periods/{period_id}")
async def get_period(period_id: int, service: PeriodService = Depends(_period_service)) -> dict:
    """Period detail with link and bonus counts."""
    try:
        period = await service.get_period(period_id)
        stats = await service.get_period_stats(period_id)
    except ReferralEngineError as e:
        raise http_error(e)
    return {**period.to_dict(), "stats": stats}


@router.patch("/referral/periods/{period_id}")
async def update_period(
    period_id: int,
    request: UpdatePeriodRequest,
    service: PeriodService = Depends(_period_service),
) -> dict:
    """Edit a draft period."""
    try:
        period = await service.update_period(period_id, **request.model_dump(exclude_unset=True))
    except ReferralEngineError as e:
        raise http_error(e)
    return period.to_dict()


@router.delete("/referral/periods/{period_id}")
async def delete_period(period_id: int, service: PeriodService = Depends(_period_service)) -> dict:
    """Delete a draft period. Non-draft periods are not deleted."""
    try:
        deleted = await service.delete_period(period_id)
    except ReferralEngineError as e:
        raise http_error(e)
    return {"deleted": deleted}


@router.patch("/referral/periods/{period_id}/activate")
async def activate_period(period_id: int, service: PeriodService = Depends(_period_service)) -> dict:
    try:
        period = await service.activate_period(period_id)
    except ReferralEngineError as e:
        raise http_error(e)
    return period.to_dict()


@router.patch("/referral/periods/{period_id}/complete")
async def complete_period(period_id: int, service: PeriodService = Depends(_period_service)) -> dict:
    """Complete an active period and archive its leaderboard."""
    try:
        period = await service.complete_period(period_id)
    except ReferralEngineError as e:
        raise http_error(e)
    return period.to_dict()


@router.post("/referral/reset")
async def manual_reset(
    request: ManualResetRequest,
    service: PeriodService = Depends(_period_service),
) -> dict:
    """Complete a period and optionally clone it into a new draft."""
    try:
        completed, new_period = await service.manual_reset(request.period_id, request.create_new)
    except ReferralEngineError as e:
        raise http_error(e)

    logger.info(f"Manual reset of period {completed.id} (new draft: {new_period.id if new_period else None})")
    return {
        "completedPeriod": completed.to_dict(),
        "newPeriod": new_period.to_dict() if new_period else None,
    }


@router.post("/referral/activity")
async def track_activity(
    request: TrackActivityRequest,
    session: AsyncSession = Depends(get_session),
) -> dict:
    """Record a referred user's bet on their link in the active period."""
    address = normalize_address(request.address)
    try:
        link = await LinkService(session).track_bet(address, request.amount)
    except ReferralEngineError as e:
        raise http_error(e)
    return {"tracked": link is not None, "link": link.to_dict() if link else None}


@router.post("/referral/trading-points")
async def set_trading_points(
    request: SetTradingPointsRequest,
    session: AsyncSession = Depends(get_session),
) -> dict:
    """Store the host's latest trading-points value for an address."""
    address = normalize_address(request.address)
    try:
        record = await StoredTradingPointsSource(session).set_trading_points(address, request.points)
    except ReferralEngineError as e:
        raise http_error(e)
    return {"address": record.address, "points": record.points}
