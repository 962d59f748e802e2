"""
Trading points sources.

The engine never computes trading points itself. It asks a source, either
the values pushed by the host application (stored) or the public activity
API, where 1 USDC spent on BUY trades = 1 point.
"""

import asyncio
import logging
import math
from typing import Iterable, Protocol

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from referral_engine.config import settings
from referral_engine.core.exceptions import TransientError, ValidationError
from referral_engine.db.models.trading_points import TradingPointsRecord

logger = logging.getLogger(__name__)


class TradingPointsSource(Protocol):
    async def get_trading_points(self, address: str) -> int: ...

    async def get_trading_points_batch(self, addresses: Iterable[str]) -> dict[str, int]: ...


class StoredTradingPointsSource:
    """Reads the last value the host pushed for each address. Unknown addresses have 0."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_trading_points(self, address: str) -> int:
        record = await self.session.get(TradingPointsRecord, address.lower())
        return record.points if record else 0

    async def get_trading_points_batch(self, addresses: Iterable[str]) -> dict[str, int]:
        wanted = {a.lower() for a in addresses}
        if not wanted:
            return {}
        result = await self.session.execute(
            select(TradingPointsRecord.address, TradingPointsRecord.points).where(
                TradingPointsRecord.address.in_(wanted)
            )
        )
        points = {address: 0 for address in wanted}
        points.update({row.address: row.points for row in result})
        return points

    async def set_trading_points(self, address: str, points: int) -> TradingPointsRecord:
        if points < 0:
            raise ValidationError("Trading points must be non-negative")

        address = address.lower()
        record = await self.session.get(TradingPointsRecord, address)
        if record is None:
            record = TradingPointsRecord(address=address, points=points)
            self.session.add(record)
        else:
            record.points = points
        await self.session.flush()
        return record


class ActivityApiTradingPointsSource:
    """Sums floor(usdcSize) over BUY trades from the activity API."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        limit: int | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url or settings.activity_api_url
        self.limit = limit or settings.activity_api_limit
        self._client = client or httpx.AsyncClient(
            timeout=timeout or settings.trading_points_timeout_seconds,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def get_trading_points(self, address: str) -> int:
        params = {
            "user": address,
            "type": "TRADE",
            "sortBy": "TIMESTAMP",
            "sortDirection": "DESC",
            "limit": self.limit,
        }
        try:
            response = await self._client.get(self.base_url, params=params)
        except httpx.HTTPError as e:
            logger.warning(f"Activity API request failed for {address}: {e}")
            raise TransientError("Trading points source unavailable") from e

        if response.status_code != 200:
            logger.warning(f"Activity API returned {response.status_code} for {address}")
            raise TransientError("Trading points source unavailable")

        try:
            activities = response.json()
        except ValueError as e:
            raise TransientError("Trading points source returned malformed data") from e

        if not isinstance(activities, list):
            logger.warning(f"Activity API returned {type(activities).__name__} for {address}, expected a list")
            raise TransientError("Trading points source returned malformed data")

        points = 0
        for activity in activities:
            if not isinstance(activity, dict):
                raise TransientError("Trading points source returned malformed data")
            if activity.get("side") == "BUY" and activity.get("usdcSize"):
                points += math.floor(float(activity["usdcSize"]))

        if len(activities) >= self.limit:
            logger.warning(f"Hit limit={self.limit} for {address}, points may be incomplete")

        return points

    async def get_trading_points_batch(self, addresses: Iterable[str]) -> dict[str, int]:
        unique = list(dict.fromkeys(a.lower() for a in addresses))
        values = await asyncio.gather(*(self.get_trading_points(a) for a in unique))
        return dict(zip(unique, values))


_activity_api_source: ActivityApiTradingPointsSource | None = None


def get_trading_points_source(session: AsyncSession) -> TradingPointsSource:
    """Return the configured trading points source."""
    global _activity_api_source
    if settings.trading_points_source == "activity_api":
        if _activity_api_source is None:
            _activity_api_source = ActivityApiTradingPointsSource()
        return _activity_api_source
    return StoredTradingPointsSource(session)


async def close_trading_points_source() -> None:
    global _activity_api_source
    if _activity_api_source is not None:
        await _activity_api_source.close()
        _activity_api_source = None


async def fetch_trading_points(source: TradingPointsSource, addresses: Iterable[str]) -> dict[str, int]:
    """Batch lookup bounded by the configured timeout."""
    try:
        return await asyncio.wait_for(
            source.get_trading_points_batch(list(addresses)),
            timeout=settings.trading_points_timeout_seconds,
        )
    except asyncio.TimeoutError as e:
        raise TransientError("Trading points lookup timed out") from e
