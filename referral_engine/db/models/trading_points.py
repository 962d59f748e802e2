from datetime import datetime

from sqlalchemy import BigInteger, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from referral_engine.db.database import Base, utcnow


class TradingPointsRecord(Base):
    """Last trading-points value reported by the host for an address."""

    __tablename__ = "trading_points"

    address: Mapped[str] = mapped_column(String(42), primary_key=True)
    points: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
