"""Period-scoped referrer -> referred relationships."""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from referral_engine.db.database import Base, utcnow


class LinkStatus(str, Enum):
    PENDING = "pending"  # Signed up, no bet yet
    ACTIVE = "active"  # Placed at least one bet


class ReferralLink(Base):
    """A referral relationship scoped to a single period."""

    __tablename__ = "referral_links"
    __table_args__ = (
        UniqueConstraint("referred_address", "period_id", name="uq_referral_links_referred_period"),
        CheckConstraint("referrer_address <> referred_address", name="ck_referral_links_no_self_referral"),
        Index("idx_referral_links_referrer_period", "referrer_address", "period_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    period_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("referral_periods.id", ondelete="CASCADE"), nullable=False
    )
    referrer_address: Mapped[str] = mapped_column(String(42), nullable=False)
    referred_address: Mapped[str] = mapped_column(String(42), nullable=False)
    referral_code: Mapped[str] = mapped_column(String(20), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=LinkStatus.PENDING.value)

    linked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    first_bet_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_bet_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    lifetime_volume: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    def __repr__(self) -> str:
        return f"<ReferralLink {self.referrer_address} -> {self.referred_address} (period {self.period_id})>"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "periodId": self.period_id,
            "referrerAddress": self.referrer_address,
            "address": self.referred_address,
            "referralCode": self.referral_code,
            "status": self.status,
            "linkedAt": self.linked_at.isoformat() if self.linked_at else None,
            "firstBetAt": self.first_bet_at.isoformat() if self.first_bet_at else None,
            "lastBetAt": self.last_bet_at.isoformat() if self.last_bet_at else None,
            "lifetimeVolume": self.lifetime_volume,
        }
