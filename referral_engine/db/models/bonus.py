"""Append-only ledger of awarded referral bonuses."""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from referral_engine.db.database import Base, JSONType, utcnow


class BonusType(str, Enum):
    MILESTONE = "milestone"
    REVENUE_SHARE = "revenue_share"
    GROWTH_MULTIPLIER = "growth_multiplier"
    TEAM_VOLUME = "team_volume"


class ReferralBonus(Base):
    """A single awarded increment of points. Never updated or deleted."""

    __tablename__ = "referral_bonuses"
    __table_args__ = (
        # Milestone keys and accrual marks are awarded at most once
        UniqueConstraint(
            "recipient_address", "period_id", "award_key", name="uq_referral_bonuses_award_key"
        ),
        CheckConstraint("points >= 0", name="ck_referral_bonuses_points_non_negative"),
        Index("idx_referral_bonuses_recipient_period", "recipient_address", "period_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    recipient_address: Mapped[str] = mapped_column(String(42), nullable=False)
    period_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("referral_periods.id", ondelete="CASCADE"), nullable=False
    )
    bonus_type: Mapped[str] = mapped_column(String(32), nullable=False)
    points: Mapped[int] = mapped_column(BigInteger, nullable=False)
    source_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    award_key: Mapped[str] = mapped_column(String(160), nullable=False)

    # milestone: {"milestoneKey", "direction", "label", "volumeThreshold"}
    # accruals:  {"entitlement", "reason"}
    bonus_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )

    awarded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    @property
    def milestone_key(self) -> str | None:
        return (self.bonus_metadata or {}).get("milestoneKey")

    def __repr__(self) -> str:
        return f"<ReferralBonus {self.bonus_type} {self.points} -> {self.recipient_address}>"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "recipientAddress": self.recipient_address,
            "periodId": self.period_id,
            "bonusType": self.bonus_type,
            "points": self.points,
            "sourceAddress": self.source_address,
            "metadata": self.bonus_metadata,
            "awardedAt": self.awarded_at.isoformat() if self.awarded_at else None,
        }
