"""Reward period model and its enums."""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import DateTime, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from referral_engine.db.database import Base, JSONType, utcnow


class StrategyType(str, Enum):
    GROWTH_MULTIPLIER = "growth_multiplier"
    REVENUE_SHARE = "revenue_share"
    MILESTONE_QUEST = "milestone_quest"
    TEAM_VOLUME = "team_volume"


class ResetMode(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    ROLLING_EXPIRY = "rolling_expiry"


class PeriodStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"


class ReferralPeriod(Base):
    """A time-boxed window during which one referral strategy is in effect."""

    __tablename__ = "referral_periods"
    __table_args__ = (
        # At most one active period, enforced by the database
        Index(
            "uq_referral_periods_single_active",
            "status",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    strategy: Mapped[str] = mapped_column(String(32), nullable=False)
    strategy_config: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    reset_mode: Mapped[str] = mapped_column(String(32), nullable=False, default=ResetMode.MANUAL.value)
    reset_config: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    referee_benefits: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PeriodStatus.DRAFT.value, index=True
    )

    starts_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    @property
    def strategy_type(self) -> StrategyType:
        return StrategyType(self.strategy)

    @property
    def is_active(self) -> bool:
        return self.status == PeriodStatus.ACTIVE.value

    @property
    def rolling_window_days(self) -> int | None:
        if self.reset_mode != ResetMode.ROLLING_EXPIRY.value:
            return None
        rolling = (self.reset_config or {}).get("rolling") or {}
        return rolling.get("windowDays")

    def __repr__(self) -> str:
        return f"<ReferralPeriod {self.id} {self.name!r} ({self.status})>"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "strategy": self.strategy,
            "strategyConfig": self.strategy_config,
            "resetMode": self.reset_mode,
            "resetConfig": self.reset_config,
            "refereeBenefits": self.referee_benefits,
            "status": self.status,
            "startsAt": self.starts_at.isoformat() if self.starts_at else None,
            "endsAt": self.ends_at.isoformat() if self.ends_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
