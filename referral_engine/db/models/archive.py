"""Frozen leaderboard snapshots taken when a period completes."""

from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from referral_engine.db.database import Base, JSONType, utcnow


class LeaderboardArchive(Base):
    """Immutable leaderboard snapshot, one per completed period."""

    __tablename__ = "leaderboard_archives"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    period_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("referral_periods.id"),
        nullable=False,
        unique=True,
    )
    period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reset_mode: Mapped[str] = mapped_column(String(32), nullable=False)

    # [{"rank", "address", "points", "referrals", "bonusPoints"}]
    rankings: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    # {"totalUsers", "totalReferrals", "totalBonusAwarded", "topReferrer"}
    stats: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    def __repr__(self) -> str:
        return f"<LeaderboardArchive period={self.period_id} ({len(self.rankings or [])} ranked)>"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "periodId": self.period_id,
            "periodStart": self.period_start.isoformat() if self.period_start else None,
            "periodEnd": self.period_end.isoformat() if self.period_end else None,
            "resetMode": self.reset_mode,
            "rankings": self.rankings,
            "stats": self.stats,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
