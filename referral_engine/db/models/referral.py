"""Database models for referral codes and the durable referrer relationship."""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from referral_engine.db.database import Base, utcnow


class ReferralCode(Base):
    """Unique referral code for each address."""

    __tablename__ = "referral_codes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    address: Mapped[str] = mapped_column(String(42), nullable=False, unique=True)
    code: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    uses: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Referral(Base):
    """Tracks which address referred which, independent of periods."""

    __tablename__ = "referrals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    referrer_address: Mapped[str] = mapped_column(String(42), nullable=False, index=True)
    referred_address: Mapped[str] = mapped_column(
        String(42),
        nullable=False,
        unique=True,  # Each address can only be referred once
    )
    code_used: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
