from referral_engine.db.models.archive import LeaderboardArchive
from referral_engine.db.models.bonus import BonusType, ReferralBonus
from referral_engine.db.models.link import LinkStatus, ReferralLink
from referral_engine.db.models.period import PeriodStatus, ReferralPeriod, ResetMode, StrategyType
from referral_engine.db.models.referral import Referral, ReferralCode
from referral_engine.db.models.trading_points import TradingPointsRecord

__all__ = [
    "ReferralPeriod",
    "StrategyType",
    "ResetMode",
    "PeriodStatus",
    "ReferralLink",
    "LinkStatus",
    "ReferralBonus",
    "BonusType",
    "LeaderboardArchive",
    "ReferralCode",
    "Referral",
    "TradingPointsRecord",
]
