"""Referral bonus strategies.

Each strategy kind has a typed config model and a pure calculator that turns
a referrer's link snapshots, trading points and already-awarded bonuses into
a ``BonusResult``. Calculators never touch the database; the ledger decides
what actually gets written.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from referral_engine.core.exceptions import ValidationError
from referral_engine.db.database import as_utc
from referral_engine.db.models.bonus import BonusType
from referral_engine.db.models.link import LinkStatus, ReferralLink
from referral_engine.db.models.period import StrategyType


# ---------------------------------------------------------------------------
# Config models
# ---------------------------------------------------------------------------


class StrategyConfigModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class GrowthTier(StrategyConfigModel):
    referrals: int = Field(ge=0)
    multiplier: float = Field(ge=1.0, le=5.0)


class ActiveDefinition(StrategyConfigModel):
    bet_within_days: float = Field(gt=0)
    min_lifetime_volume: float = Field(default=0, ge=0)


class GrowthMultiplierConfig(StrategyConfigModel):
    tiers: list[GrowthTier] = Field(min_length=1)
    active_definition: ActiveDefinition

    @model_validator(mode="after")
    def tiers_ascending(self) -> "GrowthMultiplierConfig":
        for prev, tier in zip(self.tiers, self.tiers[1:]):
            if tier.referrals <= prev.referrals:
                raise ValueError("Referral counts must be ascending")
            if tier.multiplier <= prev.multiplier:
                raise ValueError("Multipliers must be ascending")
        return self


class RevenueShareConfig(StrategyConfigModel):
    share_percentage: float = Field(ge=0, le=50)
    duration_days: int | None = Field(default=None, gt=0)  # None = lifetime
    max_per_referral: int = Field(default=0, ge=0)  # 0 = unlimited
    max_monthly_total: int = Field(default=0, ge=0)  # 0 = unlimited


class Milestone(StrategyConfigModel):
    volume: float = Field(ge=0)  # 0 = link created
    reward: int = Field(gt=0)
    label: str = ""


class MilestoneQuestConfig(StrategyConfigModel):
    duration_days: int | None = Field(default=None, gt=0)
    referrer_milestones: list[Milestone] = Field(default_factory=list)
    referee_milestones: list[Milestone] = Field(default_factory=list)

    @model_validator(mode="after")
    def milestones_ascending(self) -> "MilestoneQuestConfig":
        if not self.referrer_milestones and not self.referee_milestones:
            raise ValueError("At least one milestone is required")
        for milestones in (self.referrer_milestones, self.referee_milestones):
            for prev, milestone in zip(milestones, milestones[1:]):
                if milestone.volume <= prev.volume:
                    raise ValueError("Volume thresholds must be ascending")
        return self


class TeamTier(StrategyConfigModel):
    weekly_volume: float = Field(gt=0)
    multiplier: float = Field(ge=1.0, le=5.0)


class TeamVolumeConfig(StrategyConfigModel):
    reset_frequency: Literal["weekly", "monthly"] = "weekly"
    team_tiers: list[TeamTier] = Field(min_length=1)

    @model_validator(mode="after")
    def tiers_ascending(self) -> "TeamVolumeConfig":
        for prev, tier in zip(self.team_tiers, self.team_tiers[1:]):
            if tier.weekly_volume <= prev.weekly_volume:
                raise ValueError("Volume thresholds must be ascending")
        return self


CONFIG_MODELS: dict[StrategyType, type[StrategyConfigModel]] = {
    StrategyType.GROWTH_MULTIPLIER: GrowthMultiplierConfig,
    StrategyType.REVENUE_SHARE: RevenueShareConfig,
    StrategyType.MILESTONE_QUEST: MilestoneQuestConfig,
    StrategyType.TEAM_VOLUME: TeamVolumeConfig,
}


def parse_strategy_type(strategy: str | StrategyType) -> StrategyType:
    try:
        return StrategyType(strategy)
    except ValueError:
        raise ValidationError(f"Unknown strategy type: {strategy}", code="unknown_strategy")


def _format_errors(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"])
        message = error["msg"].removeprefix("Value error, ")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts)


def validate_strategy_config(strategy: str | StrategyType, config: dict[str, Any] | None) -> StrategyConfigModel:
    """Parse a raw config against its strategy kind, raising ValidationError on mismatch."""
    strategy_type = parse_strategy_type(strategy)
    if not isinstance(config, dict):
        raise ValidationError("Strategy config must be an object", code="invalid_config")
    try:
        return CONFIG_MODELS[strategy_type].model_validate(config)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid config: {_format_errors(e)}", code="invalid_config") from e


# ---------------------------------------------------------------------------
# Calculation context and results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LinkSnapshot:
    id: int
    referred_address: str
    status: str
    lifetime_volume: float
    linked_at: datetime
    first_bet_at: datetime | None = None
    last_bet_at: datetime | None = None

    @classmethod
    def from_model(cls, link: ReferralLink) -> "LinkSnapshot":
        return cls(
            id=link.id,
            referred_address=link.referred_address,
            status=link.status,
            lifetime_volume=link.lifetime_volume or 0.0,
            linked_at=as_utc(link.linked_at),
            first_bet_at=as_utc(link.first_bet_at),
            last_bet_at=as_utc(link.last_bet_at),
        )

    @property
    def is_active(self) -> bool:
        return self.status == LinkStatus.ACTIVE.value


@dataclass(frozen=True)
class AwardedBonus:
    """A ledger row as seen by the calculators."""

    bonus_type: str
    points: int
    source_address: str | None = None
    milestone_key: str | None = None


@dataclass(frozen=True)
class BonusContext:
    referrer_address: str
    period_id: int
    links: tuple[LinkSnapshot, ...]
    trading_points: dict[str, int]
    existing_bonuses: tuple[AwardedBonus, ...]
    now: datetime

    def points_for(self, address: str) -> int:
        return int(self.trading_points.get(address, 0) or 0)

    def recorded_points(self, bonus_type: str) -> dict[str | None, int]:
        """Ledger points of one bonus type, summed per source address."""
        recorded: dict[str | None, int] = {}
        for bonus in self.existing_bonuses:
            if bonus.bonus_type == bonus_type:
                recorded[bonus.source_address] = recorded.get(bonus.source_address, 0) + bonus.points
        return recorded

    def awarded_milestones(self) -> dict[str, int]:
        return {
            bonus.milestone_key: bonus.points
            for bonus in self.existing_bonuses
            if bonus.milestone_key is not None
        }


@dataclass
class BonusItem:
    source_address: str | None
    bonus_type: str
    points: int
    reason: str
    milestone_key: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def stream_key(self) -> str:
        """Identity of the award stream this item belongs to."""
        if self.milestone_key:
            return self.milestone_key
        return f"{self.bonus_type}:{self.source_address or 'self'}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceAddress": self.source_address,
            "bonusType": self.bonus_type,
            "points": self.points,
            "reason": self.reason,
        }


@dataclass
class BonusResult:
    total_bonus: int = 0
    breakdown: list[BonusItem] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalBonus": self.total_bonus,
            "breakdown": [item.to_dict() for item in self.breakdown],
        }


def floor_points(value: Decimal) -> int:
    if value <= 0:
        return 0
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def incremental_points(own_points: int, multiplier: float) -> int:
    """Points above baseline for ``own_points`` scaled by ``multiplier``."""
    return floor_points(Decimal(own_points) * (Decimal(str(multiplier)) - 1))


def short_address(address: str) -> str:
    return f"{address[:6]}...{address[-4:]}"


def current_window_start(frequency: str, now: datetime) -> datetime:
    """Start of the current team-volume window in UTC."""
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if frequency == "monthly":
        return midnight.replace(day=1)
    return midnight - timedelta(days=midnight.weekday())


# ---------------------------------------------------------------------------
# Calculators
# ---------------------------------------------------------------------------


def calculate_growth_multiplier(config: GrowthMultiplierConfig, context: BonusContext) -> BonusResult:
    """More active referrals unlock a higher multiplier on the referrer's own points."""
    bet_window = timedelta(days=config.active_definition.bet_within_days)
    min_volume = config.active_definition.min_lifetime_volume

    active_count = sum(
        1
        for link in context.links
        if link.is_active
        and link.last_bet_at is not None
        and context.now - link.last_bet_at < bet_window
        and link.lifetime_volume >= min_volume
    )
    if active_count == 0:
        return BonusResult()

    tier = None
    for candidate in config.tiers:
        if active_count >= candidate.referrals:
            tier = candidate
    if tier is None:
        return BonusResult()

    points = incremental_points(context.points_for(context.referrer_address), tier.multiplier)
    if points <= 0:
        return BonusResult()

    item = BonusItem(
        source_address=None,
        bonus_type=BonusType.GROWTH_MULTIPLIER.value,
        points=points,
        reason=f"{tier.multiplier}x multiplier ({active_count} active referrals, tier {tier.referrals}+)",
    )
    return BonusResult(total_bonus=points, breakdown=[item])


def calculate_revenue_share(config: RevenueShareConfig, context: BonusContext) -> BonusResult:
    """Referrer earns a percentage of each referred user's trading points.

    Each item is the referral's recorded points plus its new increment.
    ``maxMonthlyTotal`` caps the whole period-to-date: only the allowance
    left after what the ledger already holds is split across increments.
    """
    share = Decimal(str(config.share_percentage)) / 100
    duration = timedelta(days=config.duration_days) if config.duration_days else None
    recorded = context.recorded_points(BonusType.REVENUE_SHARE.value)

    items: list[BonusItem] = []
    increments: list[int] = []
    # Pending links count too: a referee's points are shared from signup, not from first bet
    for link in context.links:
        if duration is not None and context.now - link.linked_at > duration:
            continue

        entitlement = floor_points(Decimal(context.points_for(link.referred_address)) * share)
        if config.max_per_referral > 0:
            entitlement = min(entitlement, config.max_per_referral)
        already = recorded.get(link.referred_address, 0)
        if max(entitlement, already) <= 0:
            continue

        items.append(
            BonusItem(
                source_address=link.referred_address,
                bonus_type=BonusType.REVENUE_SHARE.value,
                points=already,
                reason=f"{config.share_percentage}% of {short_address(link.referred_address)}'s points",
            )
        )
        increments.append(max(entitlement - already, 0))

    wanted = sum(increments)
    if config.max_monthly_total > 0:
        allowance = max(config.max_monthly_total - sum(recorded.values()), 0)
        if wanted > allowance:
            ratio = Decimal(allowance) / Decimal(wanted)
            increments = [floor_points(Decimal(n) * ratio) for n in increments]
            for item in items:
                item.reason += f" (scaled to {config.max_monthly_total} cap)"

    for item, increment in zip(items, increments):
        item.points += increment
    items = [item for item in items if item.points > 0]

    return BonusResult(total_bonus=sum(item.points for item in items), breakdown=items)


def milestone_key(direction: str, link_id: int, volume: float) -> str:
    threshold = int(volume) if float(volume).is_integer() else volume
    return f"{direction}:{link_id}:{threshold}"


def calculate_milestone_quest(config: MilestoneQuestConfig, context: BonusContext) -> BonusResult:
    """Flat rewards once a referral's volume crosses each threshold.

    Already-awarded milestones are reported at their recorded points so that
    recomputation never re-awards them.
    """
    awarded = context.awarded_milestones()
    duration = timedelta(days=config.duration_days) if config.duration_days else None

    items: list[BonusItem] = []
    for link in context.links:
        accepting_new = duration is None or context.now - link.linked_at <= duration
        for direction, milestones in (
            ("referrer", config.referrer_milestones),
            ("referee", config.referee_milestones),
        ):
            for milestone in sorted(milestones, key=lambda m: m.volume):
                key = milestone_key(direction, link.id, milestone.volume)
                if key in awarded:
                    points = awarded[key]
                elif accepting_new and (
                    milestone.volume == 0 or link.lifetime_volume >= milestone.volume
                ):
                    points = milestone.reward
                else:
                    continue

                label = milestone.label or f"${milestone.volume:g} volume"
                items.append(
                    BonusItem(
                        source_address=link.referred_address,
                        bonus_type=BonusType.MILESTONE.value,
                        points=points,
                        reason=f"{label} ({short_address(link.referred_address)})",
                        milestone_key=key,
                        details={
                            "direction": direction,
                            "label": milestone.label,
                            "volumeThreshold": milestone.volume,
                        },
                    )
                )

    return BonusResult(total_bonus=sum(item.points for item in items), breakdown=items)


def calculate_team_volume(config: TeamVolumeConfig, context: BonusContext) -> BonusResult:
    """Combined referral volume in the current window unlocks a multiplier on own points."""
    window_start = current_window_start(config.reset_frequency, context.now)

    def in_window(link: LinkSnapshot) -> bool:
        if link.linked_at >= window_start:
            return True
        return link.last_bet_at is not None and link.last_bet_at >= window_start

    team_volume = sum(link.lifetime_volume for link in context.links if in_window(link))
    if team_volume <= 0:
        return BonusResult()

    tier = None
    for candidate in config.team_tiers:
        if team_volume >= candidate.weekly_volume:
            tier = candidate
    if tier is None:
        return BonusResult()

    points = incremental_points(context.points_for(context.referrer_address), tier.multiplier)
    if points <= 0:
        return BonusResult()

    item = BonusItem(
        source_address=None,
        bonus_type=BonusType.TEAM_VOLUME.value,
        points=points,
        reason=f"{tier.multiplier}x team multiplier (${team_volume:.2f} {config.reset_frequency} volume)",
    )
    return BonusResult(total_bonus=points, breakdown=[item])


CALCULATORS: dict[StrategyType, Callable[[Any, BonusContext], BonusResult]] = {
    StrategyType.GROWTH_MULTIPLIER: calculate_growth_multiplier,
    StrategyType.REVENUE_SHARE: calculate_revenue_share,
    StrategyType.MILESTONE_QUEST: calculate_milestone_quest,
    StrategyType.TEAM_VOLUME: calculate_team_volume,
}


def calculate_bonus(strategy: str | StrategyType, config: dict[str, Any], context: BonusContext) -> BonusResult:
    """Dispatch to the calculator for ``strategy``."""
    strategy_type = parse_strategy_type(strategy)
    parsed = validate_strategy_config(strategy_type, config)
    if not context.links:
        return BonusResult()
    return CALCULATORS[strategy_type](parsed, context)
