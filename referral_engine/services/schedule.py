"""Reset configuration models and schedule arithmetic."""

import calendar
from datetime import datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from referral_engine.config import settings
from referral_engine.core.exceptions import ValidationError
from referral_engine.db.database import as_utc, utcnow
from referral_engine.db.models.period import ResetMode


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class ScheduleConfig(_CamelModel):
    frequency: Literal["daily", "weekly", "monthly"]
    day_of_week: int | None = Field(default=None, ge=0, le=6)  # 0 = Sunday
    day_of_month: int | None = Field(default=None, ge=1, le=31)
    time_utc: str = Field(default="00:00", pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    next_reset_at: datetime | None = None


class RollingConfig(_CamelModel):
    window_days: int = Field(gt=0)


class ResetConfig(_CamelModel):
    mode: ResetMode | None = None
    schedule: ScheduleConfig | None = None
    rolling: RollingConfig | None = None
    archive_enabled: bool = True


class RefereeBenefits(_CamelModel):
    """Informational: surfaced to clients, applied by the host application."""

    signup_bonus: int = Field(default_factory=lambda: settings.default_signup_bonus, ge=0)
    first_bet_multiplier: float = Field(
        default_factory=lambda: settings.default_first_bet_multiplier, ge=1.0, le=10.0
    )
    max_stake: float = Field(default_factory=lambda: settings.default_max_stake, ge=0)


def _parse(model: type[_CamelModel], data: dict[str, Any] | None, what: str) -> Any:
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError(f"{what} must be an object")
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid {what}: {details}") from e


def parse_reset_mode(reset_mode: str | ResetMode) -> ResetMode:
    try:
        return ResetMode(reset_mode)
    except ValueError:
        raise ValidationError(f"Unknown reset mode: {reset_mode}")


def normalize_reset_config(
    reset_mode: str | ResetMode,
    reset_config: dict[str, Any] | None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Validate a reset config against its mode and fill in the next reset time."""
    mode = parse_reset_mode(reset_mode)
    config: ResetConfig = _parse(ResetConfig, reset_config, "reset config")
    config.mode = mode

    if mode == ResetMode.SCHEDULED:
        if config.schedule is None:
            raise ValidationError("Scheduled reset mode requires a schedule")
        if config.schedule.next_reset_at is None:
            config.schedule.next_reset_at = calculate_next_reset_time(config.schedule, now)
        else:
            config.schedule.next_reset_at = as_utc(config.schedule.next_reset_at)
    elif mode == ResetMode.ROLLING_EXPIRY and config.rolling is None:
        raise ValidationError("Rolling expiry reset mode requires rolling.windowDays")

    return config.model_dump(mode="json", by_alias=True, exclude_none=True)


def normalize_referee_benefits(benefits: dict[str, Any] | None) -> dict[str, Any]:
    parsed: RefereeBenefits = _parse(RefereeBenefits, benefits, "referee benefits")
    return parsed.model_dump(by_alias=True)


def get_schedule(reset_config: dict[str, Any] | None) -> ScheduleConfig | None:
    raw = (reset_config or {}).get("schedule")
    if not raw:
        return None
    return ScheduleConfig.model_validate(raw)


def get_next_reset_at(reset_config: dict[str, Any] | None) -> datetime | None:
    schedule = get_schedule(reset_config)
    if schedule is None:
        return None
    return as_utc(schedule.next_reset_at)


def with_next_reset_at(reset_config: dict[str, Any], next_reset_at: datetime) -> dict[str, Any]:
    """Copy of ``reset_config`` with the schedule advanced to ``next_reset_at``."""
    schedule = dict(reset_config.get("schedule") or {})
    schedule["nextResetAt"] = as_utc(next_reset_at).isoformat().replace("+00:00", "Z")
    return {**reset_config, "schedule": schedule}


def calculate_next_reset_time(schedule: ScheduleConfig, now: datetime | None = None) -> datetime:
    """Next instant strictly after ``now`` that matches the schedule, in UTC."""
    now = as_utc(now) if now else utcnow()
    hours, minutes = (int(part) for part in schedule.time_utc.split(":"))
    today = now.replace(hour=hours, minute=minutes, second=0, microsecond=0)

    if schedule.frequency == "daily":
        return today if today > now else today + timedelta(days=1)

    if schedule.frequency == "weekly":
        target = schedule.day_of_week if schedule.day_of_week is not None else 1
        current = (today.weekday() + 1) % 7  # Python counts from Monday
        days_until = (target - current) % 7
        candidate = today + timedelta(days=days_until)
        return candidate if candidate > now else candidate + timedelta(days=7)

    target_day = schedule.day_of_month or 1
    candidate = _on_day(today, today.year, today.month, target_day)
    if candidate > now:
        return candidate
    year, month = (now.year + 1, 1) if now.month == 12 else (now.year, now.month + 1)
    return _on_day(today, year, month, target_day)


def _on_day(base: datetime, year: int, month: int, day: int) -> datetime:
    """``base`` moved to ``day`` of the given month, clamped to the month length."""
    return base.replace(year=year, month=month, day=min(day, calendar.monthrange(year, month)[1]))
