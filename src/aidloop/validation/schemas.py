from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator

HOURS_PER_BUCKET = 4
SCHEDULE_BUCKETS = 24 // HOURS_PER_BUCKET


class LearnedSchedule(BaseModel):
    """Per-time-of-day values keyed by 4-hour buckets of local time."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    values: List[float] = Field(min_length=SCHEDULE_BUCKETS, max_length=SCHEDULE_BUCKETS)

    @field_validator("values")
    @classmethod
    def _check_non_negative(cls, value: List[float]) -> List[float]:
        if any(item < 0 for item in value):
            raise ValueError("schedule values must be >= 0")
        return value

    def value_for_hour(self, hour: int) -> float:
        return self.values[hour // HOURS_PER_BUCKET]


class LoopSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    pump_basal_rate_units_per_hour: float = Field(default=0.3, ge=0.0)
    insulin_sensitivity: float = Field(default=45.0, gt=0.0)
    max_basal_rate_units_per_hour: float = Field(default=2.0, ge=0.0)
    max_bolus_units: float = Field(default=5.0, ge=0.0)
    shutoff_glucose: float = Field(default=85.0, gt=0.0)
    target_glucose: float = Field(default=90.0, gt=0.0)

    closed_loop_enabled: bool = False
    use_ml_algorithm: bool = False
    use_micro_bolus: bool = False
    micro_bolus_dose_factor: float = Field(default=0.3, ge=0.0)
    use_biological_invariant: bool = False
    adjust_target_glucose_during_exercise: bool = False

    pid_integrator_gain: float = Field(default=0.055, ge=0.0)
    pid_derivative_gain: float = Field(default=3.0, ge=0.0)

    ml_gain: float = Field(default=1.5, ge=0.0)
    ml_controller: Literal["added_glucose", "dnn"] = "added_glucose"
    ml_model_path: Optional[str] = None

    learned_basal_rates: Optional[LearnedSchedule] = None
    learned_insulin_sensitivities: Optional[LearnedSchedule] = None
    timezone: Optional[str] = None

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"unknown timezone {value!r}") from exc
        return value

    @field_validator("learned_insulin_sensitivities")
    @classmethod
    def _check_sensitivities(cls, value: Optional[LearnedSchedule]) -> Optional[LearnedSchedule]:
        if value is not None and any(item <= 0 for item in value.values):
            raise ValueError("insulin sensitivities must be > 0")
        return value

    @property
    def correction_duration(self) -> timedelta:
        return timedelta(minutes=30)

    @property
    def freshness_interval(self) -> timedelta:
        return timedelta(minutes=10)

    def local_time(self, at: datetime) -> datetime:
        if self.timezone is None:
            return at.astimezone()
        return at.astimezone(ZoneInfo(self.timezone))

    def learned_basal_rate(self, at: datetime) -> float:
        if self.learned_basal_rates is None:
            return self.pump_basal_rate_units_per_hour
        return self.learned_basal_rates.value_for_hour(self.local_time(at).hour)

    def learned_insulin_sensitivity(self, at: datetime) -> float:
        if self.learned_insulin_sensitivities is None:
            return self.insulin_sensitivity
        return self.learned_insulin_sensitivities.value_for_hour(self.local_time(at).hour)

    def max_scheduled_basal_rate(self) -> float:
        rates = [self.pump_basal_rate_units_per_hour]
        if self.learned_basal_rates is not None:
            rates.extend(self.learned_basal_rates.values)
        return max(rates)
