from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Dict


class InsulinKind(Enum):
    NOVOLOG = "novolog"
    HUMALOG = "humalog"
    APIDRA = "apidra"
    FIASP = "fiasp"
    LYUMJEV = "lyumjev"
    AFREZZA = "afrezza"


DEFAULT_INSULIN_KIND = InsulinKind.HUMALOG


@dataclass(frozen=True)
class ExponentialInsulinModel:
    """
    Exponential insulin-action curve.

    Parameterized by the total action duration, the time of peak activity and
    an absorption delay. All three are expressed in minutes.
    """
    action_duration: float
    peak_activity_time: float
    delay: float = 10.0
    tau: float = field(init=False, repr=False)
    a: float = field(init=False, repr=False)
    s: float = field(init=False, repr=False)

    def __post_init__(self) -> None:
        duration = self.action_duration
        peak = self.peak_activity_time
        tau = peak * (1 - peak / duration) / (1 - 2 * peak / duration)
        a = 2 * tau / duration
        s = 1 / (1 - a + (1 + a) * math.exp(-duration / tau))
        object.__setattr__(self, "tau", tau)
        object.__setattr__(self, "a", a)
        object.__setattr__(self, "s", s)

    @property
    def effect_duration(self) -> timedelta:
        return timedelta(minutes=self.action_duration + self.delay)

    def percent_effect_remaining(self, elapsed: timedelta) -> float:
        """Fraction of a delivered dose that is still active after ``elapsed``."""
        t = elapsed.total_seconds() / 60.0 - self.delay
        if t <= 0:
            return 1.0
        if t >= self.action_duration:
            return 0.0
        tau, a, s, duration = self.tau, self.a, self.s, self.action_duration
        return 1 - s * (1 - a) * (
            (t ** 2 / (tau * duration * (1 - a)) - t / tau - 1) * math.exp(-t / tau) + 1
        )


RAPID_ACTING_ADULT = ExponentialInsulinModel(action_duration=360, peak_activity_time=75, delay=10)
FIASP = ExponentialInsulinModel(action_duration=360, peak_activity_time=55, delay=10)
LYUMJEV = ExponentialInsulinModel(action_duration=360, peak_activity_time=55, delay=10)
AFREZZA = ExponentialInsulinModel(action_duration=300, peak_activity_time=29, delay=10)

INSULIN_MODELS: Dict[InsulinKind, ExponentialInsulinModel] = {
    InsulinKind.NOVOLOG: RAPID_ACTING_ADULT,
    InsulinKind.HUMALOG: RAPID_ACTING_ADULT,
    InsulinKind.APIDRA: RAPID_ACTING_ADULT,
    InsulinKind.FIASP: FIASP,
    InsulinKind.LYUMJEV: LYUMJEV,
    InsulinKind.AFREZZA: AFREZZA,
}


def model_for(kind: InsulinKind) -> ExponentialInsulinModel:
    return INSULIN_MODELS[kind]
