"""
Physiological PID controller.

Turns glucose error into a temp basal rate. The integral term accumulates
the delta-glucose error (observed glucose change minus the change explained
by insulin action) instead of the raw target error, and the output subtracts
insulin on board above the steady-state basal level.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np

from aidloop.api.controller import DosingContext
from aidloop.core.devices.models import GlucoseSource
from aidloop.core.frame import STEPS_PER_HOUR, FeatureFrame
from aidloop.core.insulin.ledger import baseline_insulin_on_board
from aidloop.core.insulin.models import DEFAULT_INSULIN_KIND, InsulinKind
from aidloop.core.safety.config import SafetyConfig
from aidloop.validation.schemas import LoopSettings

logger = logging.getLogger("aidloop.pid")

PREDICTION_HORIZON = timedelta(minutes=15)
PREDICTION_LOOKBACK = timedelta(minutes=30)
PREDICTION_MAX_POINTS = 5
DELTA_GLUCOSE_STEPS = 4


@dataclass
class PIDResult:
    at: datetime
    kp: float
    ki: float
    kd: float
    error: float
    temp_basal: float
    accumulated_error: float
    derivative: float
    last_glucose: Optional[float]
    last_glucose_at: Optional[datetime]
    delta_glucose_error: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["at"] = self.at.isoformat()
        data["last_glucose_at"] = self.last_glucose_at.isoformat() if self.last_glucose_at else None
        return data


def delta_glucose_error(
    frame: Optional[FeatureFrame],
    basal_rate: float,
    insulin_sensitivity: float,
    digestion_threshold: float = 40.0,
) -> Optional[float]:
    """
    Observed glucose rate of change minus the rate explained by insulin, in
    mg/dL per hour, over the last four frame steps.

    None when there is no usable frame or when the unexplained rise is at or
    above the digestion threshold (a meal is being absorbed).
    """
    if frame is None or len(frame) < DELTA_GLUCOSE_STEPS + 1:
        return None
    rows = frame.rows[-(DELTA_GLUCOSE_STEPS + 1):]
    per_hour = STEPS_PER_HOUR / DELTA_GLUCOSE_STEPS

    delta_glucose = (rows[-1].glucose - rows[0].glucose) * per_hour
    insulin_active = (
        rows[0].insulin_on_board
        - rows[-1].insulin_on_board
        + sum(row.insulin_delivered for row in rows[1:])
    )
    basal_insulin = basal_rate * DELTA_GLUCOSE_STEPS / STEPS_PER_HOUR
    theoretical = (basal_insulin - insulin_active) * insulin_sensitivity * per_hour

    error = delta_glucose - theoretical
    if error >= digestion_threshold:
        return None
    return error


def least_squares_fit(x: Sequence[float], y: Sequence[float]) -> Optional[Tuple[float, float]]:
    """Ordinary least squares line through the points, as (slope, intercept)."""
    xs = np.asarray(x, dtype=float)
    ys = np.asarray(y, dtype=float)
    if xs.size < 2 or xs.size != ys.size:
        return None
    x_centered = xs - xs.mean()
    denominator = float(np.sum(x_centered ** 2))
    if denominator == 0.0:
        return None
    slope = float(np.sum(x_centered * (ys - ys.mean())) / denominator)
    intercept = float(ys.mean() - slope * xs.mean())
    if not (np.isfinite(slope) and np.isfinite(intercept)):
        return None
    return slope, intercept


def predict_glucose_in_15_minutes(glucose_source: GlucoseSource, at: datetime) -> Optional[float]:
    readings = glucose_source.readings_between(at - PREDICTION_LOOKBACK, at)
    readings = sorted(readings, key=lambda sample: sample.date)
    if len(readings) < 2:
        return None
    readings = readings[-PREDICTION_MAX_POINTS:]
    x = [(sample.date - at).total_seconds() for sample in readings]
    y = [sample.value for sample in readings]
    fit = least_squares_fit(x, y)
    if fit is None:
        logger.debug("Glucose prediction abstained: degenerate fit over %d readings", len(readings))
        return None
    slope, intercept = fit
    return PREDICTION_HORIZON.total_seconds() * slope + intercept


class PhysiologicalController:
    """PID over glucose error; keeps its integral and derivative memory between cycles."""

    name = "physiological"

    def __init__(self, glucose_source: GlucoseSource, safety_config: Optional[SafetyConfig] = None) -> None:
        self.glucose_source = glucose_source
        self.safety_config = safety_config or SafetyConfig()
        self.kp = 1.0
        self.accumulated_error = 0.0
        self.last_glucose: Optional[float] = None
        self.last_glucose_at: Optional[datetime] = None

    def delta_glucose_error(self, settings: LoopSettings, frame: Optional[FeatureFrame], at: datetime) -> Optional[float]:
        return delta_glucose_error(
            frame,
            settings.learned_basal_rate(at),
            settings.learned_insulin_sensitivity(at),
            self.safety_config.digestion_threshold,
        )

    def predict_glucose_in_15_minutes(self, at: datetime) -> Optional[float]:
        return predict_glucose_in_15_minutes(self.glucose_source, at)

    def temp_basal(
        self,
        settings: LoopSettings,
        glucose: float,
        target: float,
        insulin_on_board: float,
        frame: Optional[FeatureFrame],
        at: datetime,
        insulin_kind: InsulinKind = DEFAULT_INSULIN_KIND,
    ) -> PIDResult:
        basal_rate = settings.learned_basal_rate(at)
        insulin_sensitivity = settings.learned_insulin_sensitivity(at)
        ki = settings.pid_integrator_gain
        kd = settings.pid_derivative_gain
        limit = self.safety_config.integral_limit

        error = glucose - target
        delta_error = self.delta_glucose_error(settings, frame, at)
        derivative = 0.0
        max_age = timedelta(minutes=self.safety_config.derivative_max_age_minutes)
        if self.last_glucose is not None and self.last_glucose_at is not None and at - self.last_glucose_at < max_age:
            derivative = glucose - self.last_glucose
            if delta_error is not None:
                self.accumulated_error = min(max(self.accumulated_error + delta_error, -limit), limit)

        output = self.kp * error + ki * self.accumulated_error + kd * derivative
        insulin_needed = output / insulin_sensitivity
        net_iob = max(insulin_on_board - baseline_insulin_on_board(basal_rate, insulin_kind), 0.0)
        correction = insulin_needed - net_iob
        rate = correction * 3600.0 / settings.correction_duration.total_seconds() + basal_rate

        result = PIDResult(
            at=at,
            kp=self.kp,
            ki=ki,
            kd=kd,
            error=error,
            temp_basal=rate,
            accumulated_error=self.accumulated_error,
            derivative=derivative,
            last_glucose=self.last_glucose,
            last_glucose_at=self.last_glucose_at,
            delta_glucose_error=delta_error,
        )
        self.last_glucose = glucose
        self.last_glucose_at = at
        logger.debug(
            "PID error=%.1f integral=%.1f derivative=%.1f rate=%.3f",
            error, self.accumulated_error, derivative, rate,
        )
        return result

    def propose(self, context: DosingContext) -> Optional[float]:
        return self.temp_basal(
            context.settings,
            context.glucose,
            context.target_glucose,
            context.insulin_on_board,
            context.frame,
            context.at,
            context.insulin_kind,
        ).temp_basal

    def reset(self) -> None:
        self.accumulated_error = 0.0
        self.last_glucose = None
        self.last_glucose_at = None

    def get_state(self) -> Dict[str, Any]:
        return {
            "accumulated_error": self.accumulated_error,
            "last_glucose": self.last_glucose,
            "last_glucose_at": self.last_glucose_at.isoformat() if self.last_glucose_at else None,
        }

    def set_state(self, state: Dict[str, Any]) -> None:
        self.accumulated_error = state.get("accumulated_error", self.accumulated_error)
        self.last_glucose = state.get("last_glucose")
        last_at = state.get("last_glucose_at")
        self.last_glucose_at = datetime.fromisoformat(last_at) if last_at else None
