"""
Closed-loop orchestrator.

One call to ``LoopOrchestrator.loop`` is one dosing cycle: staleness checks,
controller proposals, safety arbitration, guardrails, dose selection, pump
commands and safety-ledger bookkeeping. Each cycle ends in exactly one
``LoopAction``.
"""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence, Tuple

from aidloop.api.controller import DosingContext, DosingController
from aidloop.core.algorithms.pid_controller import PhysiologicalController, PIDResult
from aidloop.core.devices.models import ExerciseSignal, GlucoseSource, PumpManager
from aidloop.core.errors import PumpCommandError
from aidloop.core.frame import FeatureFrameBuilder
from aidloop.core.insulin.ledger import DoseLedger
from aidloop.core.safety.arbiter import SafetyArbiter
from aidloop.core.safety.config import SafetyConfig
from aidloop.core.target import TargetGlucoseService, WorkoutStatus
from aidloop.validation import SettingsStore
from aidloop.validation.schemas import LoopSettings

logger = logging.getLogger("aidloop.loop")


class LoopAction(Enum):
    OPEN_LOOP = "open_loop"
    GLUCOSE_STALE = "glucose_stale"
    PUMP_STALE = "pump_stale"
    NO_PUMP_MANAGER = "no_pump_manager"
    PUMP_ERROR = "pump_error"
    DOSE_SET = "dose_set"


@dataclass
class SafetyResult:
    ml_temp_basal: float
    safety_temp_basal: float
    physiological_temp_basal: float
    actual_temp_basal: float
    ml_micro_bolus: Optional[float]
    physiological_micro_bolus: float
    actual_micro_bolus: float
    ml_insulin_last_three_hours: float
    biological_invariant: Optional[float]
    biological_invariant_violation: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DoseDecision:
    temp_basal: float
    micro_bolus: float
    safety_result: SafetyResult

    def to_dict(self) -> Dict[str, Any]:
        return {
            "temp_basal": self.temp_basal,
            "micro_bolus": self.micro_bolus,
            "safety_result": self.safety_result.to_dict(),
        }


@dataclass
class LoopResult:
    at: datetime
    action: LoopAction
    glucose: Optional[float] = None
    predicted_glucose: Optional[float] = None
    insulin_on_board: Optional[float] = None
    target_glucose: Optional[float] = None
    pid: Optional[PIDResult] = None
    decision: Optional[DoseDecision] = None
    message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.action == LoopAction.DOSE_SET

    def to_dict(self) -> Dict[str, Any]:
        return {
            "at": self.at.isoformat(),
            "action": self.action.value,
            "glucose": self.glucose,
            "predicted_glucose": self.predicted_glucose,
            "insulin_on_board": self.insulin_on_board,
            "target_glucose": self.target_glucose,
            "pid": self.pid.to_dict() if self.pid else None,
            "decision": self.decision.to_dict() if self.decision else None,
            "message": self.message,
        }


class LoopOrchestrator:
    """
    Sequences one dosing cycle.

    Owns the micro-bolus gate and the latest result. The dose ledger, PID
    memory and safety ledger are owned by their components and only touched
    from inside a cycle, which the scheduler runs one at a time.
    """

    def __init__(
        self,
        settings_store: SettingsStore,
        glucose_source: GlucoseSource,
        ledger: DoseLedger,
        physiological: Optional[PhysiologicalController] = None,
        arbiter: Optional[SafetyArbiter] = None,
        ml_controllers: Sequence[DosingController] = (),
        pump: Optional[PumpManager] = None,
        exercise: Optional[ExerciseSignal] = None,
        safety_config: Optional[SafetyConfig] = None,
    ) -> None:
        self.safety_config = safety_config or SafetyConfig()
        self.settings_store = settings_store
        self.glucose_source = glucose_source
        self.ledger = ledger
        self.physiological = physiological or PhysiologicalController(glucose_source, self.safety_config)
        self.arbiter = arbiter or SafetyArbiter(safety_config=self.safety_config)
        self.ml_controllers = list(ml_controllers)
        self.pump = pump
        self.exercise = exercise or WorkoutStatus(self.safety_config)
        self.frame_builder = FeatureFrameBuilder(glucose_source, ledger)
        self.target_service = TargetGlucoseService(self.exercise, self.safety_config)
        self.last_micro_bolus: Optional[datetime] = None
        self.latest_result: Optional[LoopResult] = None

    def apply_guardrails(
        self,
        settings: LoopSettings,
        glucose: float,
        predicted_glucose: float,
        rate: float,
        pump: PumpManager,
    ) -> float:
        if not math.isfinite(rate):
            logger.warning("Non-finite temp basal %r replaced with 0", rate)
            return 0.0
        rate = pump.round_to_supported_basal_rate(rate)
        rate = min(max(rate, 0.0), settings.max_basal_rate_units_per_hour)
        if glucose <= settings.shutoff_glucose or predicted_glucose <= settings.shutoff_glucose:
            return 0.0
        return rate

    def micro_bolus_amount(
        self,
        settings: LoopSettings,
        at: datetime,
        glucose: float,
        predicted_glucose: float,
        target_glucose: float,
        temp_basal: float,
        pump: PumpManager,
    ) -> Optional[float]:
        config = self.safety_config
        min_interval = timedelta(minutes=config.min_micro_bolus_interval_minutes)
        if self.last_micro_bolus is not None and at - self.last_micro_bolus < min_interval:
            return None
        if glucose < target_glucose + config.micro_bolus_glucose_margin:
            return None
        if predicted_glucose <= glucose - config.predicted_falling_margin:
            return None
        hours = settings.correction_duration.total_seconds() / 3600.0
        if hours <= 0:
            return None
        insulin = (temp_basal - settings.learned_basal_rate(at)) * hours
        if insulin <= 0:
            return None
        max_bolus = settings.max_basal_rate_units_per_hour * hours
        amount = min(max(settings.micro_bolus_dose_factor * insulin, 0.0), min(max_bolus, insulin))
        return pump.round_to_supported_bolus_volume(amount)

    def _select_dose(
        self,
        settings: LoopSettings,
        temp_basal: float,
        candidate: Optional[float],
        biological_invariant: Optional[float],
        is_exercising: bool,
    ) -> Tuple[float, float, bool]:
        """(temp basal, micro-bolus, invariant violated) for one dosing path."""
        config = self.safety_config
        if (
            settings.use_biological_invariant
            and biological_invariant is not None
            and biological_invariant < config.biological_invariant_threshold
        ):
            return 0.0, 0.0, True
        if (
            settings.use_micro_bolus
            and candidate is not None
            and candidate > config.min_micro_bolus_units
            and not is_exercising
        ):
            return 0.0, candidate, False
        return temp_basal, 0.0, False

    def determine_dose(
        self,
        settings: LoopSettings,
        physiological_temp_basal: float,
        ml_temp_basal: float,
        safety_temp_basal: float,
        physiological_micro_bolus: Optional[float],
        safety_micro_bolus: Optional[float],
        biological_invariant: Optional[float],
        is_exercising: bool,
        ml_insulin_last_three_hours: float,
    ) -> DoseDecision:
        """
        Pick the dose for this cycle; temp basal and micro-bolus are never both nonzero.

        The safety result carries what the physiological path alone would
        have enacted under the same rules, which is the baseline the safety
        ledger measures ML-attributable insulin against. With ML disabled the
        baseline equals the programmed dose.
        """
        baseline_temp_basal, baseline_micro_bolus, violation = self._select_dose(
            settings, physiological_temp_basal, physiological_micro_bolus, biological_invariant, is_exercising
        )
        if settings.use_ml_algorithm:
            temp_basal, micro_bolus, _ = self._select_dose(
                settings, safety_temp_basal, safety_micro_bolus, biological_invariant, is_exercising
            )
        else:
            temp_basal, micro_bolus = baseline_temp_basal, baseline_micro_bolus
        if violation:
            logger.warning(
                "Biological invariant %.1f mg/dL/hr below %.1f, suppressing delivery",
                biological_invariant, self.safety_config.biological_invariant_threshold,
            )

        safety_result = SafetyResult(
            ml_temp_basal=ml_temp_basal,
            safety_temp_basal=safety_temp_basal,
            physiological_temp_basal=baseline_temp_basal,
            actual_temp_basal=temp_basal,
            ml_micro_bolus=safety_micro_bolus,
            physiological_micro_bolus=baseline_micro_bolus,
            actual_micro_bolus=micro_bolus,
            ml_insulin_last_three_hours=ml_insulin_last_three_hours,
            biological_invariant=biological_invariant,
            biological_invariant_violation=violation,
        )
        return DoseDecision(temp_basal=temp_basal, micro_bolus=micro_bolus, safety_result=safety_result)

    def _ml_proposal(self, settings: LoopSettings, context: DosingContext) -> Optional[float]:
        for controller in self.ml_controllers:
            if controller.name != settings.ml_controller:
                continue
            try:
                rate = controller.propose(context)
            except Exception:
                logger.exception("ML controller %s failed", controller.name)
                continue
            if rate is not None and math.isfinite(rate):
                return rate
        return None

    async def _enact(self, command: Callable[[], Awaitable[None]], description: str) -> Optional[str]:
        try:
            await command()
        except PumpCommandError as exc:
            logger.error("Pump rejected %s: %s", description, exc)
            return str(exc)
        except Exception as exc:
            logger.exception("Pump command %s failed", description)
            return str(exc) or type(exc).__name__
        return None

    async def loop(self, at: datetime) -> LoopResult:
        settings = self.settings_store.snapshot()
        result = await self._run_cycle(at, settings)
        self.latest_result = result
        if result.succeeded:
            logger.info("Loop %s: %s", at.isoformat(), result.action.value)
        else:
            logger.info("Loop %s: %s %s", at.isoformat(), result.action.value, result.message or "")
        return result

    async def _run_cycle(self, at: datetime, settings: LoopSettings) -> LoopResult:
        config = self.safety_config
        if not settings.closed_loop_enabled:
            return LoopResult(at=at, action=LoopAction.OPEN_LOOP)

        reading = self.glucose_source.last_reading()
        if reading is None or at - reading.date >= settings.freshness_interval:
            return LoopResult(at=at, action=LoopAction.GLUCOSE_STALE)
        last_sync = self.ledger.last_pump_sync()
        if last_sync is None or at - last_sync >= settings.freshness_interval:
            return LoopResult(at=at, action=LoopAction.PUMP_STALE)
        pump = self.pump
        if pump is None:
            return LoopResult(at=at, action=LoopAction.NO_PUMP_MANAGER)

        glucose = reading.value
        scheduled_basal_rate = settings.pump_basal_rate_units_per_hour
        insulin_on_board = self.ledger.insulin_on_board(at, scheduled_basal_rate)
        insulin_kind = self.ledger.current_insulin_kind()
        target = self.target_service.target_glucose(at, settings)
        is_exercising = self.exercise.is_exercising(at)
        frame = self.frame_builder.build_frame(
            at, config.frame_rows, config.frame_min_real_samples, scheduled_basal_rate
        )
        predicted = self.physiological.predict_glucose_in_15_minutes(at)
        if predicted is None:
            predicted = glucose

        pid = self.physiological.temp_basal(settings, glucose, target, insulin_on_board, frame, at, insulin_kind)
        physiological_temp_basal = self.apply_guardrails(settings, glucose, predicted, pid.temp_basal, pump)

        context = DosingContext(
            at=at,
            settings=settings,
            glucose=glucose,
            predicted_glucose=predicted,
            target_glucose=target,
            insulin_on_board=insulin_on_board,
            frame=frame,
            insulin_kind=insulin_kind,
            is_exercising=is_exercising,
        )
        ml_proposal = self._ml_proposal(settings, context)
        ml_temp_basal = self.apply_guardrails(
            settings,
            glucose,
            predicted,
            ml_proposal if ml_proposal is not None else physiological_temp_basal,
            pump,
        )

        bounded, ml_insulin_last_three_hours = self.arbiter.temp_basal(
            at, physiological_temp_basal, ml_temp_basal, settings.correction_duration, settings
        )
        safety_temp_basal = self.apply_guardrails(settings, glucose, predicted, bounded, pump)

        safety_micro_bolus = self.micro_bolus_amount(
            settings, at, glucose, predicted, target, safety_temp_basal, pump
        )
        physiological_micro_bolus = self.micro_bolus_amount(
            settings, at, glucose, predicted, target, physiological_temp_basal, pump
        )

        decision = self.determine_dose(
            settings,
            physiological_temp_basal=physiological_temp_basal,
            ml_temp_basal=ml_temp_basal,
            safety_temp_basal=safety_temp_basal,
            physiological_micro_bolus=physiological_micro_bolus,
            safety_micro_bolus=safety_micro_bolus,
            biological_invariant=pid.delta_glucose_error,
            is_exercising=is_exercising,
            ml_insulin_last_three_hours=ml_insulin_last_three_hours,
        )
        result = LoopResult(
            at=at,
            action=LoopAction.DOSE_SET,
            glucose=glucose,
            predicted_glucose=predicted,
            insulin_on_board=insulin_on_board,
            target_glucose=target,
            pid=pid,
            decision=decision,
        )

        error = await self._enact(
            lambda: pump.enact_temp_basal(decision.temp_basal, settings.correction_duration),
            f"temp basal {decision.temp_basal:.2f} U/hr",
        )
        if error is None and settings.use_micro_bolus and decision.micro_bolus > config.min_micro_bolus_units:
            error = await self._enact(
                lambda: pump.enact_bolus(decision.micro_bolus, automatic=True),
                f"micro-bolus {decision.micro_bolus:.2f} U",
            )
            if error is None:
                self.last_micro_bolus = at
        if error is not None:
            result.action = LoopAction.PUMP_ERROR
            result.message = error
            return result

        safety = decision.safety_result
        self.arbiter.record_programmed_dose(
            at=at,
            duration=settings.correction_duration,
            programmed_temp_basal=safety.actual_temp_basal,
            safety_temp_basal=safety.physiological_temp_basal,
            ml_temp_basal=safety.ml_temp_basal,
            programmed_micro_bolus=safety.actual_micro_bolus,
            safety_micro_bolus=safety.physiological_micro_bolus,
            ml_micro_bolus=safety.ml_micro_bolus or 0.0,
            biological_invariant_violation=safety.biological_invariant_violation,
        )
        return result
