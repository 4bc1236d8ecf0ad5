from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from aidloop.core.devices.models import ExerciseSignal
from aidloop.core.safety.config import SafetyConfig
from aidloop.validation.schemas import LoopSettings

logger = logging.getLogger("aidloop.target")


@dataclass(frozen=True)
class WorkoutMessage:
    at: datetime
    started: bool


class WorkoutStatus:
    """Exercise signal fed by workout start/end messages from a companion device."""

    def __init__(self, safety_config: Optional[SafetyConfig] = None) -> None:
        self.safety_config = safety_config or SafetyConfig()
        self._last_message: Optional[WorkoutMessage] = None

    def record_message(self, at: datetime, started: bool) -> None:
        self._last_message = WorkoutMessage(at=at, started=started)
        logger.info("Workout %s at %s", "started" if started else "ended", at.isoformat())

    def is_exercising(self, at: datetime) -> bool:
        message = self._last_message
        if message is None or not message.started:
            return False
        return at - message.at < timedelta(minutes=self.safety_config.workout_message_ttl_minutes)


class TargetGlucoseService:
    def __init__(self, exercise: ExerciseSignal, safety_config: Optional[SafetyConfig] = None) -> None:
        self.exercise = exercise
        self.safety_config = safety_config or SafetyConfig()

    def target_glucose(self, at: datetime, settings: LoopSettings) -> float:
        config = self.safety_config
        target = settings.target_glucose
        if settings.adjust_target_glucose_during_exercise and self.exercise.is_exercising(at):
            target = config.exercise_target_glucose
        return min(max(target, config.min_target_glucose), config.max_target_glucose)
