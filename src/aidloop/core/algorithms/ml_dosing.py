from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Any, List, Optional, Tuple, Union

import numpy as np

from aidloop.api.controller import DecisionReason, DosingContext
from aidloop.core.frame import FeatureFrame
from aidloop.core.safety.config import SafetyConfig

_IMPORT_ERROR: Optional[BaseException]
try:
    import torch
except Exception as exc:  # pragma: no cover
    torch = None  # type: ignore
    _IMPORT_ERROR = exc
else:
    _IMPORT_ERROR = None

logger = logging.getLogger("aidloop.ml")

DNN_INPUT_ROWS = 24
GLUCOSE_RANGE = (47.787574839751585, 272.88275806878147)
INSULIN_DELIVERED_RANGE = (0.0, 5.0)
INSULIN_ON_BOARD_RANGE = (0.0, 8.644954537307829)
ADDED_GLUCOSE_RANGE = (-74.12046866558583, 168.4840743910719)


class AddedGlucoseController:
    """
    Doses against glucose appearance that insulin action does not explain.

    Only active during waking hours while glucose is high and still rising;
    declines whenever conditions look unlike the data it was tuned on.
    """

    name = "added_glucose"

    def __init__(self, safety_config: Optional[SafetyConfig] = None) -> None:
        self.safety_config = safety_config or SafetyConfig()
        self.why_log: List[DecisionReason] = []

    def _log_reason(self, reason: str, category: str, value: Any = None) -> None:
        self.why_log.append(DecisionReason(reason=reason, category=category, value=value))

    def _decline(self, reason: str, value: Any = None) -> None:
        self._log_reason(reason, "declined", value)
        logger.debug("%s declined: %s", self.name, reason)

    def propose(self, context: DosingContext) -> Optional[float]:
        self.why_log = []
        config = self.safety_config
        settings = context.settings
        frame = context.frame
        if frame is None:
            self._decline("no feature frame")
            return None

        hour = settings.local_time(context.at).hour
        if not (config.ml_waking_hour_start < hour < config.ml_waking_hour_end):
            self._decline("outside waking hours", hour)
            return None
        if context.is_exercising:
            self._decline("exercising")
            return None
        lowest = min(row.glucose for row in frame.rows)
        if lowest < config.ml_recent_low_glucose:
            self._decline("recent low glucose", lowest)
            return None
        if context.predicted_glucose < config.ml_activation_glucose or context.predicted_glucose <= context.glucose:
            self._decline("glucose not high and rising", context.predicted_glucose)
            return None

        insulin_sensitivity = settings.learned_insulin_sensitivity(context.at)
        added_glucose = frame.added_glucose_per_hour_last_30_minutes(insulin_sensitivity)
        if added_glucose is None:
            self._decline("no added glucose estimate")
            return None

        insulin_needed = added_glucose / insulin_sensitivity - context.insulin_on_board
        rate = settings.ml_gain * insulin_needed * 3600.0 / settings.correction_duration.total_seconds()
        self._log_reason("added glucose per hour", "insulin_calculation", added_glucose)
        self._log_reason("proposed temp basal", "insulin_calculation", rate)
        return rate


def _normalize(values: np.ndarray, bounds: Tuple[float, float]) -> np.ndarray:
    low, high = bounds
    return (values - low) / (high - low)


def _denormalize(value: float, bounds: Tuple[float, float]) -> float:
    low, high = bounds
    return value * (high - low) + low


def frame_to_model_inputs(frame: FeatureFrame) -> np.ndarray:
    """Min-max normalized blocks: all glucose, then all delivered insulin, then all IOB."""
    glucose = np.array([row.glucose for row in frame.rows], dtype=float)
    delivered = np.array([row.insulin_delivered for row in frame.rows], dtype=float)
    iob = np.array([row.insulin_on_board for row in frame.rows], dtype=float)
    features = np.concatenate(
        [
            _normalize(glucose, GLUCOSE_RANGE),
            _normalize(delivered, INSULIN_DELIVERED_RANGE),
            _normalize(iob, INSULIN_ON_BOARD_RANGE),
        ]
    )
    return features.astype(np.float32)


class DNNController:
    """
    Data-driven dosing from a TorchScript model trained on 24-row frames.

    The model predicts added glucose per hour. Needs the ``ml`` extra
    (torch) and a model artifact; without either it always declines.
    """

    name = "dnn"

    def __init__(self, model_path: Optional[Union[str, Path]] = None) -> None:
        self.model_path = Path(model_path) if model_path is not None else None
        self._model: Any = None
        self._loaded_path: Optional[Path] = None
        self.why_log: List[DecisionReason] = []

    def _resolve_model(self, path: Optional[Path]) -> Any:
        if torch is None:
            logger.debug("DNN controller unavailable: %s", _IMPORT_ERROR)
            return None
        if path is None or not path.is_file():
            return None
        if self._loaded_path == path:
            return self._model
        try:
            model = torch.jit.load(str(path), map_location="cpu")
            model.eval()
        except Exception as exc:
            logger.warning("Could not load DNN model from %s: %s", path, exc)
            return None
        self._model = model
        self._loaded_path = path
        return model

    def propose(self, context: DosingContext) -> Optional[float]:
        self.why_log = []
        frame = context.frame
        if frame is None or len(frame) != DNN_INPUT_ROWS:
            self.why_log.append(DecisionReason("no 24-row feature frame", "declined"))
            return None
        path = self.model_path
        if path is None and context.settings.ml_model_path:
            path = Path(context.settings.ml_model_path)
        model = self._resolve_model(path)
        if model is None:
            self.why_log.append(DecisionReason("model unavailable", "declined", str(path)))
            return None

        inputs = torch.from_numpy(frame_to_model_inputs(frame)).unsqueeze(0)
        try:
            with torch.no_grad():
                output = float(model(inputs).reshape(-1)[0])
        except Exception as exc:
            logger.warning("DNN inference failed: %s", exc)
            return None
        if not math.isfinite(output):
            self.why_log.append(DecisionReason("non-finite model output", "declined", output))
            return None

        settings = context.settings
        added_glucose = _denormalize(output, ADDED_GLUCOSE_RANGE)
        insulin_sensitivity = settings.learned_insulin_sensitivity(context.at)
        total_glucose = context.glucose - context.target_glucose + added_glucose
        insulin_needed = total_glucose / insulin_sensitivity - context.insulin_on_board
        rate = insulin_needed * 3600.0 / settings.correction_duration.total_seconds()
        self.why_log.append(DecisionReason("predicted added glucose", "insulin_calculation", added_glucose))
        return rate
