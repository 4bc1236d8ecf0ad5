from .pid_controller import (
    PIDResult,
    PhysiologicalController,
    delta_glucose_error,
    least_squares_fit,
    predict_glucose_in_15_minutes,
)
from .ml_dosing import AddedGlucoseController, DNNController

__all__ = [
    "AddedGlucoseController",
    "DNNController",
    "PIDResult",
    "PhysiologicalController",
    "delta_glucose_error",
    "least_squares_fit",
    "predict_glucose_in_15_minutes",
]
