from .models import DEFAULT_INSULIN_KIND, ExponentialInsulinModel, InsulinKind, model_for
from .doses import (
    DELIVERY_STEP,
    DoseEntry,
    DoseType,
    DoseUnit,
    InsulinDelivery,
    PumpEvent,
    PumpEventType,
)
from .ledger import DoseLedger, baseline_insulin_on_board

__all__ = [
    "DEFAULT_INSULIN_KIND",
    "DELIVERY_STEP",
    "DoseEntry",
    "DoseLedger",
    "DoseType",
    "DoseUnit",
    "ExponentialInsulinModel",
    "InsulinDelivery",
    "InsulinKind",
    "PumpEvent",
    "PumpEventType",
    "baseline_insulin_on_board",
    "model_for",
]
