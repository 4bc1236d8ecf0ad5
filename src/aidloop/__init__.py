# src/aidloop/__init__.py

__version__ = "0.1.0"

# Insulin model and dose ledger
from .core.insulin import (
    DoseEntry,
    DoseLedger,
    DoseType,
    DoseUnit,
    ExponentialInsulinModel,
    InsulinKind,
    PumpEvent,
    PumpEventType,
    baseline_insulin_on_board,
)
from .core.glucose import GlucoseSample, GlucoseStore
from .core.frame import FeatureFrame, FeatureFrameBuilder, FrameRow

# Controllers
from .api.controller import DosingContext, DosingController, DecisionReason
from .core.algorithms import (
    AddedGlucoseController,
    DNNController,
    PhysiologicalController,
    PIDResult,
)

# Safety and orchestration
from .core.safety import SafetyArbiter, SafetyConfig, SafetyLedgerEntry
from .core.target import TargetGlucoseService, WorkoutStatus
from .core.loop import DoseDecision, LoopAction, LoopOrchestrator, LoopResult, SafetyResult
from .core.scheduler import LoopCoordinator, SerialTaskQueue
from .core.devices.models import SimulatedPump
from .core.errors import AidLoopError, LedgerWriteError, PumpCommandError

# Settings
from .validation import LoopSettings, SettingsStore, load_settings

__all__ = [
    # Insulin
    "DoseEntry", "DoseLedger", "DoseType", "DoseUnit", "ExponentialInsulinModel",
    "InsulinKind", "PumpEvent", "PumpEventType", "baseline_insulin_on_board",
    "GlucoseSample", "GlucoseStore",
    "FeatureFrame", "FeatureFrameBuilder", "FrameRow",
    # Controllers
    "DosingContext", "DosingController", "DecisionReason",
    "AddedGlucoseController", "DNNController", "PhysiologicalController", "PIDResult",
    # Safety and orchestration
    "SafetyArbiter", "SafetyConfig", "SafetyLedgerEntry",
    "TargetGlucoseService", "WorkoutStatus",
    "DoseDecision", "LoopAction", "LoopOrchestrator", "LoopResult", "SafetyResult",
    "LoopCoordinator", "SerialTaskQueue", "SimulatedPump",
    "AidLoopError", "LedgerWriteError", "PumpCommandError",
    # Settings
    "LoopSettings", "SettingsStore", "load_settings",
]
