from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from aidloop.core.frame import FeatureFrame
from aidloop.core.insulin.models import DEFAULT_INSULIN_KIND, InsulinKind
from aidloop.validation.schemas import LoopSettings


@dataclass(frozen=True)
class DosingContext:
    """Everything a controller may look at when proposing a temp basal rate."""
    at: datetime
    settings: LoopSettings
    glucose: float
    predicted_glucose: float
    target_glucose: float
    insulin_on_board: float
    frame: Optional[FeatureFrame] = None
    insulin_kind: InsulinKind = DEFAULT_INSULIN_KIND
    is_exercising: bool = False


@dataclass
class DecisionReason:
    """Single entry explaining why a controller proposed or declined a dose."""
    reason: str
    category: str
    value: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"reason": self.reason, "category": self.category, "value": self.value}


class DosingController(Protocol):
    """
    A source of temp basal proposals in U/hr.

    Returning None means the controller abstains for this cycle; 0.0 is a
    legitimate proposal and must not be used to signal that.
    """
    name: str

    def propose(self, context: DosingContext) -> Optional[float]: ...
