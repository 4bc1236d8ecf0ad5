from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from aidloop.core.safety.config import SafetyConfig
from aidloop.utils.storage import JsonStore
from aidloop.validation.schemas import LoopSettings

logger = logging.getLogger("aidloop.safety")

_MIN_OVERLAP = timedelta(seconds=1)


def _roughly_equal(a: float, b: float) -> bool:
    return abs(a - b) < 1e-6


@dataclass(frozen=True)
class SafetyLedgerEntry:
    at: datetime
    duration: timedelta
    programmed_temp_basal_rate: float
    safety_temp_basal_rate: float
    ml_temp_basal_rate: float
    programmed_micro_bolus: float
    safety_micro_bolus: float
    ml_micro_bolus: float
    biological_invariant_violation: bool = False

    def temp_basal_delta(self, start: datetime, end: datetime) -> float:
        """Units programmed beyond the physiological rate inside [start, end)."""
        if _roughly_equal(self.programmed_temp_basal_rate, self.safety_temp_basal_rate):
            return 0.0
        overlap_start = max(self.at, start)
        overlap_end = min(self.at + self.duration, end)
        if overlap_end <= overlap_start + _MIN_OVERLAP:
            return 0.0
        hours = (overlap_end - overlap_start).total_seconds() / 3600.0
        return (self.programmed_temp_basal_rate - self.safety_temp_basal_rate) * hours

    def micro_bolus_delta(self, start: datetime, end: datetime) -> float:
        if _roughly_equal(self.programmed_micro_bolus, self.safety_micro_bolus):
            return 0.0
        if not (start <= self.at < end):
            return 0.0
        return self.programmed_micro_bolus - self.safety_micro_bolus

    def to_dict(self) -> Dict[str, Any]:
        return {
            "at": self.at.isoformat(),
            "duration": self.duration.total_seconds(),
            "programmed_temp_basal_rate": self.programmed_temp_basal_rate,
            "safety_temp_basal_rate": self.safety_temp_basal_rate,
            "ml_temp_basal_rate": self.ml_temp_basal_rate,
            "programmed_micro_bolus": self.programmed_micro_bolus,
            "safety_micro_bolus": self.safety_micro_bolus,
            "ml_micro_bolus": self.ml_micro_bolus,
            "biological_invariant_violation": self.biological_invariant_violation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SafetyLedgerEntry":
        return cls(
            at=datetime.fromisoformat(data["at"]),
            duration=timedelta(seconds=float(data["duration"])),
            programmed_temp_basal_rate=float(data["programmed_temp_basal_rate"]),
            safety_temp_basal_rate=float(data["safety_temp_basal_rate"]),
            ml_temp_basal_rate=float(data["ml_temp_basal_rate"]),
            programmed_micro_bolus=float(data["programmed_micro_bolus"]),
            safety_micro_bolus=float(data["safety_micro_bolus"]),
            ml_micro_bolus=float(data["ml_micro_bolus"]),
            biological_invariant_violation=bool(data.get("biological_invariant_violation", False)),
        )


class SafetyArbiter:
    """
    Bounds the insulin attributable to non-physiological signals.

    Every programmed dose is recorded next to what the physiological path
    would have delivered. Over the rolling horizon, the summed difference may
    not exceed the scheduled maximum basal rate times the horizon in either
    direction; requests beyond the remaining headroom fall back toward the
    physiological rate.
    """

    def __init__(self, store: Optional[JsonStore] = None, safety_config: Optional[SafetyConfig] = None) -> None:
        self.store = store
        self.safety_config = safety_config or SafetyConfig()
        self._entries: List[SafetyLedgerEntry] = []
        if store is not None:
            try:
                self._entries = sorted(
                    (SafetyLedgerEntry.from_dict(item) for item in store.read(default=[])),
                    key=lambda entry: entry.at,
                )
            except (OSError, ValueError, KeyError) as exc:
                logger.warning("Could not read safety ledger from %s: %s", store.path, exc)

    @property
    def entries(self) -> List[SafetyLedgerEntry]:
        return list(self._entries)

    @property
    def horizon(self) -> timedelta:
        return timedelta(hours=self.safety_config.safety_horizon_hours)

    def ml_insulin_between(self, start: datetime, end: datetime, duration: timedelta) -> float:
        """
        ML-attributable units in [start, end).

        Each entry counts until the next entry supersedes it; entries that
        began up to ``duration`` before ``start`` may still overlap the window.
        """
        events = [entry for entry in self._entries if start - duration <= entry.at < end]
        total = 0.0
        for index, entry in enumerate(events):
            next_at = events[index + 1].at if index + 1 < len(events) else end
            total += entry.temp_basal_delta(start, next_at)
            total += entry.micro_bolus_delta(start, next_at)
        return total

    def temp_basal(
        self,
        at: datetime,
        safety_temp_basal: float,
        ml_temp_basal: float,
        duration: timedelta,
        settings: LoopSettings,
    ) -> Tuple[float, float]:
        """Returns the bounded rate and the ML insulin delivered over the horizon."""
        historical = self.ml_insulin_between(at - self.horizon, at, duration)
        hours = duration.total_seconds() / 3600.0
        if hours <= 0:
            return safety_temp_basal, historical

        bound = settings.max_scheduled_basal_rate() * self.safety_config.safety_horizon_hours
        upper = max(bound - historical, 0.0)
        lower = min(-bound - historical, 0.0)
        requested = (ml_temp_basal - safety_temp_basal) * hours
        delta = min(max(requested, lower), upper)
        if delta != requested:
            logger.info(
                "ML delta %.3f U clamped to %.3f U (%.3f U already attributed)",
                requested, delta, historical,
            )
        return safety_temp_basal + delta / hours, historical

    def record_programmed_dose(
        self,
        at: datetime,
        duration: timedelta,
        programmed_temp_basal: float,
        safety_temp_basal: float,
        ml_temp_basal: float,
        programmed_micro_bolus: float,
        safety_micro_bolus: float,
        ml_micro_bolus: float,
        biological_invariant_violation: bool,
    ) -> SafetyLedgerEntry:
        entry = SafetyLedgerEntry(
            at=at,
            duration=duration,
            programmed_temp_basal_rate=programmed_temp_basal,
            safety_temp_basal_rate=safety_temp_basal,
            ml_temp_basal_rate=ml_temp_basal,
            programmed_micro_bolus=programmed_micro_bolus,
            safety_micro_bolus=safety_micro_bolus,
            ml_micro_bolus=ml_micro_bolus,
            biological_invariant_violation=biological_invariant_violation,
        )
        entries = sorted(self._entries + [entry], key=lambda item: item.at)
        cutoff = entries[-1].at - timedelta(hours=self.safety_config.safety_ledger_retention_hours)
        self._entries = [item for item in entries if item.at >= cutoff]

        if self.store is not None:
            try:
                self.store.write(self._entries)
            except (OSError, TypeError, ValueError) as exc:
                logger.error("Safety ledger write to %s failed: %s", self.store.path, exc)
        return entry
