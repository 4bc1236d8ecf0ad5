from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from aidloop.utils.storage import JsonStore

logger = logging.getLogger("aidloop.glucose")


@dataclass(frozen=True)
class GlucoseSample:
    date: datetime
    value: float
    sync_identifier: str
    trend: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "value": self.value,
            "sync_identifier": self.sync_identifier,
            "trend": self.trend,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GlucoseSample":
        return cls(
            date=datetime.fromisoformat(data["date"]),
            value=float(data["value"]),
            sync_identifier=str(data["sync_identifier"]),
            trend=data.get("trend"),
        )


class GlucoseStore:
    """
    CGM readings in time order, deduplicated by sync identifier and trimmed
    to a rolling window behind the newest reading.
    """

    def __init__(self, store: Optional[JsonStore] = None, retention: timedelta = timedelta(hours=12)) -> None:
        self.store = store
        self.retention = retention
        self._readings: List[GlucoseSample] = []
        if store is not None:
            try:
                self._readings = sorted(
                    (GlucoseSample.from_dict(item) for item in store.read(default=[])),
                    key=lambda sample: sample.date,
                )
            except (OSError, ValueError, KeyError) as exc:
                logger.warning("Could not read glucose readings from %s: %s", store.path, exc)

    def add_readings(self, readings: Iterable[GlucoseSample]) -> None:
        known = {sample.sync_identifier for sample in self._readings}
        added = 0
        for sample in readings:
            if sample.sync_identifier in known:
                continue
            known.add(sample.sync_identifier)
            self._readings.append(sample)
            added += 1
        self._readings.sort(key=lambda sample: sample.date)
        if self._readings:
            cutoff = self._readings[-1].date - self.retention
            self._readings = [sample for sample in self._readings if sample.date >= cutoff]
        logger.debug("Stored %d new glucose readings", added)

        if self.store is not None:
            try:
                self.store.write(self._readings)
            except (OSError, TypeError, ValueError) as exc:
                logger.warning("Glucose store write to %s failed: %s", self.store.path, exc)

    def last_reading(self) -> Optional[GlucoseSample]:
        return self._readings[-1] if self._readings else None

    def readings_between(self, start: datetime, end: datetime) -> List[GlucoseSample]:
        return [sample for sample in self._readings if start <= sample.date <= end]
