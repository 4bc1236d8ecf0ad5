from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence, Tuple

import pandas as pd

from aidloop.core.devices.models import GlucoseSource
from aidloop.core.glucose import GlucoseSample
from aidloop.core.insulin.ledger import DoseLedger

logger = logging.getLogger("aidloop.frame")

FRAME_STEP = timedelta(minutes=5)
STEPS_PER_HOUR = 12


@dataclass(frozen=True)
class FrameRow:
    event_time: datetime
    glucose: float
    insulin_delivered: float
    insulin_on_board: float


def added_glucose_per_hour(rows: Sequence[FrameRow], insulin_sensitivity: float) -> Optional[float]:
    """
    Glucose appearance not explained by insulin action, in mg/dL per hour.

    Each step adds the observed glucose change back to the glucose that the
    insulin absorbed over that step should have removed.
    """
    if len(rows) < 2:
        return None
    added = 0.0
    for previous, current in zip(rows, rows[1:]):
        delta_glucose = current.glucose - previous.glucose
        insulin_absorbed = previous.insulin_on_board - current.insulin_on_board + current.insulin_delivered
        added += delta_glucose + insulin_absorbed * insulin_sensitivity
    return added * STEPS_PER_HOUR / (len(rows) - 1)


@dataclass(frozen=True)
class FeatureFrame:
    rows: Tuple[FrameRow, ...]

    def __len__(self) -> int:
        return len(self.rows)

    def added_glucose_per_hour(self, insulin_sensitivity: float) -> Optional[float]:
        return added_glucose_per_hour(self.rows, insulin_sensitivity)

    def added_glucose_per_hour_last_30_minutes(self, insulin_sensitivity: float) -> Optional[float]:
        if len(self.rows) < 7:
            return None
        return added_glucose_per_hour(self.rows[-7:], insulin_sensitivity)

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "event_time": [row.event_time for row in self.rows],
                "glucose": [row.glucose for row in self.rows],
                "insulin_delivered": [row.insulin_delivered for row in self.rows],
                "insulin_on_board": [row.insulin_on_board for row in self.rows],
            }
        )


def interpolate_glucose(readings: List[GlucoseSample], at: datetime) -> Optional[float]:
    """
    Linear interpolation over time-ordered readings.

    Values outside the series are clamped to its first and last reading.
    Readings sharing a timestamp resolve to the first pair that brackets
    ``at``, so the span used is never zero.
    """
    if not readings:
        return None
    if at <= readings[0].date:
        return readings[0].value
    if at >= readings[-1].date:
        return readings[-1].value
    for before, after in zip(readings, readings[1:]):
        if before.date <= at <= after.date:
            fraction = (at - before.date).total_seconds() / (after.date - before.date).total_seconds()
            return before.value + fraction * (after.value - before.value)
    return None


class FeatureFrameBuilder:
    """Samples glucose, delivered insulin and IOB on a 5-minute grid ending at ``at``."""

    def __init__(self, glucose_source: GlucoseSource, ledger: DoseLedger) -> None:
        self.glucose_source = glucose_source
        self.ledger = ledger

    def build_frame(
        self, at: datetime, rows: int, min_real_samples: int, basal_rate: Optional[float] = None
    ) -> Optional[FeatureFrame]:
        readings = self.glucose_source.readings_between(at - (FRAME_STEP * rows + FRAME_STEP), at)
        readings = sorted(readings, key=lambda sample: sample.date)
        if not readings:
            return None
        first, last = readings[0], readings[-1]
        if at - last.date >= FRAME_STEP:
            logger.debug("No frame: newest reading is %s old", at - last.date)
            return None
        if at - first.date <= FRAME_STEP * (rows - 1):
            logger.debug("No frame: readings only reach back to %s", first.date)
            return None
        if len(readings) < min_real_samples:
            logger.debug("No frame: %d readings, need %d", len(readings), min_real_samples)
            return None

        frame_rows = []
        for index in reversed(range(rows)):
            event_time = at - FRAME_STEP * index
            frame_rows.append(
                FrameRow(
                    event_time=event_time,
                    glucose=interpolate_glucose(readings, event_time),
                    insulin_delivered=self.ledger.insulin_delivered(event_time - FRAME_STEP, event_time, basal_rate),
                    insulin_on_board=self.ledger.insulin_on_board(event_time, basal_rate),
                )
            )
        return FeatureFrame(tuple(frame_rows))
