from datetime import datetime, timedelta, timezone
from pathlib import Path
import sys
from typing import List, Sequence

import pytest

project_root = Path(__file__).resolve().parents[1]
src_path = project_root / "src"

if src_path.exists():
    sys.path.insert(0, str(src_path))

from aidloop.core.frame import FeatureFrame, FrameRow  # noqa: E402
from aidloop.core.glucose import GlucoseSample  # noqa: E402

STEP = timedelta(minutes=5)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float) -> datetime:
        self.now = self.now + timedelta(minutes=minutes)
        return self.now


@pytest.fixture
def t0() -> datetime:
    return datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(t0):
    return FakeClock(t0)


@pytest.fixture
def make_readings():
    """Readings ending at ``end``, one every five minutes, oldest first."""
    def _make(end: datetime, values: Sequence[float]) -> List[GlucoseSample]:
        count = len(values)
        return [
            GlucoseSample(
                date=end - STEP * (count - 1 - index),
                value=float(value),
                sync_identifier=f"cgm-{(end - STEP * (count - 1 - index)).isoformat()}",
            )
            for index, value in enumerate(values)
        ]
    return _make


@pytest.fixture
def make_frame():
    def _make(end: datetime, glucose: Sequence[float], delivered: float = 0.0, iob: float = 0.0) -> FeatureFrame:
        count = len(glucose)
        return FeatureFrame(
            tuple(
                FrameRow(
                    event_time=end - STEP * (count - 1 - index),
                    glucose=float(value),
                    insulin_delivered=delivered,
                    insulin_on_board=iob,
                )
                for index, value in enumerate(glucose)
            )
        )
    return _make
