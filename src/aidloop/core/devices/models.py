from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol
import uuid

from aidloop.core.errors import PumpCommandError
from aidloop.core.glucose import GlucoseSample
from aidloop.core.insulin.doses import DoseEntry, DoseType, DoseUnit, PumpEvent, PumpEventType
from aidloop.core.insulin.models import DEFAULT_INSULIN_KIND, InsulinKind


class GlucoseSource(Protocol):
    def last_reading(self) -> Optional[GlucoseSample]: ...

    def readings_between(self, start: datetime, end: datetime) -> List[GlucoseSample]: ...


class PumpManager(Protocol):
    def round_to_supported_basal_rate(self, rate: float) -> float: ...

    def round_to_supported_bolus_volume(self, units: float) -> float: ...

    async def enact_temp_basal(self, rate: float, duration: timedelta) -> None: ...

    async def enact_bolus(self, units: float, automatic: bool = True) -> None: ...

    async def ensure_current_pump_data(self) -> Optional[datetime]: ...


class ExerciseSignal(Protocol):
    def is_exercising(self, at: datetime) -> bool: ...


def _round_down(value: float, increment: float) -> float:
    if increment <= 0:
        return value
    # Small epsilon so exact multiples survive float division.
    steps = math.floor(value / increment + 1e-9)
    return round(max(steps, 0) * increment, 6)


@dataclass
class PumpCommand:
    date: datetime
    kind: str
    value: float
    duration: Optional[timedelta] = None


class SimulatedPump:
    """
    In-process pump used for replays and tests.

    Rounds rates and volumes down to the supported increments, records every
    accepted command and can be told to reject the next command.
    """

    def __init__(
        self,
        basal_increment: float = 0.05,
        bolus_increment: float = 0.05,
        max_basal_rate: float = 30.0,
        insulin_kind: InsulinKind = DEFAULT_INSULIN_KIND,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.basal_increment = basal_increment
        self.bolus_increment = bolus_increment
        self.max_basal_rate = max_basal_rate
        self.insulin_kind = insulin_kind
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.commands: List[PumpCommand] = []
        self.fail_next_command: Optional[str] = None
        self.last_sync: Optional[datetime] = None

    def round_to_supported_basal_rate(self, rate: float) -> float:
        return min(_round_down(rate, self.basal_increment), self.max_basal_rate)

    def round_to_supported_bolus_volume(self, units: float) -> float:
        return _round_down(units, self.bolus_increment)

    def _check_failure(self) -> None:
        if self.fail_next_command is not None:
            message, self.fail_next_command = self.fail_next_command, None
            raise PumpCommandError(message)

    async def enact_temp_basal(self, rate: float, duration: timedelta) -> None:
        self._check_failure()
        self.commands.append(PumpCommand(self.clock(), "temp_basal", rate, duration))

    async def enact_bolus(self, units: float, automatic: bool = True) -> None:
        self._check_failure()
        self.commands.append(PumpCommand(self.clock(), "bolus", units))

    async def ensure_current_pump_data(self) -> Optional[datetime]:
        self.last_sync = self.clock()
        return self.last_sync

    def pump_events(self) -> List[PumpEvent]:
        """Accepted commands as ledger events, temp basals cut short by the next one."""
        events = []
        temp_basals = [command for command in self.commands if command.kind == "temp_basal"]
        for command in self.commands:
            if command.kind == "temp_basal":
                if command.duration is None:
                    raise PumpCommandError(f"temp basal at {command.date.isoformat()} has no duration")
                end = command.date + command.duration
                later = [other.date for other in temp_basals if other.date > command.date]
                if later:
                    end = min(end, later[0])
                dose = DoseEntry(
                    dose_type=DoseType.TEMP_BASAL,
                    start_date=command.date,
                    end_date=end,
                    value=command.value,
                    unit=DoseUnit.UNITS_PER_HOUR,
                    sync_identifier=uuid.uuid4().hex,
                    insulin_kind=self.insulin_kind,
                )
                events.append(PumpEvent(command.date, PumpEventType.TEMP_BASAL, dose))
            else:
                dose = DoseEntry(
                    dose_type=DoseType.BOLUS,
                    start_date=command.date,
                    end_date=command.date,
                    value=command.value,
                    unit=DoseUnit.UNITS,
                    sync_identifier=uuid.uuid4().hex,
                    insulin_kind=self.insulin_kind,
                )
                events.append(PumpEvent(command.date, PumpEventType.BOLUS, dose))
        return events

    def get_state(self) -> Dict[str, Any]:
        return {
            "basal_increment": self.basal_increment,
            "bolus_increment": self.bolus_increment,
            "max_basal_rate": self.max_basal_rate,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "commands": len(self.commands),
        }
