from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from aidloop.core.insulin.models import DEFAULT_INSULIN_KIND, InsulinKind, model_for

# Granularity of quantized delivery; matches CGM sampling.
DELIVERY_STEP = timedelta(minutes=5)


class DoseType(Enum):
    BASAL = "basal"
    TEMP_BASAL = "temp_basal"
    BOLUS = "bolus"
    SUSPEND = "suspend"
    RESUME = "resume"


class DoseUnit(Enum):
    UNITS = "units"
    UNITS_PER_HOUR = "units_per_hour"


class PumpEventType(Enum):
    BASAL = "basal"
    TEMP_BASAL = "temp_basal"
    BOLUS = "bolus"
    SUSPEND = "suspend"
    RESUME = "resume"
    ALARM = "alarm"
    ALARM_CLEAR = "alarm_clear"


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass(frozen=True)
class InsulinDelivery:
    """A quantum of insulin treated as delivered instantaneously at ``date``."""
    date: datetime
    units: float
    insulin_kind: InsulinKind = DEFAULT_INSULIN_KIND

    def insulin_on_board(self, at: datetime) -> float:
        if at <= self.date:
            return 0.0
        return self.units * model_for(self.insulin_kind).percent_effect_remaining(at - self.date)


@dataclass(frozen=True)
class DoseEntry:
    dose_type: DoseType
    start_date: datetime
    end_date: datetime
    value: float
    unit: DoseUnit
    sync_identifier: str
    delivered_units: Optional[float] = None
    insulin_kind: Optional[InsulinKind] = None
    is_mutable: bool = False
    manually_entered: bool = False

    @property
    def duration(self) -> timedelta:
        return self.end_date - self.start_date

    @property
    def programmed_units(self) -> float:
        if self.unit == DoseUnit.UNITS:
            return self.value
        hours = max(self.duration.total_seconds(), 0.0) / 3600.0
        return self.value * hours

    @property
    def units(self) -> float:
        if self.delivered_units is not None:
            return self.delivered_units
        return self.programmed_units

    @property
    def unit_rate(self) -> float:
        """Delivery rate in U/hr, regardless of how the dose was recorded."""
        if self.unit == DoseUnit.UNITS_PER_HOUR:
            return self.value
        hours = self.duration.total_seconds() / 3600.0
        if hours <= 0:
            return 0.0
        return self.units / hours

    def deliveries(self) -> List[InsulinDelivery]:
        """
        Split the dose into quantized deliveries.

        Doses no longer than 1.05 steps (including ones whose end precedes
        their start) deliver everything at the start instant. Longer doses are
        cut into contiguous 5-minute segments, each delivering its share of
        the units at the segment start.
        """
        if self.dose_type in (DoseType.SUSPEND, DoseType.RESUME):
            return []
        kind = self.insulin_kind or DEFAULT_INSULIN_KIND
        units = self.units
        duration = self.duration
        if duration <= DELIVERY_STEP * 1.05:
            return [InsulinDelivery(self.start_date, units, kind)]

        deliveries = []
        start = self.start_date
        while start < self.end_date:
            end = min(start + DELIVERY_STEP, self.end_date)
            fraction = (end - start) / duration
            deliveries.append(InsulinDelivery(start, units * fraction, kind))
            start += DELIVERY_STEP
        return deliveries

    def insulin_on_board(self, at: datetime) -> float:
        return sum(delivery.insulin_on_board(at) for delivery in self.deliveries())

    def with_kind(self, kind: Optional[InsulinKind]) -> "DoseEntry":
        return replace(self, insulin_kind=kind)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dose_type": self.dose_type.value,
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "value": self.value,
            "unit": self.unit.value,
            "sync_identifier": self.sync_identifier,
            "delivered_units": self.delivered_units,
            "insulin_kind": self.insulin_kind.value if self.insulin_kind else None,
            "is_mutable": self.is_mutable,
            "manually_entered": self.manually_entered,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DoseEntry":
        kind = data.get("insulin_kind")
        return cls(
            dose_type=DoseType(data["dose_type"]),
            start_date=_parse_datetime(data["start_date"]),
            end_date=_parse_datetime(data["end_date"]),
            value=float(data["value"]),
            unit=DoseUnit(data["unit"]),
            sync_identifier=str(data["sync_identifier"]),
            delivered_units=data.get("delivered_units"),
            insulin_kind=InsulinKind(kind) if kind else None,
            is_mutable=bool(data.get("is_mutable", False)),
            manually_entered=bool(data.get("manually_entered", False)),
        )


@dataclass(frozen=True)
class PumpEvent:
    date: datetime
    event_type: PumpEventType
    dose: Optional[DoseEntry] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "event_type": self.event_type.value,
            "dose": self.dose.to_dict() if self.dose else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PumpEvent":
        dose = data.get("dose")
        return cls(
            date=_parse_datetime(data["date"]),
            event_type=PumpEventType(data["event_type"]),
            dose=DoseEntry.from_dict(dose) if dose else None,
        )


def total_insulin_on_board(doses: List[DoseEntry], at: datetime) -> float:
    return sum(dose.insulin_on_board(at) for dose in doses)


def insulin_delivered_between(doses: List[DoseEntry], start: datetime, end: datetime) -> float:
    total = 0.0
    for dose in doses:
        for delivery in dose.deliveries():
            if start <= delivery.date < end:
                total += delivery.units
    return total
