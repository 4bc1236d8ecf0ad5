from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

import pandas as pd

from aidloop.core.errors import LedgerWriteError
from aidloop.core.insulin.doses import (
    DoseEntry,
    DoseType,
    DoseUnit,
    PumpEvent,
    PumpEventType,
    insulin_delivered_between,
    total_insulin_on_board,
)
from aidloop.core.insulin.models import DEFAULT_INSULIN_KIND, InsulinKind
from aidloop.utils.storage import JsonStore

logger = logging.getLogger("aidloop.ledger")

BASELINE_BASAL_DURATION = timedelta(hours=6)
MIN_INFERRED_BASAL_DURATION = timedelta(seconds=1)

# Events kept from before the trim cutoff so pump state can still be rebuilt.
_STATE_EVENT_GROUPS = (
    {PumpEventType.BASAL, PumpEventType.TEMP_BASAL},
    {PumpEventType.ALARM, PumpEventType.ALARM_CLEAR},
    {PumpEventType.SUSPEND, PumpEventType.RESUME},
)
_BASAL_STATE_DOSES = {DoseType.TEMP_BASAL, DoseType.SUSPEND, DoseType.RESUME}


def baseline_insulin_on_board(basal_rate: float, kind: InsulinKind = DEFAULT_INSULIN_KIND) -> float:
    """IOB left at the end of six hours of delivery at ``basal_rate``."""
    start = datetime(2000, 1, 1, tzinfo=timezone.utc)
    end = start + BASELINE_BASAL_DURATION
    dose = DoseEntry(
        dose_type=DoseType.TEMP_BASAL,
        start_date=start,
        end_date=end,
        value=basal_rate,
        unit=DoseUnit.UNITS_PER_HOUR,
        sync_identifier="baseline",
        insulin_kind=kind,
    )
    return dose.insulin_on_board(end)


class DoseLedger:
    """
    Append-only log of pump events and the insulin views derived from it.

    Dose records are never edited in place. Every query rebuilds the current
    view: entries are deduplicated by sync identifier with immutable records
    winning over in-progress (mutable) ones, and, for pumps that do not log
    standing basal delivery, the gaps between temp basals are filled with
    inferred scheduled basal.
    """

    def __init__(
        self,
        store: Optional[JsonStore] = None,
        scheduled_basal_rate: float = 0.3,
        records_basal_profile_start_events: bool = False,
        retention: timedelta = timedelta(hours=9),
    ) -> None:
        self.store = store
        self.scheduled_basal_rate = scheduled_basal_rate
        self.records_basal_profile_start_events = records_basal_profile_start_events
        self.retention = retention
        self._events: List[PumpEvent] = []
        self._last_pump_sync: Optional[datetime] = None
        if store is not None:
            self._load()

    def _load(self) -> None:
        assert self.store is not None
        try:
            data = self.store.read(default={}) or {}
            self._events = sorted(
                (PumpEvent.from_dict(item) for item in data.get("events", [])),
                key=lambda event: event.date,
            )
            last_sync = data.get("last_pump_sync")
            self._last_pump_sync = datetime.fromisoformat(last_sync) if last_sync else None
        except (OSError, ValueError, KeyError) as exc:
            logger.warning("Could not read dose ledger from %s: %s", self.store.path, exc)
            self._events = []
            self._last_pump_sync = None

    @property
    def events(self) -> List[PumpEvent]:
        return list(self._events)

    def last_pump_sync(self) -> Optional[datetime]:
        return self._last_pump_sync

    def add_events(
        self,
        events: Iterable[PumpEvent],
        last_sync_time: Optional[datetime],
        insulin_kind: Optional[InsulinKind] = None,
    ) -> None:
        """
        Append pump events and persist the trimmed ledger.

        Doses without an insulin kind are tagged with ``insulin_kind``. Raises
        LedgerWriteError if the store cannot be written; the in-memory ledger
        has already been updated at that point.
        """
        new_events = []
        for event in events:
            if event.dose is not None and event.dose.insulin_kind is None and insulin_kind is not None:
                event = PumpEvent(event.date, event.event_type, event.dose.with_kind(insulin_kind))
            new_events.append(event)

        combined = self._events + new_events
        immutable_ids = {
            event.dose.sync_identifier
            for event in combined
            if event.dose is not None and not event.dose.is_mutable
        }
        combined = [
            event
            for event in combined
            if event.dose is None
            or not event.dose.is_mutable
            or event.dose.sync_identifier not in immutable_ids
        ]
        self._events = self._trim(combined)
        if last_sync_time is not None:
            self._last_pump_sync = last_sync_time
        logger.debug("Added %d pump events, ledger holds %d", len(new_events), len(self._events))
        self._persist()

    def _trim(self, events: List[PumpEvent]) -> List[PumpEvent]:
        if not events:
            return []
        events = sorted(events, key=lambda event: event.date)
        cutoff = events[-1].date - self.retention
        kept = [event for event in events if event.date >= cutoff]
        stale = [event for event in events if event.date < cutoff]
        for group in _STATE_EVENT_GROUPS:
            latest = [event for event in stale if event.event_type in group]
            if latest:
                kept.append(latest[-1])
        return sorted(kept, key=lambda event: event.date)

    def _persist(self) -> None:
        if self.store is None:
            return
        try:
            self.store.write({"events": self._events, "last_pump_sync": self._last_pump_sync})
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Dose ledger write to %s failed: %s", self.store.path, exc)
            raise LedgerWriteError(str(exc)) from exc

    def deduplicated_doses(self, at: datetime) -> List[DoseEntry]:
        doses = [
            event.dose
            for event in self._events
            if event.dose is not None and event.dose.start_date < at
        ]
        by_sync_id: Dict[str, DoseEntry] = {}
        for dose in doses:
            if not dose.is_mutable:
                by_sync_id[dose.sync_identifier] = dose
        for dose in doses:
            if dose.is_mutable and dose.sync_identifier not in by_sync_id:
                by_sync_id[dose.sync_identifier] = dose
        return sorted(by_sync_id.values(), key=lambda dose: dose.start_date)

    def inferred_basal_doses(
        self, doses: List[DoseEntry], at: datetime, basal_rate: Optional[float] = None
    ) -> List[DoseEntry]:
        """Scheduled basal between basal-state doses, at ``basal_rate`` or the ledger default."""
        if self.records_basal_profile_start_events:
            return []
        rate = self.scheduled_basal_rate if basal_rate is None else basal_rate
        basal_doses = [dose for dose in doses if dose.dose_type in _BASAL_STATE_DOSES]
        if not basal_doses:
            return []
        kind = self._latest_insulin_kind(doses)

        inferred = []
        for current, following in zip(basal_doses, basal_doses[1:]):
            if current.dose_type == DoseType.SUSPEND:
                continue
            segment = self._inferred_segment(current.end_date, following.start_date, rate, kind)
            if segment is not None:
                inferred.append(segment)
        last = basal_doses[-1]
        if last.dose_type != DoseType.SUSPEND:
            segment = self._inferred_segment(last.end_date, at, rate, kind)
            if segment is not None:
                inferred.append(segment)
        return inferred

    def _inferred_segment(self, start: datetime, end: datetime, rate: float, kind: InsulinKind) -> Optional[DoseEntry]:
        if end - start <= MIN_INFERRED_BASAL_DURATION:
            return None
        return DoseEntry(
            dose_type=DoseType.BASAL,
            start_date=start,
            end_date=end,
            value=rate,
            unit=DoseUnit.UNITS_PER_HOUR,
            sync_identifier=f"inferred-{start.isoformat()}",
            insulin_kind=kind,
        )

    @staticmethod
    def _latest_insulin_kind(doses: List[DoseEntry]) -> InsulinKind:
        for dose in reversed(doses):
            if dose.dose_type in (DoseType.TEMP_BASAL, DoseType.BOLUS) and dose.insulin_kind is not None:
                return dose.insulin_kind
        return DEFAULT_INSULIN_KIND

    def doses(self, at: datetime, basal_rate: Optional[float] = None) -> List[DoseEntry]:
        """Recorded doses that started before ``at`` plus inferred basal."""
        recorded = self.deduplicated_doses(at)
        combined = recorded + self.inferred_basal_doses(recorded, at, basal_rate)
        return sorted(combined, key=lambda dose: dose.start_date)

    def insulin_on_board(self, at: datetime, basal_rate: Optional[float] = None) -> float:
        return total_insulin_on_board(self.doses(at, basal_rate), at)

    def insulin_delivered(self, start: datetime, end: datetime, basal_rate: Optional[float] = None) -> float:
        return insulin_delivered_between(self.doses(end, basal_rate), start, end)

    def insulin_delivered_from_automatic_temp_basal(self, start: datetime, end: datetime) -> float:
        doses = [
            dose
            for dose in self.deduplicated_doses(end)
            if dose.dose_type == DoseType.TEMP_BASAL and not dose.manually_entered
        ]
        return insulin_delivered_between(doses, start, end)

    def current_insulin_kind(self) -> InsulinKind:
        doses = [event.dose for event in self._events if event.dose is not None]
        doses.sort(key=lambda dose: dose.start_date)
        return self._latest_insulin_kind(doses)

    def pump_alarm(self) -> Optional[PumpEvent]:
        """The latest alarm, unless it has since been cleared."""
        alarms = [
            event
            for event in self._events
            if event.event_type in (PumpEventType.ALARM, PumpEventType.ALARM_CLEAR)
        ]
        if not alarms or alarms[-1].event_type == PumpEventType.ALARM_CLEAR:
            return None
        return alarms[-1]

    def active_bolus(self, at: datetime) -> Optional[DoseEntry]:
        boluses = [
            dose
            for dose in self.deduplicated_doses(at)
            if dose.dose_type == DoseType.BOLUS and dose.start_date <= at < dose.end_date
        ]
        return boluses[-1] if boluses else None

    def to_dataframe(self, at: datetime, basal_rate: Optional[float] = None) -> pd.DataFrame:
        rows = [
            {
                "dose_type": dose.dose_type.value,
                "start_date": dose.start_date,
                "end_date": dose.end_date,
                "units": dose.units,
                "insulin_kind": (dose.insulin_kind or DEFAULT_INSULIN_KIND).value,
                "is_mutable": dose.is_mutable,
                "iob": dose.insulin_on_board(at),
            }
            for dose in self.doses(at, basal_rate)
        ]
        return pd.DataFrame(
            rows,
            columns=["dose_type", "start_date", "end_date", "units", "insulin_kind", "is_mutable", "iob"],
        )
