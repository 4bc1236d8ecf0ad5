import asyncio
from datetime import timedelta

import pytest

from aidloop.core.devices.models import PumpCommand, SimulatedPump
from aidloop.core.errors import PumpCommandError
from aidloop.core.insulin import DoseLedger, DoseType, PumpEventType


def test_rates_and_volumes_round_down_to_increments():
    pump = SimulatedPump(max_basal_rate=3.0)
    assert pump.round_to_supported_basal_rate(0.1 + 0.2) == pytest.approx(0.3)
    assert pump.round_to_supported_basal_rate(1.234) == pytest.approx(1.2)
    assert pump.round_to_supported_basal_rate(-0.5) == 0.0
    assert pump.round_to_supported_basal_rate(7.0) == 3.0
    assert pump.round_to_supported_bolus_volume(0.299) == pytest.approx(0.25)


def test_rejected_command_is_not_recorded(clock):
    pump = SimulatedPump(clock=clock)
    pump.fail_next_command = "reservoir empty"
    with pytest.raises(PumpCommandError, match="reservoir empty"):
        asyncio.run(pump.enact_bolus(0.5))
    assert pump.commands == []

    asyncio.run(pump.enact_bolus(0.5))
    assert len(pump.commands) == 1


def test_pump_events_cut_temp_basal_short(t0, clock):
    pump = SimulatedPump(clock=clock)
    asyncio.run(pump.enact_temp_basal(1.0, timedelta(minutes=30)))
    clock.advance(10)
    asyncio.run(pump.enact_temp_basal(2.0, timedelta(minutes=30)))
    clock.advance(2)
    asyncio.run(pump.enact_bolus(0.5))

    events = pump.pump_events()
    assert [event.event_type for event in events] == [
        PumpEventType.TEMP_BASAL,
        PumpEventType.TEMP_BASAL,
        PumpEventType.BOLUS,
    ]
    assert events[0].dose.end_date == t0 + timedelta(minutes=10)
    assert events[1].dose.end_date == t0 + timedelta(minutes=40)
    assert events[2].dose.dose_type == DoseType.BOLUS
    assert events[2].dose.value == 0.5

    ledger = DoseLedger()
    ledger.add_events(events, clock())
    assert len(ledger.deduplicated_doses(clock() + timedelta(minutes=1))) == 3


def test_temp_basal_without_duration_is_rejected(t0):
    pump = SimulatedPump()
    pump.commands.append(PumpCommand(t0, "temp_basal", 1.0))
    with pytest.raises(PumpCommandError, match="no duration"):
        pump.pump_events()
