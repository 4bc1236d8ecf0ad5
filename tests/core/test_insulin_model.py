from datetime import timedelta

import pytest

from aidloop.core.insulin import (
    DoseEntry,
    DoseType,
    DoseUnit,
    InsulinKind,
    baseline_insulin_on_board,
    model_for,
)
from aidloop.core.insulin.doses import insulin_delivered_between


def _bolus(t0, units=1.0, kind=InsulinKind.HUMALOG, end=None):
    return DoseEntry(
        dose_type=DoseType.BOLUS,
        start_date=t0,
        end_date=end or t0,
        value=units,
        unit=DoseUnit.UNITS,
        sync_identifier="bolus-1",
        insulin_kind=kind,
    )


def _temp_basal(t0, rate, minutes, delivered=None, kind=InsulinKind.HUMALOG):
    return DoseEntry(
        dose_type=DoseType.TEMP_BASAL,
        start_date=t0,
        end_date=t0 + timedelta(minutes=minutes),
        value=rate,
        unit=DoseUnit.UNITS_PER_HOUR,
        sync_identifier="tb-1",
        delivered_units=delivered,
        insulin_kind=kind,
    )


@pytest.mark.parametrize(
    "minutes, expected",
    [
        (30, 0.9659746550047483),
        (60, 0.8337993409625033),
        (90, 0.6657177108987371),
        (120, 0.5005768165495502),
        (150, 0.35669204409321253),
        (180, 0.24057361580865244),
    ],
)
def test_humalog_bolus_decay_matches_reference(t0, minutes, expected):
    dose = _bolus(t0)
    assert dose.insulin_on_board(t0 + timedelta(minutes=minutes)) == pytest.approx(expected, abs=1e-9)


def test_iob_is_zero_before_and_at_delivery(t0):
    dose = _bolus(t0)
    assert dose.insulin_on_board(t0 - timedelta(minutes=1)) == 0.0
    assert dose.insulin_on_board(t0) == 0.0
    assert dose.insulin_on_board(t0 + timedelta(seconds=1)) == pytest.approx(1.0)


def test_quantized_basal_uses_delivered_units(t0):
    dose = _temp_basal(t0, rate=12.0, minutes=19, delivered=3.8)
    deliveries = dose.deliveries()
    assert [d.units for d in deliveries] == pytest.approx([1.0, 1.0, 1.0, 0.8])

    expected = (
        0.6657177108987371
        + 0.6942633437181707
        + 0.7228075911918497
        + 0.7512060072038422 * 0.8
    )
    assert dose.insulin_on_board(t0 + timedelta(minutes=90)) == pytest.approx(expected, abs=1e-9)


@pytest.mark.parametrize("minutes, expected", [(1, 1.0), (4, 1.0), (7, 2.0)])
def test_temp_basal_steps_in_five_minute_quanta(t0, minutes, expected):
    dose = _temp_basal(t0, rate=12.0, minutes=30)
    assert dose.insulin_on_board(t0 + timedelta(minutes=minutes)) == pytest.approx(expected)


def test_short_dose_delivers_at_start(t0):
    dose = _temp_basal(t0, rate=12.0, minutes=5)
    deliveries = dose.deliveries()
    assert len(deliveries) == 1
    assert deliveries[0].date == t0
    assert deliveries[0].units == pytest.approx(1.0)


def test_dose_ending_before_start_delivers_everything_at_start(t0):
    dose = _bolus(t0, units=2.0, end=t0 - timedelta(minutes=3))
    deliveries = dose.deliveries()
    assert len(deliveries) == 1
    assert deliveries[0].date == t0
    assert deliveries[0].units == 2.0
    assert dose.insulin_on_board(t0 + timedelta(minutes=5)) == pytest.approx(2.0)


def test_suspend_delivers_nothing(t0):
    suspend = DoseEntry(DoseType.SUSPEND, t0, t0, 0.0, DoseUnit.UNITS_PER_HOUR, "suspend-1")
    assert suspend.deliveries() == []


def test_baseline_iob_for_six_hour_basal():
    assert baseline_insulin_on_board(0.4) == pytest.approx(0.8589151141064484, abs=1e-9)


def test_faster_insulin_leaves_less_on_board(t0):
    later = t0 + timedelta(hours=2)
    humalog = _bolus(t0, kind=InsulinKind.HUMALOG).insulin_on_board(later)
    lyumjev = _bolus(t0, kind=InsulinKind.LYUMJEV).insulin_on_board(later)
    assert lyumjev < humalog


@pytest.mark.parametrize("kind", list(InsulinKind))
def test_iob_bounded_and_decaying(t0, kind):
    dose = _temp_basal(t0, rate=3.0, minutes=45, kind=kind)
    units = dose.programmed_units
    end = dose.end_date
    previous = None
    for minutes in range(0, 480, 10):
        at = t0 + timedelta(minutes=minutes)
        iob = dose.insulin_on_board(at)
        assert 0.0 <= iob <= units + 1e-12
        if at > end:
            assert previous is None or iob <= previous + 1e-12
            previous = iob
    model = model_for(kind)
    assert dose.insulin_on_board(end + model.effect_duration) == pytest.approx(0.0)


def test_delivered_equals_iob_before_action_starts(t0):
    dose = _temp_basal(t0, rate=6.0, minutes=60)
    for minutes in (1, 5, 7, 9):
        at = t0 + timedelta(minutes=minutes)
        assert insulin_delivered_between([dose], t0, at) == pytest.approx(dose.insulin_on_board(at))


def test_percent_effect_remaining_edges():
    model = model_for(InsulinKind.HUMALOG)
    assert model.percent_effect_remaining(timedelta(0)) == 1.0
    assert model.percent_effect_remaining(timedelta(minutes=10)) == 1.0
    assert model.percent_effect_remaining(timedelta(minutes=370)) == 0.0
    assert 0.0 < model.percent_effect_remaining(timedelta(minutes=200)) < 1.0
