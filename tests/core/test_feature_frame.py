from datetime import timedelta

import pytest

from aidloop.core.frame import FeatureFrameBuilder, FrameRow, added_glucose_per_hour, interpolate_glucose
from aidloop.core.glucose import GlucoseSample, GlucoseStore
from aidloop.core.insulin import DoseEntry, DoseLedger, DoseType, DoseUnit, PumpEvent, PumpEventType


def _builder(readings, ledger=None):
    store = GlucoseStore()
    store.add_readings(readings)
    return FeatureFrameBuilder(store, ledger or DoseLedger(records_basal_profile_start_events=True))


def test_frame_rows_are_five_minutes_apart_and_end_at_query(t0, make_readings):
    readings = make_readings(t0, [100 + i for i in range(25)])
    frame = _builder(readings).build_frame(t0, rows=24, min_real_samples=20)

    assert frame is not None
    assert len(frame) == 24
    assert frame.rows[-1].event_time == t0
    for previous, current in zip(frame.rows, frame.rows[1:]):
        assert current.event_time - previous.event_time == timedelta(minutes=5)
    assert frame.rows[-1].glucose == pytest.approx(124)
    assert frame.rows[0].glucose == pytest.approx(101)


def test_frame_interpolates_between_readings(t0, make_readings):
    readings = make_readings(t0, [100 + 5 * i for i in range(26)])
    at = t0 - timedelta(minutes=2)
    frame = _builder(readings).build_frame(at, rows=24, min_real_samples=20)
    assert frame is not None
    # row at t0 - 7 min lies between readings of 215 and 220
    assert frame.rows[-2].glucose == pytest.approx(218.0)
    # newest row is past the last reading inside the window
    assert frame.rows[-1].glucose == pytest.approx(220.0)


def test_frame_absent_when_newest_reading_is_old(t0, make_readings):
    readings = make_readings(t0 - timedelta(minutes=6), [120] * 25)
    assert _builder(readings).build_frame(t0, rows=24, min_real_samples=20) is None


def test_frame_absent_when_history_too_short(t0, make_readings):
    readings = make_readings(t0, [120] * 20)
    assert _builder(readings).build_frame(t0, rows=24, min_real_samples=20) is None


def test_frame_absent_with_too_few_real_samples(t0, make_readings):
    readings = make_readings(t0, [120] * 25)
    sparse = readings[::2]
    assert _builder(sparse).build_frame(t0, rows=24, min_real_samples=20) is None
    assert _builder(sparse).build_frame(t0, rows=24, min_real_samples=10) is not None


def test_frame_includes_insulin_from_ledger(t0, make_readings):
    ledger = DoseLedger(records_basal_profile_start_events=True)
    bolus_at = t0 - timedelta(minutes=8)
    dose = DoseEntry(DoseType.BOLUS, bolus_at, bolus_at, 2.0, DoseUnit.UNITS, "b1")
    ledger.add_events([PumpEvent(bolus_at, PumpEventType.BOLUS, dose)], t0)

    frame = _builder(make_readings(t0, [120] * 25), ledger).build_frame(t0, rows=24, min_real_samples=20)
    assert frame is not None
    delivered = [row.insulin_delivered for row in frame.rows]
    assert sum(delivered) == pytest.approx(2.0)
    # delivered in [t - 5 min, t) for the row at t0 - 5 min
    assert frame.rows[-2].insulin_delivered == pytest.approx(2.0)
    assert frame.rows[-1].insulin_on_board == pytest.approx(2.0)


def test_interpolation_clamps_outside_series(t0):
    readings = [
        GlucoseSample(t0, 100.0, "a"),
        GlucoseSample(t0 + timedelta(minutes=10), 120.0, "b"),
    ]
    assert interpolate_glucose(readings, t0 - timedelta(minutes=5)) == 100.0
    assert interpolate_glucose(readings, t0 + timedelta(minutes=20)) == 120.0
    assert interpolate_glucose(readings, t0 + timedelta(minutes=5)) == pytest.approx(110.0)

    duplicated = [
        GlucoseSample(t0, 100.0, "a"),
        GlucoseSample(t0 + timedelta(minutes=5), 110.0, "b"),
        GlucoseSample(t0 + timedelta(minutes=5), 112.0, "c"),
        GlucoseSample(t0 + timedelta(minutes=10), 120.0, "d"),
    ]
    assert interpolate_glucose(duplicated, t0 + timedelta(minutes=2)) == pytest.approx(104.0)
    # a shared timestamp takes the earlier reading, and later times the later one
    assert interpolate_glucose(duplicated, t0 + timedelta(minutes=5)) == pytest.approx(110.0)
    assert interpolate_glucose(duplicated, t0 + timedelta(minutes=7, seconds=30)) == pytest.approx(116.0)
    assert interpolate_glucose([], t0) is None


def test_added_glucose_per_hour(t0, make_frame):
    flat = make_frame(t0, [120] * 7)
    assert flat.added_glucose_per_hour(50) == pytest.approx(0.0)

    rising = make_frame(t0, [100 + 5 * i for i in range(24)])
    assert rising.added_glucose_per_hour(50) == pytest.approx(60.0)
    assert rising.added_glucose_per_hour_last_30_minutes(50) == pytest.approx(60.0)

    # one unit absorbed per step at ISF 10 explains a 10 mg/dL drop per step
    falling = make_frame(t0, [200 - 10 * i for i in range(7)])
    rows = [
        FrameRow(row.event_time, row.glucose, 0.0, 10.0 - i)
        for i, row in enumerate(falling.rows)
    ]
    assert added_glucose_per_hour(rows, 10) == pytest.approx(0.0)
    assert added_glucose_per_hour(rows[:1], 10) is None


def test_frame_dataframe(t0, make_frame):
    df = make_frame(t0, [100, 105, 110]).to_dataframe()
    assert list(df.columns) == ["event_time", "glucose", "insulin_delivered", "insulin_on_board"]
    assert df["glucose"].tolist() == [100.0, 105.0, 110.0]
