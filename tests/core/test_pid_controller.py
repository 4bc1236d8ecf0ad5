from datetime import timedelta

import pytest

from aidloop.core.algorithms.pid_controller import (
    PhysiologicalController,
    delta_glucose_error,
    least_squares_fit,
)
from aidloop.core.glucose import GlucoseSample, GlucoseStore
from aidloop.core.insulin import baseline_insulin_on_board
from aidloop.validation.schemas import LoopSettings


@pytest.fixture
def settings():
    return LoopSettings(pump_basal_rate_units_per_hour=1.0, insulin_sensitivity=50.0, target_glucose=100.0)


@pytest.fixture
def controller():
    return PhysiologicalController(GlucoseStore())


def test_first_cycle_is_proportional_only(controller, settings, t0):
    result = controller.temp_basal(settings, 150.0, 100.0, 0.0, None, t0)
    # 50 mg/dL over ISF 50 is 1 U, spread over 30 minutes, plus basal
    assert result.temp_basal == pytest.approx(3.0)
    assert result.derivative == 0.0
    assert controller.last_glucose == 150.0
    assert controller.last_glucose_at == t0


def test_derivative_uses_recent_glucose(controller, settings, t0):
    controller.temp_basal(settings, 150.0, 100.0, 0.0, None, t0)
    result = controller.temp_basal(settings, 160.0, 100.0, 0.0, None, t0 + timedelta(minutes=5))
    assert result.derivative == pytest.approx(10.0)
    assert result.temp_basal == pytest.approx(4.6)


def test_result_reports_previous_cycle_glucose(controller, settings, t0):
    first = controller.temp_basal(settings, 150.0, 100.0, 0.0, None, t0)
    assert first.last_glucose is None
    assert first.last_glucose_at is None

    later = t0 + timedelta(minutes=5)
    second = controller.temp_basal(settings, 160.0, 100.0, 0.0, None, later)
    assert second.last_glucose == 150.0
    assert second.last_glucose_at == t0
    assert controller.last_glucose == 160.0
    assert controller.last_glucose_at == later


def test_stale_glucose_drops_derivative(controller, settings, t0):
    controller.temp_basal(settings, 150.0, 100.0, 0.0, None, t0)
    result = controller.temp_basal(settings, 160.0, 100.0, 0.0, None, t0 + timedelta(minutes=11))
    assert result.derivative == 0.0
    assert result.temp_basal == pytest.approx(3.4)


def test_insulin_above_steady_state_reduces_rate(controller, settings, t0):
    baseline = baseline_insulin_on_board(1.0)
    result = controller.temp_basal(settings, 150.0, 100.0, baseline + 0.5, None, t0)
    assert result.temp_basal == pytest.approx(2.0)

    controller.reset()
    below = controller.temp_basal(settings, 150.0, 100.0, baseline - 0.5, None, t0)
    assert below.temp_basal == pytest.approx(3.0)


def test_delta_glucose_error_for_flat_glucose(t0, make_frame):
    frame = make_frame(t0, [120] * 5)
    # scheduled basal alone should have dropped glucose by 50 mg/dL per hour
    assert delta_glucose_error(frame, 1.0, 50.0) == pytest.approx(-50.0)


def test_delta_glucose_error_abstains_while_digesting(t0, make_frame):
    rising = make_frame(t0, [100, 110, 120, 130, 140])
    assert delta_glucose_error(rising, 1.0, 50.0) is None
    assert delta_glucose_error(make_frame(t0, [120] * 4), 1.0, 50.0) is None
    assert delta_glucose_error(None, 1.0, 50.0) is None


def test_integral_accumulates_and_is_clamped(controller, settings, t0, make_frame):
    frame = make_frame(t0, [120] * 24)
    first = controller.temp_basal(settings, 120.0, 100.0, 0.0, frame, t0)
    assert first.accumulated_error == 0.0

    later = t0 + timedelta(minutes=5)
    second = controller.temp_basal(settings, 120.0, 100.0, 0.0, make_frame(later, [120] * 24), later)
    assert second.accumulated_error == pytest.approx(-50.0)
    assert second.delta_glucose_error == pytest.approx(-50.0)

    controller.accumulated_error = -230.0
    after = later + timedelta(minutes=5)
    third = controller.temp_basal(settings, 120.0, 100.0, 0.0, make_frame(after, [120] * 24), after)
    assert third.accumulated_error == pytest.approx(-240.0)


def test_prediction_extrapolates_recent_trend(t0, make_readings):
    store = GlucoseStore()
    store.add_readings(make_readings(t0, [100, 105, 110, 115, 120]))
    controller = PhysiologicalController(store)
    assert controller.predict_glucose_in_15_minutes(t0) == pytest.approx(135.0)


def test_prediction_uses_latest_five_readings(t0, make_readings):
    store = GlucoseStore()
    store.add_readings(make_readings(t0, [300, 100, 100, 100, 100, 100]))
    controller = PhysiologicalController(store)
    assert controller.predict_glucose_in_15_minutes(t0) == pytest.approx(100.0)


def test_prediction_abstains_without_trend(t0):
    single = GlucoseStore()
    single.add_readings([GlucoseSample(t0, 120.0, "a")])
    assert PhysiologicalController(single).predict_glucose_in_15_minutes(t0) is None

    duplicated = GlucoseStore()
    duplicated.add_readings([GlucoseSample(t0, 120.0, "a"), GlucoseSample(t0, 125.0, "b")])
    assert PhysiologicalController(duplicated).predict_glucose_in_15_minutes(t0) is None


def test_least_squares_fit():
    assert least_squares_fit([0, 1, 2], [1, 3, 5]) == pytest.approx((2.0, 1.0))
    assert least_squares_fit([1, 1], [2, 3]) is None
    assert least_squares_fit([1], [2]) is None


def test_state_round_trip(controller, settings, t0):
    controller.temp_basal(settings, 150.0, 100.0, 0.0, None, t0)
    controller.accumulated_error = -12.5
    state = controller.get_state()

    restored = PhysiologicalController(GlucoseStore())
    restored.set_state(state)
    assert restored.accumulated_error == -12.5
    assert restored.last_glucose == 150.0
    assert restored.last_glucose_at == t0
