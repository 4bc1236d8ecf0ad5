import json
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from aidloop.validation import SettingsStore, format_validation_error, load_settings, validate_settings_dict
from aidloop.validation.schemas import LearnedSchedule, LoopSettings


def test_defaults():
    settings = LoopSettings()
    assert settings.pump_basal_rate_units_per_hour == 0.3
    assert not settings.closed_loop_enabled
    assert settings.correction_duration.total_seconds() == 1800
    assert settings.freshness_interval.total_seconds() == 600


def test_learned_schedule_uses_local_time():
    settings = LoopSettings(
        timezone="America/Los_Angeles",
        learned_basal_rates=LearnedSchedule(values=[0.1, 0.2, 0.3, 0.4, 0.5, 0.6]),
        learned_insulin_sensitivities=LearnedSchedule(values=[40, 45, 50, 55, 60, 65]),
    )
    # 20:00 UTC is 13:00 in Los Angeles during daylight time
    at = datetime(2024, 5, 1, 20, 0, tzinfo=timezone.utc)
    assert settings.learned_basal_rate(at) == 0.4
    assert settings.learned_insulin_sensitivity(at) == 55
    assert settings.max_scheduled_basal_rate() == 0.6


def test_schedule_falls_back_to_pump_values(t0):
    settings = LoopSettings(pump_basal_rate_units_per_hour=0.8, insulin_sensitivity=60)
    assert settings.learned_basal_rate(t0) == 0.8
    assert settings.learned_insulin_sensitivity(t0) == 60
    assert settings.max_scheduled_basal_rate() == 0.8


@pytest.mark.parametrize(
    "data",
    [
        {"insulin_sensitivity": 0},
        {"max_basal_rate_units_per_hour": -1},
        {"timezone": "Mars/Olympus_Mons"},
        {"ml_controller": "oracle"},
        {"learned_basal_rates": {"values": [0.1, 0.2]}},
        {"learned_insulin_sensitivities": {"values": [40, 0, 50, 55, 60, 65]}},
        {"unknown_field": 1},
    ],
)
def test_invalid_settings_rejected(data):
    with pytest.raises(ValidationError):
        validate_settings_dict(data)


def test_format_validation_error():
    with pytest.raises(ValidationError) as excinfo:
        validate_settings_dict({"insulin_sensitivity": -5})
    lines = format_validation_error(excinfo.value)
    assert lines[0].startswith("insulin_sensitivity:")


def test_load_settings_yaml_and_json(tmp_path):
    yaml_path = tmp_path / "settings.yaml"
    yaml_path.write_text("closed_loop_enabled: true\ntarget_glucose: 110\n")
    assert load_settings(yaml_path).target_glucose == 110

    json_path = tmp_path / "settings.json"
    json_path.write_text(json.dumps({"use_micro_bolus": True}))
    assert load_settings(json_path).use_micro_bolus

    empty = tmp_path / "empty.yaml"
    empty.write_text("")
    assert load_settings(empty) == LoopSettings()


def test_settings_store_swaps_snapshots():
    store = SettingsStore()
    before = store.snapshot()
    after = store.update(closed_loop_enabled=True)

    assert after.closed_loop_enabled
    assert not before.closed_loop_enabled
    assert store.snapshot() is after

    with pytest.raises(ValidationError):
        store.update(target_glucose=-1)
    assert store.snapshot() is after
