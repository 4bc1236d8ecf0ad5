from __future__ import annotations

from dataclasses import dataclass


@dataclass
class SafetyConfig:
    """
    Timing windows and thresholds shared by the controllers, the safety
    arbiter and the loop orchestrator.
    """
    # Loop cadence
    min_loop_interval_minutes: float = 4.2
    min_micro_bolus_interval_minutes: float = 4.2
    queue_drain_timeout_seconds: float = 30.0

    # Retention windows
    safety_horizon_hours: float = 3.0
    safety_ledger_retention_hours: float = 24.0
    dose_ledger_retention_hours: float = 9.0
    glucose_retention_hours: float = 12.0

    # Feature frame
    frame_rows: int = 24
    frame_min_real_samples: int = 20

    # Physiological controller
    derivative_max_age_minutes: float = 11.0
    integral_limit: float = 240.0
    digestion_threshold: float = 40.0

    # Dose selection
    biological_invariant_threshold: float = -35.0
    min_micro_bolus_units: float = 0.025
    micro_bolus_glucose_margin: float = 20.0
    predicted_falling_margin: float = 2.0

    # Targets and exercise
    min_target_glucose: float = 70.0
    max_target_glucose: float = 140.0
    exercise_target_glucose: float = 140.0
    workout_message_ttl_minutes: float = 60.0

    # Auxiliary ML controller
    ml_waking_hour_start: int = 8
    ml_waking_hour_end: int = 22
    ml_activation_glucose: float = 180.0
    ml_recent_low_glucose: float = 70.0
