"""
Tests for wellguard.config -- Safety Policy.

Covers: default policy values, priority table coverage, threshold ordering,
vocabulary normalization, logging settings, and the YAML loader.
"""

from pathlib import Path

import pytest
import structlog
import yaml
from pydantic import ValidationError

from wellguard.config import (
    DEFAULT_POLICY,
    LoggingSettings,
    PriorityPolicy,
    SafetyPolicy,
    SensorThresholds,
    load_policy_from_yaml,
)
from wellguard.logging_config import add_service_context, setup_logging
from wellguard.models import Priority


# ---------------------------------------------------------------------------
# 1. Default policy
# ---------------------------------------------------------------------------

class TestDefaultPolicy:
    def test_default_priority_table(self):
        high = DEFAULT_POLICY.for_priority(Priority.HIGH)
        assert (high.min_spacing_minutes, high.max_per_day, high.escalation_timeout_minutes) == (30, 10, 60)
        emergency = DEFAULT_POLICY.for_priority(Priority.EMERGENCY)
        assert (emergency.min_spacing_minutes, emergency.max_per_day) == (5, 50)
        low = DEFAULT_POLICY.for_priority(Priority.LOW)
        assert (low.min_spacing_minutes, low.max_per_day, low.escalation_timeout_minutes) == (120, 3, 240)

    def test_default_escalation_timings(self):
        esc = DEFAULT_POLICY.escalation
        assert esc.tier1_timeout_minutes == 240
        assert esc.final_grace_window_minutes == 60
        assert esc.contacts_to_notify == 2

    def test_default_thresholds(self):
        t = DEFAULT_POLICY.sensor_thresholds
        assert (t.heart_rate_high, t.heart_rate_critical) == (120, 140)
        assert (t.daytime_start_hour, t.daytime_end_hour) == (10, 22)

    def test_retention_at_least_ninety_days(self):
        assert DEFAULT_POLICY.retention_days == 90
        with pytest.raises(ValidationError):
            SafetyPolicy(retention_days=30)


# ---------------------------------------------------------------------------
# 2. Priority table validation
# ---------------------------------------------------------------------------

class TestPriorityTable:
    def test_incomplete_table_rejected(self):
        table = {
            Priority.HIGH: PriorityPolicy(
                min_spacing_minutes=30, max_per_day=10, escalation_timeout_minutes=60
            )
        }
        with pytest.raises(ValidationError, match="missing rows"):
            SafetyPolicy(priority_table=table)

    def test_zero_daily_cap_rejected(self):
        with pytest.raises(ValidationError):
            PriorityPolicy(min_spacing_minutes=5, max_per_day=0, escalation_timeout_minutes=10)

    def test_timedelta_properties(self):
        row = PriorityPolicy(min_spacing_minutes=15, max_per_day=20, escalation_timeout_minutes=30)
        assert row.min_spacing.total_seconds() == 900
        assert row.escalation_timeout.total_seconds() == 1800


# ---------------------------------------------------------------------------
# 3. Threshold ordering
# ---------------------------------------------------------------------------

class TestThresholdOrdering:
    def test_critical_heart_rate_must_exceed_high(self):
        with pytest.raises(ValidationError, match="heart_rate_critical"):
            SensorThresholds(heart_rate_high=150, heart_rate_critical=140)

    def test_sleep_high_must_be_below_medium(self):
        with pytest.raises(ValidationError, match="sleep_high_hours"):
            SensorThresholds(sleep_medium_hours=4, sleep_high_hours=5)

    def test_daytime_window_must_be_ordered(self):
        with pytest.raises(ValidationError, match="daytime_end_hour"):
            SensorThresholds(daytime_start_hour=20, daytime_end_hour=8)


# ---------------------------------------------------------------------------
# 4. Vocabulary and logging settings
# ---------------------------------------------------------------------------

class TestSettingsNormalization:
    def test_vocabulary_lowercased_and_stripped(self):
        policy = SafetyPolicy(buddy_concern_keywords=["  Hopeless ", "", "HELP"])
        assert policy.buddy_concern_keywords == ["hopeless", "help"]

    def test_log_level_uppercased(self):
        assert LoggingSettings(level="debug").level == "DEBUG"

    def test_unknown_log_level_rejected(self):
        with pytest.raises(ValidationError):
            LoggingSettings(level="verbose")


# ---------------------------------------------------------------------------
# 5. YAML loader
# ---------------------------------------------------------------------------

class TestYAMLLoader:
    def _write_yaml(self, data: dict, tmp_dir: Path) -> Path:
        path = tmp_dir / "policy.yaml"
        with open(path, "w") as f:
            yaml.dump(data, f)
        return path

    def test_load_overrides(self, tmp_path):
        path = self._write_yaml(
            {"policy": {"retention_days": 120, "sensor_thresholds": {"heart_rate_high": 115}}},
            tmp_path,
        )
        policy = load_policy_from_yaml(path)
        assert policy.retention_days == 120
        assert policy.sensor_thresholds.heart_rate_high == 115
        assert policy.sensor_thresholds.heart_rate_critical == 140

    def test_partial_priority_table_merges_defaults(self, tmp_path):
        path = self._write_yaml(
            {
                "policy": {
                    "priority_table": {
                        "high": {
                            "min_spacing_minutes": 10,
                            "max_per_day": 4,
                            "escalation_timeout_minutes": 20,
                        }
                    }
                }
            },
            tmp_path,
        )
        policy = load_policy_from_yaml(path)
        assert policy.for_priority(Priority.HIGH).max_per_day == 4
        assert policy.for_priority(Priority.LOW).max_per_day == 3

    def test_empty_policy_gives_defaults(self, tmp_path):
        path = self._write_yaml({"policy": None}, tmp_path)
        assert load_policy_from_yaml(path).retention_days == 90

    def test_load_nonexistent_file_raises(self):
        with pytest.raises(FileNotFoundError):
            load_policy_from_yaml("/nonexistent/policy.yaml")

    def test_load_invalid_structure_raises(self, tmp_path):
        path = self._write_yaml({"not_policy": {}}, tmp_path)
        with pytest.raises(ValueError, match="top-level 'policy'"):
            load_policy_from_yaml(path)

    def test_load_sample_policy(self):
        """The bundled walkthrough policy loads."""
        sample_path = Path(__file__).parent.parent / "examples" / "safety_policy.yaml"
        if sample_path.exists():
            policy = load_policy_from_yaml(sample_path)
            assert policy.retention_days == 120
            assert policy.logging.json_output is False


# ---------------------------------------------------------------------------
# 6. Logging setup
# ---------------------------------------------------------------------------

class TestSetupLogging:
    def teardown_method(self):
        structlog.reset_defaults()

    def test_service_tag_added(self):
        event = add_service_context(None, "info", {"event": "sweep_completed"})
        assert event["service"] == "wellguard"

    def test_service_tag_not_overwritten(self):
        event = add_service_context(None, "info", {"event": "x", "service": "other"})
        assert event["service"] == "other"

    @pytest.mark.parametrize(
        "json_output, renderer",
        [
            (True, structlog.processors.JSONRenderer),
            (False, structlog.dev.ConsoleRenderer),
        ],
    )
    def test_renderer_selected(self, json_output, renderer):
        setup_logging(LoggingSettings(level="WARNING", json_output=json_output))
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], renderer)
        assert add_service_context in processors
