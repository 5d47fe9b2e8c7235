"""
Safety Policy -- Configuration for the WellGuard Orchestrator.

This module holds every tunable that governs how signals become risk events,
how escalation cases advance, and how often a user may be contacted.  The
defaults reproduce the behaviour described in the project documentation; a
deployment may override any of them through a YAML file.

**Why the priority table is configuration, not code:**

Notification fatigue is a safety problem in its own right.  A user who is
pinged every few minutes stops reading the messages, and the one that matters
is lost.  The spacing and daily caps per priority are therefore explicit,
validated policy values.  The table must cover every ``Priority`` so that no
notification can ever be submitted without a limit.

DISCLAIMER: Sensor thresholds in this module are workflow routing parameters.
They are not clinical cut-offs.
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from wellguard.models import Priority, Severity


# ---------------------------------------------------------------------------
# Sensor thresholds
# ---------------------------------------------------------------------------

class SensorThresholds(BaseModel):
    """Cut points used by the collector to grade wearable readings.

    Heart rate and stress grade upward (higher is worse); sleep and activity
    grade downward (lower is worse).
    """

    heart_rate_high: float = Field(
        default=120.0,
        gt=0,
        description="Beats per minute above which a reading is graded high.",
    )
    heart_rate_critical: float = Field(
        default=140.0,
        gt=0,
        description=(
            "Beats per minute above which a reading is graded critical and "
            "requires an immediate response."
        ),
    )
    stress_medium: float = Field(default=70.0, ge=0, le=100)
    stress_high: float = Field(default=85.0, ge=0, le=100)
    sleep_medium_hours: float = Field(
        default=5.0,
        ge=0,
        le=24,
        description="Sleep below this many hours is graded medium.",
    )
    sleep_high_hours: float = Field(
        default=3.0,
        ge=0,
        le=24,
        description="Sleep below this many hours is graded high.",
    )
    activity_low_percent: float = Field(
        default=10.0,
        ge=0,
        le=100,
        description="Activity below this percentage during daytime hours is graded medium.",
    )
    daytime_start_hour: int = Field(default=10, ge=0, le=23)
    daytime_end_hour: int = Field(default=22, ge=1, le=24)

    @field_validator("heart_rate_critical")
    @classmethod
    def critical_above_high(cls, v: float, info) -> float:
        high = info.data.get("heart_rate_high")
        if high is not None and v <= high:
            raise ValueError(
                f"heart_rate_critical ({v}) must be > heart_rate_high ({high})"
            )
        return v

    @field_validator("stress_high")
    @classmethod
    def stress_high_above_medium(cls, v: float, info) -> float:
        medium = info.data.get("stress_medium")
        if medium is not None and v <= medium:
            raise ValueError(f"stress_high ({v}) must be > stress_medium ({medium})")
        return v

    @field_validator("sleep_high_hours")
    @classmethod
    def sleep_high_below_medium(cls, v: float, info) -> float:
        medium = info.data.get("sleep_medium_hours")
        if medium is not None and v >= medium:
            raise ValueError(
                f"sleep_high_hours ({v}) must be < sleep_medium_hours ({medium})"
            )
        return v

    @field_validator("daytime_end_hour")
    @classmethod
    def daytime_end_after_start(cls, v: int, info) -> int:
        start = info.data.get("daytime_start_hour")
        if start is not None and v <= start:
            raise ValueError(
                f"daytime_end_hour ({v}) must be > daytime_start_hour ({start})"
            )
        return v


# ---------------------------------------------------------------------------
# Priority policy table
# ---------------------------------------------------------------------------

class PriorityPolicy(BaseModel):
    """One row of the rate-limit table."""

    min_spacing_minutes: int = Field(
        ...,
        ge=0,
        description="Minimum gap between two admitted sends to the same user.",
    )
    max_per_day: int = Field(
        ...,
        gt=0,
        description="Cap on admitted sends to the user in any rolling 24 hours.",
    )
    escalation_timeout_minutes: int = Field(
        ...,
        gt=0,
        description="Time a case at this priority may sit at Tier 2 before advancing.",
    )

    @property
    def min_spacing(self) -> timedelta:
        return timedelta(minutes=self.min_spacing_minutes)

    @property
    def escalation_timeout(self) -> timedelta:
        return timedelta(minutes=self.escalation_timeout_minutes)


def _default_priority_table() -> dict[Priority, PriorityPolicy]:
    return {
        Priority.EMERGENCY: PriorityPolicy(
            min_spacing_minutes=5, max_per_day=50, escalation_timeout_minutes=15
        ),
        Priority.CRITICAL: PriorityPolicy(
            min_spacing_minutes=15, max_per_day=20, escalation_timeout_minutes=30
        ),
        Priority.HIGH: PriorityPolicy(
            min_spacing_minutes=30, max_per_day=10, escalation_timeout_minutes=60
        ),
        Priority.MEDIUM: PriorityPolicy(
            min_spacing_minutes=60, max_per_day=5, escalation_timeout_minutes=120
        ),
        Priority.LOW: PriorityPolicy(
            min_spacing_minutes=120, max_per_day=3, escalation_timeout_minutes=240
        ),
    }


# ---------------------------------------------------------------------------
# Escalation timings
# ---------------------------------------------------------------------------

class EscalationTimings(BaseModel):
    tier1_timeout_minutes: int = Field(
        default=240,
        gt=0,
        description="How long a gentle check-in may go unanswered before Tier 2.",
    )
    final_grace_window_minutes: int = Field(
        default=60,
        gt=0,
        description="Time after emergency contacts are alerted before the case expires.",
    )
    contacts_to_notify: int = Field(
        default=2,
        ge=1,
        description="Number of emergency contacts alerted at Tier 3, by contact priority.",
    )
    max_conflict_retries: int = Field(
        default=3,
        ge=1,
        description="Re-read-and-retry attempts after a concurrent case update.",
    )

    @property
    def tier1_timeout(self) -> timedelta:
        return timedelta(minutes=self.tier1_timeout_minutes)

    @property
    def final_grace_window(self) -> timedelta:
        return timedelta(minutes=self.final_grace_window_minutes)


# ---------------------------------------------------------------------------
# Delivery and external calls
# ---------------------------------------------------------------------------

class DeliverySettings(BaseModel):
    gateway_timeout_seconds: float = Field(default=10.0, gt=0)
    scorer_timeout_seconds: float = Field(default=15.0, gt=0)
    max_delivery_attempts: int = Field(
        default=3,
        ge=1,
        description="Total delivery attempts for one notification before it stays failed.",
    )
    delivery_retry_grace_minutes: int = Field(
        default=30,
        ge=0,
        description="Failed notifications younger than this are retried by the sweep.",
    )

    @property
    def delivery_retry_grace(self) -> timedelta:
        return timedelta(minutes=self.delivery_retry_grace_minutes)


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO")
    json_output: bool = Field(
        default=True,
        description="Render JSON lines; console rendering is intended for local runs.",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in allowed:
            raise ValueError(f"level must be one of {sorted(allowed)}, got '{v}'")
        return upper


# ---------------------------------------------------------------------------
# Top-level policy
# ---------------------------------------------------------------------------

_DEFAULT_BUDDY_CONCERN_KEYWORDS = [
    "terrible",
    "horrible",
    "suicidal",
    "hopeless",
    "can't",
    "help",
    "emergency",
]

_DEFAULT_CHECKIN_CONCERN_WORDS = [
    "sad",
    "depressed",
    "anxious",
    "hopeless",
    "tired",
    "alone",
    "scared",
    "hurt",
]


class SafetyPolicy(BaseModel):
    """Complete configuration for one orchestrator deployment."""

    sensor_thresholds: SensorThresholds = Field(default_factory=SensorThresholds)
    priority_table: dict[Priority, PriorityPolicy] = Field(
        default_factory=_default_priority_table,
        description="Rate-limit row per notification priority.  Must cover every priority.",
    )
    escalation: EscalationTimings = Field(default_factory=EscalationTimings)
    delivery: DeliverySettings = Field(default_factory=DeliverySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    retention_days: int = Field(
        default=90,
        ge=90,
        description=(
            "Rolling window for stored risk events.  The pattern detector and "
            "the wellness aggregator need at least 90 days of history."
        ),
    )
    post_exit_check_delay_minutes: int = Field(
        default=30,
        gt=0,
        description="Delay after leaving a trigger zone before the follow-up check-in.",
    )
    wellness_window_days: int = Field(default=3, gt=0)
    pattern_window_hours: int = Field(default=24, gt=0)
    pattern_min_severity: Severity = Field(
        default=Severity.MEDIUM,
        description="Weakest event severity the pattern detector looks at.",
    )
    sweep_max_workers: int = Field(
        default=4,
        ge=1,
        description="Users processed concurrently during one sweep.",
    )
    scorer_fallback_confidence: float = Field(
        default=0.3,
        ge=0,
        le=1,
        description="Confidence attached to a mood event when the scorer is unavailable.",
    )
    buddy_concern_keywords: list[str] = Field(
        default_factory=lambda: list(_DEFAULT_BUDDY_CONCERN_KEYWORDS),
    )
    checkin_concern_words: list[str] = Field(
        default_factory=lambda: list(_DEFAULT_CHECKIN_CONCERN_WORDS),
    )
    checkin_safe_replies: list[str] = Field(
        default_factory=lambda: ["1", "safe", "ok", "okay", "i am safe", "i'm safe", "fine"],
    )
    checkin_help_replies: list[str] = Field(
        default_factory=lambda: ["2", "help", "support", "need help", "i need help"],
    )
    checkin_negative_words: list[str] = Field(
        default_factory=lambda: ["sad", "bad", "terrible", "awful"],
    )
    checkin_negations: list[str] = Field(
        default_factory=lambda: ["not", "never", "don't", "dont", "doesn't", "didn't"],
        description="Words that, placed just before 'help' or 'need help', cancel it.",
    )
    default_home_zone_radius_m: float = Field(default=100.0, gt=0)

    @field_validator("priority_table")
    @classmethod
    def covers_every_priority(
        cls, v: dict[Priority, PriorityPolicy]
    ) -> dict[Priority, PriorityPolicy]:
        missing = [p.value for p in Priority if p not in v]
        if missing:
            raise ValueError(f"priority_table is missing rows for: {missing}")
        return v

    @field_validator(
        "buddy_concern_keywords",
        "checkin_concern_words",
        "checkin_safe_replies",
        "checkin_help_replies",
        "checkin_negative_words",
        "checkin_negations",
    )
    @classmethod
    def normalize_vocabulary(cls, v: list[str]) -> list[str]:
        return [w.strip().lower() for w in v if w.strip()]

    def for_priority(self, priority: Priority) -> PriorityPolicy:
        return self.priority_table[priority]


DEFAULT_POLICY = SafetyPolicy()
"""Built-in policy carrying the documented defaults."""


# ---------------------------------------------------------------------------
# YAML loader
# ---------------------------------------------------------------------------

def load_policy_from_yaml(path: str | Path) -> SafetyPolicy:
    """Load a safety policy from a YAML file.

    The file must contain a top-level ``policy`` key.  Omitted fields keep
    their defaults; priority-table rows are keyed by priority name.

    Example YAML structure::

        policy:
          retention_days: 120
          sensor_thresholds:
            heart_rate_high: 115
          priority_table:
            emergency: {min_spacing_minutes: 5, max_per_day: 50, escalation_timeout_minutes: 15}
            ...

    Args:
        path: Path to the YAML file.

    Returns:
        A validated ``SafetyPolicy``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If the policy fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Policy file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "policy" not in raw:
        raise ValueError("YAML file must contain a top-level 'policy' mapping.")

    entry: Optional[dict] = raw["policy"]
    if entry is None:
        return SafetyPolicy()
    if not isinstance(entry, dict):
        raise ValueError("'policy' must be a mapping.")

    table = entry.get("priority_table")
    if isinstance(table, dict):
        # Partial tables inherit the default rows they do not override.
        merged = _default_priority_table()
        for key, row in table.items():
            merged[Priority(key)] = PriorityPolicy(**row)
        entry = {**entry, "priority_table": merged}

    return SafetyPolicy(**entry)
