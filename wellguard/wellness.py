"""
Wellness Score Aggregator.

A single 0-100 summary of how a user has been doing over the last few days:

    clamp(50 + 10 * (avg_mood - 3)
             + 0.2 * avg_activity_percent
             + min(5 * responded_checkins, 20)
             - 10 * crisis_event_count, 0, 100)

rounded to the nearest integer.  A missing mood or activity average
contributes nothing.  The score is informational: it is stored for display
and never feeds the escalation state machine.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, Field

from wellguard.config import SafetyPolicy
from wellguard.models import SensorMetric, Severity, SourceType, WellnessScore
from wellguard.repository import Repository


class WellnessInputs(BaseModel):
    avg_mood: Optional[float] = Field(default=None, ge=1, le=5)
    avg_activity_percent: Optional[float] = Field(default=None, ge=0, le=100)
    responded_checkins: int = Field(default=0, ge=0)
    crisis_event_count: int = Field(default=0, ge=0)


def compute_wellness_score(inputs: WellnessInputs) -> tuple[int, dict[str, float]]:
    """Return the clamped, rounded score and its per-component breakdown."""
    components = {
        "base": 50.0,
        "mood": 10.0 * (inputs.avg_mood - 3) if inputs.avg_mood is not None else 0.0,
        "activity": 0.2 * inputs.avg_activity_percent if inputs.avg_activity_percent is not None else 0.0,
        "checkins": float(min(5 * inputs.responded_checkins, 20)),
        "crisis": -10.0 * inputs.crisis_event_count,
    }
    raw = sum(components.values())
    value = int(round(min(max(raw, 0.0), 100.0)))
    return value, components


class WellnessAggregator:
    """Gathers wellness inputs from the event log and stores the score."""

    def __init__(self, repository: Repository, policy: SafetyPolicy) -> None:
        self._repo = repository
        self._policy = policy

    def gather(self, user_id: str, now: datetime) -> WellnessInputs:
        since = now - timedelta(days=self._policy.wellness_window_days)
        events = self._repo.list_events(user_id, since=since, until=now)

        moods = [
            float(e.metadata["mood_score"])
            for e in events
            if e.source_type is SourceType.MOOD and "mood_score" in e.metadata
        ]
        activity = [
            float(e.metadata["value"])
            for e in events
            if e.source_type is SourceType.SENSOR
            and e.metadata.get("metric") == SensorMetric.ACTIVITY.value
        ]
        responded = sum(
            1
            for e in events
            if e.source_type is SourceType.CHECKIN and e.metadata.get("responded")
        )
        crises = sum(1 for e in events if e.severity is Severity.CRITICAL)

        return WellnessInputs(
            avg_mood=sum(moods) / len(moods) if moods else None,
            avg_activity_percent=sum(activity) / len(activity) if activity else None,
            responded_checkins=responded,
            crisis_event_count=crises,
        )

    def compute(self, user_id: str, now: Optional[datetime] = None) -> WellnessScore:
        now = now or datetime.now(timezone.utc)
        value, components = compute_wellness_score(self.gather(user_id, now))
        score = WellnessScore(user_id=user_id, value=value, computed_at=now, components=components)
        self._repo.save_wellness_score(score)
        return score
