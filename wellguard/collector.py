"""
Risk Signal Collector -- Normalization of Heterogeneous Safety Signals.

Turns every raw input (mood self-report, wearable reading, check-in miss or
reply, buddy reply, zone transition, risk forecast) into exactly one
``RiskEvent`` and appends it to the event log.  The collector never notifies
anyone; deciding what to do with an event is the escalation state machine's
job.

**Severity rules:**

* mood        -- copied from the AI risk scorer; ``low`` with reduced
  confidence when the scorer is unavailable.
* sensor      -- policy thresholds (heart rate, stress, sleep, daytime
  activity).  A critical heart rate requires an immediate response.
* check-in    -- a run of misses grades low, medium, then high from the
  third consecutive miss, which also asks for contact notification and a
  fresh score.  Replies are classified as safe, help, negative, or custom.
* buddy       -- density of concern keywords in the free text.
* zone        -- entering a trigger zone is high, leaving a safe zone is
  medium, everything else is low.
* prediction  -- forecast values copied through.

Malformed input raises ``MalformedInputError`` and nothing is stored.

DISCLAIMER: Severities are routing signals for a notification workflow, not
clinical assessments.
"""

from __future__ import annotations

import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

import structlog

from wellguard.audit import AuditEventType, AuditLog
from wellguard.config import SafetyPolicy
from wellguard.exceptions import MalformedInputError
from wellguard.models import (
    BuddyResponse,
    CheckInOutcome,
    CheckInStreak,
    MoodEntry,
    ResponseKind,
    RiskEvent,
    RiskForecast,
    SensorMetric,
    SensorReading,
    Severity,
    SourceType,
    ZoneEventType,
    ZoneTransition,
    ZoneType,
)
from wellguard.repository import Repository
from wellguard.scorer import GuardedScorer

logger = structlog.get_logger(__name__)

RawInput = Union[
    MoodEntry, SensorReading, CheckInOutcome, BuddyResponse, ZoneTransition, RiskForecast
]

_SEVERITY_SCORE: dict[Severity, float] = {
    Severity.LOW: 0.1,
    Severity.MEDIUM: 0.4,
    Severity.HIGH: 0.7,
    Severity.CRITICAL: 0.9,
}

_WORD_RE = re.compile(r"[a-z0-9']+")
_HELP_FILLERS = frozenset({"need", "want", "any", "much", "more"})


# ---------------------------------------------------------------------------
# Check-in reply classification
# ---------------------------------------------------------------------------

class CheckInClassification:
    """How a free-text check-in reply was read."""

    def __init__(
        self,
        kind: ResponseKind,
        severity: Severity,
        score: float,
        requires_immediate: bool = False,
        concern_hits: Optional[list[str]] = None,
    ) -> None:
        self.kind = kind
        self.severity = severity
        self.score = score
        self.requires_immediate = requires_immediate
        self.concern_hits = concern_hits or []

    def __repr__(self) -> str:
        return (
            f"CheckInClassification(kind={self.kind.value}, "
            f"severity={self.severity.value}, score={self.score})"
        )


def _words(text: str) -> list[str]:
    return _WORD_RE.findall(text.lower().replace("\u2019", "'"))


def _asks_for_help(normalized: str, words: list[str], policy: SafetyPolicy) -> bool:
    if normalized in policy.checkin_help_replies:
        return True
    for i, w in enumerate(words):
        if w != "help":
            continue
        j = i - 1
        while j >= 0 and words[j] in _HELP_FILLERS:
            j -= 1
        if j < 0 or words[j] not in policy.checkin_negations:
            return True
    return False


def classify_checkin_response(text: str, policy: SafetyPolicy) -> CheckInClassification:
    """Classify a check-in reply.

    Exact safe replies ("1", "safe", "ok", ...) resolve; help replies ("2",
    "help", ...) and any "help" not directly negated ("don't need help") are
    critical and need an immediate response; replies with a negative word are
    medium.  Anything else is scored by how many distinct
    concern words it contains: ``min(0.2 + 0.2 * hits, 0.9)``, high above
    0.7.
    """
    normalized = " ".join(text.lower().split())
    words = _words(normalized)

    if normalized in policy.checkin_safe_replies:
        return CheckInClassification(ResponseKind.SAFE, Severity.LOW, 0.0)
    if _asks_for_help(normalized, words, policy):
        return CheckInClassification(
            ResponseKind.HELP, Severity.CRITICAL, 0.8, requires_immediate=True
        )
    if any(w in policy.checkin_negative_words for w in words):
        return CheckInClassification(ResponseKind.NEGATIVE, Severity.MEDIUM, 0.6)

    hits = sorted({w for w in words if w in policy.checkin_concern_words})
    score = min(0.2 + 0.2 * len(hits), 0.9)
    if score > 0.7:
        severity = Severity.HIGH
    elif score >= 0.4:
        severity = Severity.MEDIUM
    else:
        severity = Severity.LOW
    return CheckInClassification(ResponseKind.CUSTOM, severity, round(score, 2), concern_hits=hits)


def buddy_concern_hits(text: str, policy: SafetyPolicy) -> list[str]:
    """Distinct buddy concern keywords present in ``text``."""
    words = set(_words(text))
    return sorted(k for k in policy.buddy_concern_keywords if k in words)


# ---------------------------------------------------------------------------
# Collector
# ---------------------------------------------------------------------------

class RiskSignalCollector:
    """Normalizes raw inputs into persisted ``RiskEvent``s."""

    def __init__(
        self,
        repository: Repository,
        scorer: GuardedScorer,
        policy: SafetyPolicy,
        audit_log: Optional[AuditLog] = None,
    ) -> None:
        self._repo = repository
        self._scorer = scorer
        self._policy = policy
        self._audit_log = audit_log

    def normalize(self, raw: RawInput, now: Optional[datetime] = None) -> RiskEvent:
        """Map one raw input to a ``RiskEvent`` and append it to the log.

        The event's ``created_at`` is the raw input's own timestamp.

        Args:
            raw: Any supported raw input model.
            now: Processing time, used for the audit trail.

        Returns:
            The persisted event.

        Raises:
            MalformedInputError: For unsupported or out-of-range input.
        """
        now = now or datetime.now(timezone.utc)
        if isinstance(raw, MoodEntry):
            event = self._from_mood(raw)
        elif isinstance(raw, SensorReading):
            event = self._from_sensor(raw)
        elif isinstance(raw, CheckInOutcome):
            event = self._from_missed_checkin(raw) if raw.missed else self._from_checkin_reply(raw)
        elif isinstance(raw, BuddyResponse):
            event = self._from_buddy(raw)
        elif isinstance(raw, ZoneTransition):
            event = self._from_zone(raw)
        elif isinstance(raw, RiskForecast):
            event = self._from_forecast(raw)
        else:
            raise MalformedInputError(
                f"Unsupported input type: {type(raw).__name__}",
                details={"type": type(raw).__name__},
            )
        return self._persist(event, now)

    def evaluate_with_scorer(
        self,
        user_id: str,
        features: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> RiskEvent:
        """Run a fresh scorer evaluation and record it as a prediction event.

        When ``features`` is omitted, a summary of the user's last 24 hours
        of events is sent.
        """
        now = now or datetime.now(timezone.utc)
        if features is None:
            features = self._recent_summary(user_id, now)
        result = self._scorer.evaluate({**features, "user_id": user_id})
        event = RiskEvent(
            user_id=user_id,
            source_type=SourceType.PREDICTION,
            severity=result.risk_level,
            score=result.risk_score,
            confidence=result.confidence,
            created_at=now,
            metadata={
                "origin": "scorer_evaluation",
                "reasoning": result.reasoning,
                "scorer_fallback": result.fallback,
            },
        )
        return self._persist(event, now)

    # -- helpers --

    def _persist(self, event: RiskEvent, now: datetime) -> RiskEvent:
        self._repo.append_event(event)
        logger.info(
            "risk_event_recorded",
            user_id=event.user_id,
            event_id=event.event_id,
            source_type=event.source_type.value,
            severity=event.severity.value,
            requires_immediate=event.requires_immediate,
        )
        if self._audit_log is not None:
            self._audit_log.record(
                AuditEventType.RISK_EVENT_RECORDED,
                user_id=event.user_id,
                target_entity=event.event_id,
                actor="collector",
                timestamp=now,
                source_type=event.source_type.value,
                severity=event.severity.value,
                score=event.score,
            )
        return event

    @staticmethod
    def _check_timestamp(ts: datetime, field: str) -> None:
        if ts.tzinfo is None or ts.utcoffset() is None:
            raise MalformedInputError(f"{field} must be timezone-aware", details={"field": field})

    def _recent_summary(self, user_id: str, now: datetime) -> dict[str, Any]:
        events = self._repo.list_events(user_id, since=now - timedelta(hours=24), until=now)
        by_source: dict[str, int] = {}
        for e in events:
            by_source[e.source_type.value] = by_source.get(e.source_type.value, 0) + 1
        streak = self._repo.get_checkin_streak(user_id)
        return {
            "events_24h": len(events),
            "events_by_source": by_source,
            "high_or_critical_24h": sum(1 for e in events if e.is_actionable),
            "consecutive_missed_checkins": streak.consecutive_misses,
        }

    # -- per-source mapping --

    def _from_mood(self, raw: MoodEntry) -> RiskEvent:
        self._check_timestamp(raw.recorded_at, "recorded_at")
        if not 1 <= raw.mood_score <= 5:
            raise MalformedInputError(
                f"mood_score out of range: {raw.mood_score}", details={"user_id": raw.user_id}
            )
        recent = [
            e.metadata["mood_score"]
            for e in self._repo.list_events(
                raw.user_id, since=raw.recorded_at - timedelta(days=7), until=raw.recorded_at
            )
            if e.source_type is SourceType.MOOD and "mood_score" in e.metadata
        ]
        features = {
            "user_id": raw.user_id,
            "mood_score": raw.mood_score,
            "notes": raw.notes,
            "recent_mood_average": sum(recent) / len(recent) if recent else None,
            "recorded_at": raw.recorded_at.isoformat(),
        }
        result = self._scorer.evaluate(features)
        if result.fallback:
            severity = Severity.LOW
            confidence = self._policy.scorer_fallback_confidence
        else:
            severity = result.risk_level
            confidence = result.confidence
        return RiskEvent(
            user_id=raw.user_id,
            source_type=SourceType.MOOD,
            severity=severity,
            score=result.risk_score,
            confidence=confidence,
            created_at=raw.recorded_at,
            metadata={
                "mood_score": raw.mood_score,
                "reasoning": result.reasoning,
                "scorer_fallback": result.fallback,
            },
        )

    def _from_sensor(self, raw: SensorReading) -> RiskEvent:
        self._check_timestamp(raw.recorded_at, "recorded_at")
        if not isinstance(raw.metric, SensorMetric):
            raise MalformedInputError(f"Unknown sensor metric: {raw.metric!r}")
        value = raw.value
        if not math.isfinite(value) or value < 0:
            raise MalformedInputError(
                f"Sensor value out of range: {value}", details={"metric": raw.metric.value}
            )

        t = self._policy.sensor_thresholds
        severity = Severity.LOW
        requires_immediate = False
        reason = "within thresholds"

        if raw.metric is SensorMetric.HEART_RATE:
            if value > t.heart_rate_critical:
                severity, requires_immediate = Severity.CRITICAL, True
                reason = f"heart rate {value} > {t.heart_rate_critical}"
            elif value > t.heart_rate_high:
                severity = Severity.HIGH
                reason = f"heart rate {value} > {t.heart_rate_high}"
        elif raw.metric is SensorMetric.STRESS:
            if value > 100:
                raise MalformedInputError(f"Stress percentage out of range: {value}")
            if value > t.stress_high:
                severity, reason = Severity.HIGH, f"stress {value}% > {t.stress_high}%"
            elif value > t.stress_medium:
                severity, reason = Severity.MEDIUM, f"stress {value}% > {t.stress_medium}%"
        elif raw.metric is SensorMetric.SLEEP:
            if value > 24:
                raise MalformedInputError(f"Sleep hours out of range: {value}")
            if value < t.sleep_high_hours:
                severity, reason = Severity.HIGH, f"sleep {value}h < {t.sleep_high_hours}h"
            elif value < t.sleep_medium_hours:
                severity, reason = Severity.MEDIUM, f"sleep {value}h < {t.sleep_medium_hours}h"
        elif raw.metric is SensorMetric.ACTIVITY:
            if value > 100:
                raise MalformedInputError(f"Activity percentage out of range: {value}")
            hour = raw.recorded_at.hour
            if value < t.activity_low_percent and t.daytime_start_hour <= hour < t.daytime_end_hour:
                severity = Severity.MEDIUM
                reason = f"activity {value}% < {t.activity_low_percent}% during daytime"

        return RiskEvent(
            user_id=raw.user_id,
            source_type=SourceType.SENSOR,
            severity=severity,
            score=_SEVERITY_SCORE[severity],
            created_at=raw.recorded_at,
            requires_immediate=requires_immediate,
            metadata={
                "metric": raw.metric.value,
                "value": value,
                "unit": raw.unit,
                "reason": reason,
            },
        )

    def _from_missed_checkin(self, raw: CheckInOutcome) -> RiskEvent:
        self._check_timestamp(raw.occurred_at, "occurred_at")

        def record_miss(streak: CheckInStreak) -> int:
            streak.consecutive_misses += 1
            streak.last_missed_at = raw.occurred_at
            return streak.consecutive_misses

        misses = self._repo.update_checkin_streak(raw.user_id, record_miss)
        metadata: dict[str, Any] = {"missed": True, "consecutive_misses": misses}
        if misses >= 3:
            severity, score = Severity.HIGH, 0.8
            metadata["intents"] = ["notify_contacts", "rescore"]
        elif misses == 2:
            severity, score = Severity.MEDIUM, 0.5
        else:
            severity, score = Severity.LOW, 0.2

        return RiskEvent(
            user_id=raw.user_id,
            source_type=SourceType.CHECKIN,
            severity=severity,
            score=score,
            created_at=raw.occurred_at,
            metadata=metadata,
        )

    def _from_checkin_reply(self, raw: CheckInOutcome) -> RiskEvent:
        self._check_timestamp(raw.occurred_at, "occurred_at")
        if not raw.response.strip():
            raise MalformedInputError("Check-in reply is empty", details={"user_id": raw.user_id})

        def record_reply(streak: CheckInStreak) -> None:
            streak.consecutive_misses = 0
            streak.last_response_at = raw.occurred_at
            streak.responded_count += 1

        self._repo.update_checkin_streak(raw.user_id, record_reply)
        c = classify_checkin_response(raw.response, self._policy)
        return RiskEvent(
            user_id=raw.user_id,
            source_type=SourceType.CHECKIN,
            severity=c.severity,
            score=c.score,
            created_at=raw.occurred_at,
            requires_immediate=c.requires_immediate,
            metadata={
                "missed": False,
                "responded": True,
                "response_kind": c.kind.value,
                "concern_hits": c.concern_hits,
            },
        )

    def _from_buddy(self, raw: BuddyResponse) -> RiskEvent:
        self._check_timestamp(raw.received_at, "received_at")
        hits = buddy_concern_hits(raw.response, self._policy)
        if len(hits) >= 2:
            severity = Severity.HIGH
        elif len(hits) == 1:
            severity = Severity.MEDIUM
        else:
            severity = Severity.LOW
        return RiskEvent(
            user_id=raw.user_id,
            source_type=SourceType.BUDDY,
            severity=severity,
            score=_SEVERITY_SCORE[severity],
            created_at=raw.received_at,
            metadata={"buddy_user_id": raw.buddy_user_id, "keyword_hits": hits},
        )

    def _from_zone(self, raw: ZoneTransition) -> RiskEvent:
        zone, zone_event = raw.zone, raw.event
        self._check_timestamp(zone_event.timestamp, "timestamp")
        if zone.zone_type is ZoneType.TRIGGER and zone_event.event_type is ZoneEventType.ENTRY:
            severity = Severity.HIGH
        elif zone.zone_type is ZoneType.SAFE and zone_event.event_type is ZoneEventType.EXIT:
            severity = Severity.MEDIUM
        else:
            severity = Severity.LOW
        return RiskEvent(
            user_id=zone.user_id,
            source_type=SourceType.ZONE,
            severity=severity,
            score=_SEVERITY_SCORE[severity],
            created_at=zone_event.timestamp,
            metadata={
                "zone_id": zone.zone_id,
                "zone_type": zone.zone_type.value,
                "event_type": zone_event.event_type.value,
                "zone_event_id": zone_event.zone_event_id,
                "duration_seconds": zone_event.duration_seconds,
                "actions": list(raw.actions),
            },
        )

    def _from_forecast(self, raw: RiskForecast) -> RiskEvent:
        self._check_timestamp(raw.issued_at, "issued_at")
        return RiskEvent(
            user_id=raw.user_id,
            source_type=SourceType.PREDICTION,
            severity=raw.risk_level,
            score=raw.risk_score,
            confidence=raw.confidence,
            created_at=raw.issued_at,
            metadata={
                "origin": "forecast",
                "reasoning": raw.reasoning,
                "forecast_for": raw.forecast_for.isoformat() if raw.forecast_for else None,
            },
        )
