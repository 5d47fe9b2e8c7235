"""
Tests for wellguard.patterns -- Cross-System Pattern Detector.

Covers: multi-system stress, recurring sequences, determinism of derived
events, exclusion of pattern events from input, covered evidence, and the
detector's severity and time window filters.
"""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

from wellguard.config import DEFAULT_POLICY, SafetyPolicy
from wellguard.models import RiskEvent, Severity, SourceType
from wellguard.patterns import (
    MULTI_SYSTEM_STRESS,
    RECURRING_SEQUENCE,
    PatternDetector,
    covered_event_ids,
    detect_patterns,
    find_recurring_run,
)
from wellguard.repository import InMemoryRepository

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def _events(
    sources: list[SourceType],
    severity: Severity = Severity.MEDIUM,
    start: datetime = NOW - timedelta(hours=5),
) -> list[RiskEvent]:
    return [
        RiskEvent(
            event_id=f"e{i:02d}",
            user_id="user_a",
            source_type=source,
            severity=severity,
            score=0.4,
            created_at=start + timedelta(minutes=10 * i),
        )
        for i, source in enumerate(sources)
    ]


_MULTI = [
    SourceType.SENSOR,
    SourceType.MOOD,
    SourceType.BUDDY,
    SourceType.SENSOR,
    SourceType.SENSOR,
]

_RECURRING = [
    SourceType.MOOD,
    SourceType.SENSOR,
    SourceType.MOOD,
    SourceType.MOOD,
    SourceType.SENSOR,
    SourceType.MOOD,
]


# ---------------------------------------------------------------------------
# 1. Multi-system stress
# ---------------------------------------------------------------------------

class TestMultiSystemStress:
    def test_three_sources_five_events(self):
        events = _events(_MULTI)
        [derived] = detect_patterns("user_a", events)
        assert derived.source_type is SourceType.PATTERN
        assert derived.severity is Severity.HIGH
        assert derived.confidence == 0.8
        assert derived.metadata["rule"] == MULTI_SYSTEM_STRESS
        assert derived.metadata["contributing_event_ids"] == [e.event_id for e in events]
        assert derived.created_at == events[-1].created_at

    def test_four_events_not_enough(self):
        assert detect_patterns("user_a", _events(_MULTI[:4])) == []

    def test_two_sources_not_enough(self):
        events = _events([SourceType.SENSOR, SourceType.MOOD] * 3)
        assert all(d.metadata["rule"] != MULTI_SYSTEM_STRESS for d in detect_patterns("user_a", events))


# ---------------------------------------------------------------------------
# 2. Recurring sequence
# ---------------------------------------------------------------------------

class TestRecurringSequence:
    def test_find_recurring_run(self):
        assert find_recurring_run(_RECURRING) == (0, 3)
        assert find_recurring_run(_RECURRING[:5]) is None

    def test_overlapping_runs_do_not_count(self):
        assert find_recurring_run([SourceType.MOOD] * 5) is None
        assert find_recurring_run([SourceType.MOOD] * 6) == (0, 3)

    def test_recurring_event(self):
        events = _events(_RECURRING)
        [derived] = detect_patterns("user_a", events)
        assert derived.severity is Severity.MEDIUM
        assert derived.confidence == 0.7
        assert derived.metadata["rule"] == RECURRING_SEQUENCE
        assert derived.metadata["sequence"] == ["mood", "sensor", "mood"]
        assert derived.metadata["contributing_event_ids"] == [e.event_id for e in events]


# ---------------------------------------------------------------------------
# 3. Determinism
# ---------------------------------------------------------------------------

class TestDeterminism:
    def test_same_log_same_events(self):
        events = _events(_MULTI)
        assert detect_patterns("user_a", events) == detect_patterns("user_a", events)

    def test_input_order_irrelevant(self):
        events = _events(_MULTI + [SourceType.MOOD])
        shuffled = list(events)
        random.Random(7).shuffle(shuffled)
        assert detect_patterns("user_a", shuffled) == detect_patterns("user_a", events)

    def test_ids_differ_per_user(self):
        events = _events(_MULTI)
        [a] = detect_patterns("user_a", events)
        [b] = detect_patterns("user_b", events)
        assert a.event_id != b.event_id

    def test_pattern_events_ignored(self):
        events = _events(_MULTI[:4])
        derived = detect_patterns("user_a", _events(_MULTI))
        assert detect_patterns("user_a", events + derived) == []


# ---------------------------------------------------------------------------
# 4. Detector filters
# ---------------------------------------------------------------------------

class TestPatternDetector:
    def _store(self, events: list[RiskEvent]) -> InMemoryRepository:
        repo = InMemoryRepository()
        for e in events:
            repo.append_event(e)
        return repo

    def test_low_severity_events_ignored(self):
        repo = self._store(_events(_MULTI, severity=Severity.LOW))
        assert PatternDetector(repo, DEFAULT_POLICY).detect("user_a", NOW) == []

    def test_events_outside_window_ignored(self):
        repo = self._store(_events(_MULTI, start=NOW - timedelta(hours=30)))
        assert PatternDetector(repo, DEFAULT_POLICY).detect("user_a", NOW) == []

    def test_detects_within_window(self):
        repo = self._store(_events(_MULTI))
        [derived] = PatternDetector(repo, DEFAULT_POLICY).detect("user_a", NOW)
        assert derived.metadata["rule"] == MULTI_SYSTEM_STRESS

    def test_min_severity_from_policy(self):
        repo = self._store(_events(_MULTI, severity=Severity.LOW))
        policy = SafetyPolicy(pattern_min_severity=Severity.LOW)
        [derived] = PatternDetector(repo, policy).detect("user_a", NOW)
        assert derived.metadata["rule"] == MULTI_SYSTEM_STRESS


# ---------------------------------------------------------------------------
# 5. Covered evidence
# ---------------------------------------------------------------------------

def _more(sources: list[SourceType], prefix: str, start: datetime) -> list[RiskEvent]:
    return [
        e.model_copy(update={"event_id": f"{prefix}{i:02d}"})
        for i, e in enumerate(_events(sources, start=start))
    ]


class TestCoveredEvidence:
    def test_covered_events_do_not_fire_again(self):
        events = _events(_MULTI)
        [derived] = detect_patterns("user_a", events)
        extra = _more([SourceType.BUDDY], "x", NOW - timedelta(minutes=5))

        assert detect_patterns("user_a", events + extra, covered_event_ids([derived])) == []

    def test_ongoing_condition_yields_one_event(self):
        repo = InMemoryRepository()
        for e in _events(_MULTI):
            repo.append_event(e)
        detector = PatternDetector(repo, DEFAULT_POLICY)
        [derived] = detector.detect("user_a", NOW)
        repo.append_event(derived)

        for e in _more([SourceType.BUDDY], "x", NOW - timedelta(minutes=5)):
            repo.append_event(e)
        assert detector.detect("user_a", NOW) == []

    def test_fresh_evidence_fires_again(self):
        repo = InMemoryRepository()
        for e in _events(_MULTI, start=NOW - timedelta(hours=10)):
            repo.append_event(e)
        detector = PatternDetector(repo, DEFAULT_POLICY)
        [first] = detector.detect("user_a", NOW)
        repo.append_event(first)

        for e in _more(_MULTI, "y", NOW - timedelta(hours=2)):
            repo.append_event(e)
        [second] = [
            d for d in detector.detect("user_a", NOW) if d.metadata["rule"] == MULTI_SYSTEM_STRESS
        ]
        assert second.event_id != first.event_id
        assert all(i.startswith("y") for i in second.metadata["contributing_event_ids"])

    def test_covered_ids_by_rule(self):
        events = _events(_RECURRING)
        [derived] = detect_patterns("user_a", events)
        assert covered_event_ids(events + [derived]) == {
            RECURRING_SEQUENCE: {e.event_id for e in events}
        }
