"""
Cross-System Pattern Detector.

Looks across a user's recent risk events for two patterns that no single
input channel can see:

* **multi-system stress** -- at least 3 distinct source types and at least
  5 events in the window.  Emits a high-severity ``pattern`` event.
* **recurring sequence** -- the same run of 3 source types occurs twice
  without overlapping.  Emits a medium-severity ``pattern`` event.

Detection is a pure function of the event list.  Derived events get a
``uuid5`` id over the user, the rule and the contributing event ids, and take
the newest contributing event's timestamp, so running the detector twice on
the same log yields identical events.  The detector reads the log only; the
orchestrator stores and routes what it returns.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from wellguard.config import SafetyPolicy
from wellguard.models import SEVERITY_ORDER, RiskEvent, Severity, SourceType
from wellguard.repository import Repository

_NAMESPACE = uuid.UUID("6c0f3c52-6f1e-4a53-9a38-5b0f0d7c2e11")

MULTI_SYSTEM_STRESS = "multi_system_stress"
RECURRING_SEQUENCE = "recurring_sequence"

_MIN_SOURCES = 3
_MIN_EVENTS = 5
_RUN_LENGTH = 3


def _derived_event(
    user_id: str,
    rule: str,
    contributing: list[RiskEvent],
    severity: Severity,
    score: float,
    confidence: float,
    extra: dict,
) -> RiskEvent:
    ids = [e.event_id for e in contributing]
    event_id = uuid.uuid5(_NAMESPACE, "|".join([user_id, rule, *ids]))
    return RiskEvent(
        event_id=str(event_id),
        user_id=user_id,
        source_type=SourceType.PATTERN,
        severity=severity,
        score=score,
        confidence=confidence,
        created_at=max(e.created_at for e in contributing),
        metadata={"rule": rule, "contributing_event_ids": ids, **extra},
    )


def find_recurring_run(sources: list[SourceType], length: int = _RUN_LENGTH) -> Optional[tuple[int, int]]:
    """Return ``(i, j)`` for the first pair of equal, non-overlapping runs."""
    n = len(sources)
    for i in range(n - length + 1):
        run = sources[i:i + length]
        for j in range(i + length, n - length + 1):
            if sources[j:j + length] == run:
                return (i, j)
    return None


def detect_patterns(
    user_id: str,
    events: list[RiskEvent],
    covered: Optional[dict[str, set[str]]] = None,
) -> list[RiskEvent]:
    """Apply both rules to ``events``.

    Args:
        user_id: Owner of the events.
        events: Candidate events.  Pattern events are ignored; the rest are
            ordered by ``created_at`` then ``event_id`` before matching.
        covered: Per rule, ids already explained by an earlier derived event
            of that rule.  Each rule only sees the events it has not covered.

    Returns:
        Zero, one or two derived ``pattern`` events.
    """
    covered = covered or {}
    ordered = sorted(
        (e for e in events if e.source_type is not SourceType.PATTERN),
        key=lambda e: (e.created_at, e.event_id),
    )
    derived: list[RiskEvent] = []

    fresh = _uncovered(ordered, covered, MULTI_SYSTEM_STRESS)
    sources = {e.source_type for e in fresh}
    if len(sources) >= _MIN_SOURCES and len(fresh) >= _MIN_EVENTS:
        derived.append(
            _derived_event(
                user_id,
                MULTI_SYSTEM_STRESS,
                fresh,
                Severity.HIGH,
                score=0.7,
                confidence=0.8,
                extra={"source_types": sorted(s.value for s in sources)},
            )
        )

    fresh = _uncovered(ordered, covered, RECURRING_SEQUENCE)
    sequence = [e.source_type for e in fresh]
    match = find_recurring_run(sequence)
    if match is not None:
        i, j = match
        contributing = fresh[i:i + _RUN_LENGTH] + fresh[j:j + _RUN_LENGTH]
        derived.append(
            _derived_event(
                user_id,
                RECURRING_SEQUENCE,
                contributing,
                Severity.MEDIUM,
                score=0.5,
                confidence=0.7,
                extra={"sequence": [s.value for s in sequence[i:i + _RUN_LENGTH]]},
            )
        )

    return derived


def _uncovered(ordered: list[RiskEvent], covered: dict[str, set[str]], rule: str) -> list[RiskEvent]:
    seen = covered.get(rule, set())
    return [e for e in ordered if e.event_id not in seen]


def covered_event_ids(events: list[RiskEvent]) -> dict[str, set[str]]:
    """Map each rule to the ids its stored pattern events already used."""
    covered: dict[str, set[str]] = {}
    for e in events:
        if e.source_type is SourceType.PATTERN:
            rule = e.metadata.get("rule", "")
            covered.setdefault(rule, set()).update(e.metadata.get("contributing_event_ids", []))
    return covered


class PatternDetector:
    """Runs ``detect_patterns`` over a user's recent window.

    Events below ``policy.pattern_min_severity`` (medium by default) are left
    out.  This narrows the rules, which are stated over every event in the
    window: routine low readings would otherwise satisfy both rules for any
    active user.

    Derived events already in the log mark their contributing events as
    covered, so an ongoing condition yields one derived event, not one per
    new reading.  A rule fires again only on evidence of its own.
    """

    def __init__(self, repository: Repository, policy: SafetyPolicy) -> None:
        self._repo = repository
        self._policy = policy
        self._min_rank = SEVERITY_ORDER[policy.pattern_min_severity]

    def detect(self, user_id: str, now: Optional[datetime] = None) -> list[RiskEvent]:
        now = now or datetime.now(timezone.utc)
        since = now - timedelta(hours=self._policy.pattern_window_hours)
        window = self._repo.list_events(user_id, since=since, until=now)
        events = [e for e in window if SEVERITY_ORDER[e.severity] >= self._min_rank]
        return detect_patterns(user_id, events, covered_event_ids(window))
