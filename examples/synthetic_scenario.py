"""
Synthetic Scenario: One Day of Safety Signals
=============================================

Walks a synthetic user through the WellGuard pipeline with a fixed clock,
an in-memory repository, a static scorer and a recording gateway.  No real
person, device, or transport is involved.

Steps demonstrated:
  1. Load the safety policy from YAML
  2. Register a user, a buddy and two emergency contacts
  3. Routine signals (mood, sensor readings) that stay below thresholds
  4. A critical heart-rate reading opens a case at Tier 2
  5. Sweeps advance the unanswered case to contact alerts
  6. The user replies "I'm safe" and the case resolves
  7. Trigger-zone entry and exit with the post-exit check-in
  8. Case report, wellness score, health check and audit export

Usage:
    python examples/synthetic_scenario.py
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

from wellguard.config import SafetyPolicy, load_policy_from_yaml
from wellguard.gateway import RecordingGateway
from wellguard.logging_config import setup_logging
from wellguard.models import (
    CheckInOutcome,
    EmergencyContact,
    LocationUpdate,
    MoodEntry,
    ScorerResult,
    SensorMetric,
    SensorReading,
    Severity,
    UserProfile,
    ZoneType,
)
from wellguard.orchestrator import SafetyOrchestrator
from wellguard.repository import InMemoryRepository
from wellguard.scorer import StaticRiskScorer

START = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def _banner(text: str) -> None:
    print(f"\n{'=' * 60}")
    print(f"  {text}")
    print(f"{'=' * 60}\n")


def main() -> None:
    _banner("WellGuard Synthetic Scenario")
    print("All data in this walkthrough is synthetic.\n")

    # ------------------------------------------------------------------
    # Step 1: Policy
    # ------------------------------------------------------------------
    _banner("Step 1: Load Safety Policy")

    sample_yaml = Path(__file__).parent / "safety_policy.yaml"
    if sample_yaml.exists():
        policy = load_policy_from_yaml(sample_yaml)
        print(f"Loaded policy from {sample_yaml.name}")
    else:
        policy = SafetyPolicy()
        print("Using built-in default policy")
    setup_logging(policy.logging)
    print(f"  retention_days: {policy.retention_days}")
    print(f"  tier1 timeout: {policy.escalation.tier1_timeout}")

    # ------------------------------------------------------------------
    # Step 2: People
    # ------------------------------------------------------------------
    _banner("Step 2: Register User, Buddy and Contacts")

    gateway = RecordingGateway()
    scorer = StaticRiskScorer(
        ScorerResult(risk_level=Severity.LOW, risk_score=0.15, confidence=0.85, reasoning="stable mood")
    )
    orch = SafetyOrchestrator(InMemoryRepository(), scorer, gateway, policy=policy)

    orch.register_user(UserProfile(user_id="buddy-1", display_name="Synthetic Buddy"))
    orch.register_user(
        UserProfile(
            user_id="user-1",
            display_name="Synthetic User A",
            phone="+15550100",
            buddy_user_id="buddy-1",
        )
    )
    for priority, name in ((1, "Contact One"), (2, "Contact Two"), (3, "Contact Three")):
        orch.add_emergency_contact(
            EmergencyContact(contact_id=f"c{priority}", user_id="user-1", name=name,
                             phone=f"+1555020{priority}", priority=priority)
        )
    print("Registered user-1 with buddy-1 and three contacts (top two will be alerted).")

    # ------------------------------------------------------------------
    # Step 3: Routine signals
    # ------------------------------------------------------------------
    _banner("Step 3: Routine Signals")

    now = START
    mood = orch.ingest_mood(MoodEntry(user_id="user-1", mood_score=4, recorded_at=now), now=now)
    steps = orch.ingest_sensor(
        SensorReading(user_id="user-1", metric=SensorMetric.ACTIVITY, value=55, unit="%", recorded_at=now),
        now=now,
    )
    print(f"Mood event: {mood.severity.value} (score {mood.score})")
    print(f"Activity event: {steps.severity.value}")

    # ------------------------------------------------------------------
    # Step 4: Critical reading
    # ------------------------------------------------------------------
    _banner("Step 4: Critical Heart Rate")

    now = START + timedelta(hours=2)
    hr = orch.ingest_sensor(
        SensorReading(user_id="user-1", metric=SensorMetric.HEART_RATE, value=145, unit="bpm", recorded_at=now),
        now=now,
    )
    case = orch.repository.get_open_case("user-1")
    print(f"Sensor event: {hr.severity.value}, requires_immediate={hr.requires_immediate}")
    print(f"Case {case.case_id} opened at {case.current_tier.value}")

    report = orch.run_sweep(now)
    print(f"Sweep: sent={report.notifications_sent}, tier_checks={report.tier_checks_processed}")

    # ------------------------------------------------------------------
    # Step 5: No answer
    # ------------------------------------------------------------------
    _banner("Step 5: Unanswered Case Advances")

    now += timedelta(minutes=16)
    orch.run_sweep(now)
    case = orch.repository.get_case(case.case_id)
    print(f"After timeout: {case.current_tier.value}")
    print(f"Contacts messaged: {[m['destination'] for m in gateway.sent if m['destination'].startswith('c')]}")

    # ------------------------------------------------------------------
    # Step 6: Reply
    # ------------------------------------------------------------------
    _banner("Step 6: User Replies")

    now += timedelta(minutes=10)
    orch.ingest_checkin(CheckInOutcome(user_id="user-1", response="I'm safe", occurred_at=now), now=now)
    case = orch.repository.get_case(case.case_id)
    print(f"Case is now {case.current_tier.value}: {case.resolution_note}")

    # ------------------------------------------------------------------
    # Step 7: Trigger zone
    # ------------------------------------------------------------------
    _banner("Step 7: Trigger Zone Entry and Exit")

    zone = orch.geofence.create_zone(
        "user-1", "Old Neighbourhood", 40.7128, -74.0060, 150, ZoneType.TRIGGER
    )
    now += timedelta(hours=3)
    entered = orch.ingest_location(
        LocationUpdate(user_id="user-1", latitude=40.7129, longitude=-74.0061, timestamp=now), now=now
    )
    print(f"Entry actions: {entered[0].actions}")
    now += timedelta(minutes=4)
    exited = orch.ingest_location(
        LocationUpdate(user_id="user-1", latitude=40.7300, longitude=-74.0300, timestamp=now), now=now
    )
    print(f"Exit actions: {exited[0].actions}")
    follow_ups = [
        n for n in orch.repository.list_notifications("user-1")
        if n.scheduled_for == now + timedelta(minutes=policy.post_exit_check_delay_minutes)
    ]
    print(f"Post-exit check-in scheduled for: {[n.scheduled_for.isoformat() for n in follow_ups]}")
    print(f"Zone {zone.name}: entries={orch.repository.get_zone(zone.zone_id).entry_count}")

    # ------------------------------------------------------------------
    # Step 8: Reports
    # ------------------------------------------------------------------
    _banner("Step 8: Case Report, Wellness and Audit")

    print(json.dumps(orch.case_report(case.case_id, now=now).to_dict(), indent=2))
    score = orch.wellness.compute("user-1", now)
    print(f"\nWellness score: {score.value} {score.components}")
    print(f"Health: {orch.health_check(now).status}")

    export = orch.audit_log.export_for_review("user-1")
    print(json.dumps(export["export_metadata"], indent=2))

    _banner("Scenario Complete")
    print("All data was synthetic.")


if __name__ == "__main__":
    main()
