"""
Tests for wellguard.escalation -- Escalation State Machine.

Covers: case opening and the critical bypass, non-actionable events, merging
into the open case, user responses, tier-check advancement to expiry, stale
tier checks, contact alerts at Tier 3, version-conflict retry, repository
failure leaving a tier check pending, and timer recovery.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from wellguard.audit import AuditEventType, AuditLog
from wellguard.config import DEFAULT_POLICY, SafetyPolicy
from wellguard.escalation import (
    EscalationStateMachine,
    InvalidTransitionError,
    case_priority,
)
from wellguard.exceptions import RepositoryError, StateConflictError
from wellguard.gateway import GuardedGateway, RecordingGateway
from wellguard.models import (
    TIER_ORDER,
    DestinationType,
    EmergencyContact,
    NotificationKind,
    NotificationStatus,
    Priority,
    ResponseKind,
    RiskEvent,
    Severity,
    SourceType,
    Tier,
    UserProfile,
)
from wellguard.repository import InMemoryRepository, UserLockRegistry
from wellguard.scheduler import NotificationScheduler, RateLimiter

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

class FlakyRepository(InMemoryRepository):
    """Raises on ``save_case`` on demand."""

    def __init__(self) -> None:
        super().__init__()
        self.conflicts_remaining = 0
        self.fail_saves = False

    def save_case(self, case, expected_version):
        if self.fail_saves:
            raise RepositoryError("case store unavailable")
        if self.conflicts_remaining:
            self.conflicts_remaining -= 1
            raise StateConflictError(case.case_id, expected_version, expected_version + 1)
        return super().save_case(case, expected_version)


def _make_machine(repo: InMemoryRepository | None = None, policy: SafetyPolicy = DEFAULT_POLICY):
    repo = repo if repo is not None else InMemoryRepository()
    audit_log = AuditLog()
    locks = UserLockRegistry()
    gateway = RecordingGateway()
    limiter = RateLimiter(repo, policy, audit_log)
    scheduler = NotificationScheduler(
        repo, limiter, GuardedGateway(gateway), policy, audit_log, locks
    )
    machine = EscalationStateMachine(repo, scheduler, policy, audit_log, locks)
    return machine, scheduler, repo, audit_log


def _make_event(
    severity: Severity = Severity.HIGH,
    requires_immediate: bool = False,
    user_id: str = "user_a",
    created_at: datetime = NOW,
) -> RiskEvent:
    return RiskEvent(
        user_id=user_id,
        source_type=SourceType.SENSOR,
        severity=severity,
        score=0.7,
        created_at=created_at,
        requires_immediate=requires_immediate,
    )


def _pending_check(scheduler: NotificationScheduler, case):
    checks = scheduler.pending_tier_checks(case.user_id, case.case_id)
    assert len(checks) == 1
    return checks[0]


def _fire(machine, scheduler, repo, case):
    """Run a delivery pass at the due time of the case's tier check."""
    check = _pending_check(scheduler, case)
    scheduler.deliver_due(
        case.user_id, check.scheduled_for, tier_check_handler=machine.handle_tier_check
    )
    return repo.get_case(case.case_id), check.scheduled_for


def _add_contacts(repo: InMemoryRepository, user_id: str = "user_a", count: int = 3) -> None:
    for i in range(1, count + 1):
        repo.save_contact(
            EmergencyContact(
                contact_id=f"contact_{i}",
                user_id=user_id,
                name=f"Contact {i}",
                phone=f"+1555020{i}",
                priority=i,
            )
        )


# ---------------------------------------------------------------------------
# 1. Opening a case
# ---------------------------------------------------------------------------

class TestOpenCase:
    def test_high_event_opens_tier1(self):
        machine, scheduler, repo, audit_log = _make_machine()
        case = machine.handle_risk_event(_make_event(), now=NOW)

        assert case.current_tier is Tier.TIER1_GENTLE
        assert [r.tier for r in case.tier_history] == [Tier.IDLE, Tier.TIER1_GENTLE]
        check = _pending_check(scheduler, case)
        assert check.expected_tier is Tier.TIER1_GENTLE
        assert check.scheduled_for == NOW + timedelta(minutes=240)
        messages = [
            n for n in repo.list_notifications("user_a", case_id=case.case_id)
            if n.kind is NotificationKind.MESSAGE
        ]
        assert len(messages) == 1
        assert audit_log.query("user_a", event_type=AuditEventType.CASE_OPENED)

    def test_critical_immediate_bypasses_to_tier2(self):
        machine, scheduler, _, _ = _make_machine()
        case = machine.handle_risk_event(
            _make_event(Severity.CRITICAL, requires_immediate=True), now=NOW
        )
        assert case.current_tier is Tier.TIER2_URGENT
        assert [r.tier for r in case.tier_history] == [Tier.IDLE, Tier.TIER2_URGENT]
        check = _pending_check(scheduler, case)
        assert check.scheduled_for == NOW + timedelta(minutes=15)

    def test_critical_without_immediate_starts_gently(self):
        machine, _, _, _ = _make_machine()
        case = machine.handle_risk_event(_make_event(Severity.CRITICAL), now=NOW)
        assert case.current_tier is Tier.TIER1_GENTLE

    @pytest.mark.parametrize("severity", [Severity.LOW, Severity.MEDIUM])
    def test_non_actionable_events_ignored(self, severity):
        machine, _, repo, _ = _make_machine()
        assert machine.handle_risk_event(_make_event(severity), now=NOW) is None
        assert repo.list_cases("user_a") == []

    def test_case_priority_mapping(self):
        assert case_priority(Severity.CRITICAL, True) is Priority.EMERGENCY
        assert case_priority(Severity.CRITICAL, False) is Priority.CRITICAL
        assert case_priority(Severity.HIGH, False) is Priority.HIGH


# ---------------------------------------------------------------------------
# 2. Merging
# ---------------------------------------------------------------------------

class TestMerge:
    def test_second_event_merges_into_open_case(self):
        machine, _, repo, _ = _make_machine()
        first = machine.handle_risk_event(_make_event(), now=NOW)
        second_event = _make_event(created_at=NOW + timedelta(minutes=5))
        merged = machine.handle_risk_event(second_event, now=NOW + timedelta(minutes=5))

        assert merged.case_id == first.case_id
        assert merged.merged_event_ids == [second_event.event_id]
        assert merged.current_tier is Tier.TIER1_GENTLE
        assert len(repo.list_cases("user_a")) == 1

    def test_merge_raises_severity(self):
        machine, _, _, _ = _make_machine()
        machine.handle_risk_event(_make_event(Severity.HIGH), now=NOW)
        merged = machine.handle_risk_event(_make_event(Severity.CRITICAL), now=NOW)
        assert merged.severity is Severity.CRITICAL

    def test_critical_immediate_merge_advances_tier1(self):
        machine, scheduler, _, _ = _make_machine()
        machine.handle_risk_event(_make_event(), now=NOW)
        later = NOW + timedelta(minutes=10)
        merged = machine.handle_risk_event(
            _make_event(Severity.CRITICAL, requires_immediate=True, created_at=later), now=later
        )
        assert merged.current_tier is Tier.TIER2_URGENT
        checks = scheduler.pending_tier_checks("user_a", merged.case_id)
        assert {c.expected_tier for c in checks} == {Tier.TIER1_GENTLE, Tier.TIER2_URGENT}

    def test_same_event_twice_is_idempotent(self):
        machine, _, _, _ = _make_machine()
        event = _make_event()
        first = machine.handle_risk_event(event, now=NOW)
        again = machine.handle_risk_event(event, now=NOW)
        assert again.version == first.version
        assert again.merged_event_ids == []

    def test_users_have_independent_cases(self):
        machine, _, repo, _ = _make_machine()
        a = machine.handle_risk_event(_make_event(user_id="user_a"), now=NOW)
        b = machine.handle_risk_event(_make_event(user_id="user_b"), now=NOW)
        assert a.case_id != b.case_id
        assert repo.get_open_case("user_b").case_id == b.case_id


# ---------------------------------------------------------------------------
# 3. User responses
# ---------------------------------------------------------------------------

class TestUserResponse:
    def test_response_resolves_and_cancels_pending(self):
        machine, _, repo, audit_log = _make_machine()
        case = machine.handle_risk_event(_make_event(), now=NOW)
        later = NOW + timedelta(minutes=20)

        resolved = machine.handle_user_response("user_a", ResponseKind.SAFE, now=later)

        assert resolved.current_tier is Tier.RESOLVED
        assert resolved.closed_at == later
        assert repo.get_open_case("user_a") is None
        assert repo.list_notifications(
            "user_a", status=NotificationStatus.PENDING, case_id=case.case_id
        ) == []
        assert audit_log.query("user_a", event_type=AuditEventType.CASE_RESOLVED)

    def test_help_response_does_not_resolve(self):
        machine, _, repo, _ = _make_machine()
        machine.handle_risk_event(_make_event(), now=NOW)
        assert machine.handle_user_response("user_a", ResponseKind.HELP, now=NOW) is None
        assert repo.get_open_case("user_a") is not None

    def test_response_without_open_case(self):
        machine, _, _, _ = _make_machine()
        assert machine.handle_user_response("user_a", ResponseKind.SAFE, now=NOW) is None

    def test_new_case_after_resolution(self):
        machine, _, repo, _ = _make_machine()
        first = machine.handle_risk_event(_make_event(), now=NOW)
        machine.handle_user_response("user_a", ResponseKind.SAFE, now=NOW)
        second = machine.handle_risk_event(_make_event(), now=NOW + timedelta(hours=1))
        assert second.case_id != first.case_id
        assert len(repo.list_cases("user_a")) == 2


# ---------------------------------------------------------------------------
# 4. Tier checks
# ---------------------------------------------------------------------------

class TestTierChecks:
    def test_full_advancement_to_expired(self):
        repo = InMemoryRepository()
        repo.save_user(UserProfile(user_id="user_a", display_name="A", buddy_user_id="buddy_a"))
        _add_contacts(repo)
        machine, scheduler, repo, audit_log = _make_machine(repo)

        case = machine.handle_risk_event(_make_event(), now=NOW)
        seen = [case.current_tier]
        for _ in range(3):
            case, t = _fire(machine, scheduler, repo, case)
            seen.append(case.current_tier)

        assert seen == [
            Tier.TIER1_GENTLE,
            Tier.TIER2_URGENT,
            Tier.TIER3_CONTACT_ALERT,
            Tier.EXPIRED,
        ]
        orders = [TIER_ORDER[r.tier] for r in case.tier_history]
        assert orders == sorted(orders)
        assert case.closed_at == t
        assert repo.list_notifications(
            "user_a", status=NotificationStatus.PENDING, case_id=case.case_id
        ) == []
        assert audit_log.query("user_a", event_type=AuditEventType.CASE_EXPIRED)

    def test_tier2_notifies_buddy(self):
        repo = InMemoryRepository()
        repo.save_user(UserProfile(user_id="user_a", buddy_user_id="buddy_a"))
        machine, _, repo, _ = _make_machine(repo)
        case = machine.handle_risk_event(
            _make_event(Severity.CRITICAL, requires_immediate=True), now=NOW
        )
        buddy = [
            n for n in repo.list_notifications("user_a", case_id=case.case_id)
            if n.destination_type is DestinationType.BUDDY
        ]
        assert [n.destination for n in buddy] == ["buddy_a"]

    def test_tier3_alerts_top_two_contacts(self):
        repo = InMemoryRepository()
        _add_contacts(repo)
        machine, scheduler, repo, audit_log = _make_machine(repo)
        case = machine.handle_risk_event(
            _make_event(Severity.CRITICAL, requires_immediate=True), now=NOW
        )
        case, t = _fire(machine, scheduler, repo, case)

        assert case.current_tier is Tier.TIER3_CONTACT_ALERT
        alerts = [
            n for n in repo.list_notifications("user_a", case_id=case.case_id)
            if n.destination_type is DestinationType.CONTACT
        ]
        assert sorted(n.destination for n in alerts) == ["contact_1", "contact_2"]
        assert all(n.requires_immediate for n in alerts)
        assert audit_log.query("user_a", event_type=AuditEventType.CONTACTS_ALERTED)
        assert _pending_check(scheduler, case).scheduled_for == t + timedelta(minutes=60)

    def test_stale_check_after_resolution_is_noop(self):
        machine, scheduler, repo, _ = _make_machine()
        case = machine.handle_risk_event(_make_event(), now=NOW)
        check = _pending_check(scheduler, case)
        machine.handle_user_response("user_a", ResponseKind.SAFE, now=NOW)

        assert machine.handle_tier_check(check, now=check.scheduled_for) is None
        assert repo.get_case(case.case_id).current_tier is Tier.RESOLVED

    def test_stale_check_for_earlier_tier_is_noop(self):
        machine, scheduler, repo, _ = _make_machine()
        case = machine.handle_risk_event(_make_event(), now=NOW)
        tier1_check = _pending_check(scheduler, case)
        machine.handle_tier_check(tier1_check, now=tier1_check.scheduled_for)

        before = repo.get_case(case.case_id)
        assert machine.handle_tier_check(tier1_check, now=tier1_check.scheduled_for) is None
        assert repo.get_case(case.case_id).version == before.version

    def test_timeout_for_terminal_tier_raises(self):
        machine, _, _, _ = _make_machine()
        case = machine.handle_risk_event(_make_event(), now=NOW)
        with pytest.raises(InvalidTransitionError):
            machine.timeout_for(case, Tier.RESOLVED)


# ---------------------------------------------------------------------------
# 5. Failures
# ---------------------------------------------------------------------------

class TestFailures:
    def test_conflict_is_retried(self):
        repo = FlakyRepository()
        repo.conflicts_remaining = 1
        machine, _, repo, _ = _make_machine(repo)
        case = machine.handle_risk_event(_make_event(), now=NOW)
        assert case.current_tier is Tier.TIER1_GENTLE
        assert repo.conflicts_remaining == 0

    def test_conflict_retries_are_bounded(self):
        repo = FlakyRepository()
        repo.conflicts_remaining = 10
        machine, _, _, _ = _make_machine(repo)
        with pytest.raises(StateConflictError):
            machine.handle_risk_event(_make_event(), now=NOW)
        assert repo.conflicts_remaining == 10 - DEFAULT_POLICY.escalation.max_conflict_retries

    def test_repository_failure_leaves_tier_check_pending(self):
        repo = FlakyRepository()
        machine, scheduler, repo, _ = _make_machine(repo)
        case = machine.handle_risk_event(_make_event(), now=NOW)
        check = _pending_check(scheduler, case)

        repo.fail_saves = True
        stats = scheduler.deliver_due(
            "user_a", check.scheduled_for, tier_check_handler=machine.handle_tier_check
        )
        assert len(stats.errors) == 1
        assert repo.get_notification(check.notification_id).status is NotificationStatus.PENDING
        assert repo.get_case(case.case_id).current_tier is Tier.TIER1_GENTLE

        repo.fail_saves = False
        stats = scheduler.deliver_due(
            "user_a", check.scheduled_for, tier_check_handler=machine.handle_tier_check
        )
        assert stats.errors == []
        assert repo.get_case(case.case_id).current_tier is Tier.TIER2_URGENT


# ---------------------------------------------------------------------------
# 6. Timer recovery
# ---------------------------------------------------------------------------

class TestTimerRecovery:
    def test_missing_tier_check_recreated(self):
        machine, scheduler, repo, _ = _make_machine()
        case = machine.handle_risk_event(_make_event(), now=NOW)
        lost = _pending_check(scheduler, case)
        lost.status = NotificationStatus.CANCELLED
        repo.save_notification(lost)

        assert machine.recover_timers("user_a", now=NOW + timedelta(minutes=5)) is True
        recovered = _pending_check(scheduler, case)
        assert recovered.expected_tier is Tier.TIER1_GENTLE
        assert recovered.scheduled_for == NOW + timedelta(minutes=240)

    def test_no_recovery_when_timer_present(self):
        machine, _, _, _ = _make_machine()
        machine.handle_risk_event(_make_event(), now=NOW)
        assert machine.recover_timers("user_a", now=NOW) is False

    def test_no_recovery_without_open_case(self):
        machine, _, _, _ = _make_machine()
        assert machine.recover_timers("user_a", now=NOW) is False
