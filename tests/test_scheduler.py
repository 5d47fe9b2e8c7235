"""
Tests for wellguard.scheduler -- Rate Limiter and Notification Scheduler.

Covers: daily cap and spacing across priorities, per-recipient budgets,
the urgent bypass, atomic admission under concurrency, submission outcomes,
delivery with retry, re-admission of deferred messages, cancellation, and
delivery method selection.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

from wellguard.audit import AuditEventType, AuditLog
from wellguard.config import DEFAULT_POLICY, PriorityPolicy, SafetyPolicy
from wellguard.gateway import GuardedGateway, RecordingGateway
from wellguard.models import (
    DeliveryMethod,
    EmergencyContact,
    NotificationStatus,
    Priority,
    Tier,
    UserProfile,
)
from wellguard.repository import InMemoryRepository
from wellguard.scheduler import (
    AdmissionOutcome,
    NotificationScheduler,
    RateLimiter,
    select_contact_method,
    select_delivery_method,
)

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def _make_limiter(policy: SafetyPolicy = DEFAULT_POLICY):
    repo = InMemoryRepository()
    audit_log = AuditLog()
    return RateLimiter(repo, policy, audit_log), repo, audit_log


def _make_scheduler(gateway: RecordingGateway | None = None):
    repo = InMemoryRepository()
    audit_log = AuditLog()
    gateway = gateway or RecordingGateway()
    limiter = RateLimiter(repo, DEFAULT_POLICY, audit_log)
    scheduler = NotificationScheduler(
        repo, limiter, GuardedGateway(gateway), DEFAULT_POLICY, audit_log
    )
    return scheduler, repo, gateway, audit_log


def _submit(scheduler: NotificationScheduler, priority: Priority = Priority.HIGH, **kwargs):
    kwargs.setdefault("now", NOW)
    return scheduler.submit(
        user_id="user_a",
        content="Checking in on you.",
        priority=priority,
        delivery_method=DeliveryMethod.PUSH,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# 1. Daily cap and spacing
# ---------------------------------------------------------------------------

class TestRateLimiter:
    def test_eleventh_high_notification_rejected(self):
        limiter, _, audit_log = _make_limiter()
        for i in range(10):
            decision = limiter.admit("user_a", Priority.HIGH, now=NOW + timedelta(minutes=31 * i))
            assert decision.outcome is AdmissionOutcome.SEND_NOW

        decision = limiter.admit("user_a", Priority.HIGH, now=NOW + timedelta(minutes=31 * 10))
        assert decision.outcome is AdmissionOutcome.REJECTED
        assert audit_log.query("user_a", event_type=AuditEventType.NOTIFICATION_REJECTED)

    def test_spacing_defers_until_ready(self):
        limiter, _, _ = _make_limiter()
        limiter.admit("user_a", Priority.HIGH, now=NOW)
        decision = limiter.admit("user_a", Priority.HIGH, now=NOW + timedelta(minutes=10))
        assert decision.outcome is AdmissionOutcome.DEFERRED
        assert decision.deferred_until == NOW + timedelta(minutes=30)

    def test_spacing_satisfied_exactly(self):
        limiter, _, _ = _make_limiter()
        limiter.admit("user_a", Priority.HIGH, now=NOW)
        decision = limiter.admit("user_a", Priority.HIGH, now=NOW + timedelta(minutes=30))
        assert decision.outcome is AdmissionOutcome.SEND_NOW

    def test_admitted_sends_respect_spacing(self):
        limiter, repo, _ = _make_limiter()
        t = NOW
        for _ in range(8):
            decision = limiter.admit("user_a", Priority.MEDIUM, now=t)
            if decision.outcome is AdmissionOutcome.DEFERRED:
                t = decision.deferred_until
            else:
                t += timedelta(minutes=7)
        stamps = [s.timestamp for s in repo.get_rate_limit("user_a").slots]
        gaps = [b - a for a, b in zip(stamps, stamps[1:])]
        assert all(g >= timedelta(minutes=60) for g in gaps)

    def test_cap_counts_every_priority(self):
        limiter, _, _ = _make_limiter()
        for i in range(3):
            limiter.admit("user_a", Priority.HIGH, now=NOW + timedelta(minutes=31 * i))
        decision = limiter.admit("user_a", Priority.LOW, now=NOW + timedelta(hours=5))
        assert decision.outcome is AdmissionOutcome.REJECTED
        assert limiter.admit(
            "user_a", Priority.HIGH, now=NOW + timedelta(hours=5)
        ).outcome is AdmissionOutcome.SEND_NOW

    def test_spacing_measured_from_any_priority(self):
        limiter, _, _ = _make_limiter()
        limiter.admit("user_a", Priority.HIGH, now=NOW)
        decision = limiter.admit("user_a", Priority.MEDIUM, now=NOW + timedelta(minutes=10))
        assert decision.outcome is AdmissionOutcome.DEFERRED
        assert decision.deferred_until == NOW + timedelta(minutes=60)

    def test_immediate_sends_not_charged(self):
        limiter, _, _ = _make_limiter()
        for i in range(3):
            limiter.admit(
                "user_a", Priority.EMERGENCY, requires_immediate=True, now=NOW + timedelta(minutes=i)
            )
        decision = limiter.admit("user_a", Priority.LOW, now=NOW + timedelta(minutes=5))
        assert decision.outcome is AdmissionOutcome.SEND_NOW

    def test_recipients_have_separate_budgets(self):
        limiter, _, _ = _make_limiter()
        limiter.admit("user_a", Priority.HIGH, now=NOW)
        assert limiter.admit("contact_1", Priority.HIGH, now=NOW).outcome is AdmissionOutcome.SEND_NOW

    def test_window_rolls_after_24_hours(self):
        limiter, _, _ = _make_limiter()
        for i in range(3):
            limiter.admit("user_a", Priority.LOW, now=NOW + timedelta(hours=2 * i))
        assert limiter.admit(
            "user_a", Priority.LOW, now=NOW + timedelta(hours=6)
        ).outcome is AdmissionOutcome.REJECTED
        assert limiter.admit(
            "user_a", Priority.LOW, now=NOW + timedelta(hours=24, minutes=1)
        ).outcome is AdmissionOutcome.SEND_NOW


# ---------------------------------------------------------------------------
# 2. Urgent bypass
# ---------------------------------------------------------------------------

class TestUrgentBypass:
    def test_immediate_bypasses_cap_and_is_audited(self):
        limiter, _, audit_log = _make_limiter()
        for i in range(10):
            limiter.admit("user_a", Priority.HIGH, now=NOW + timedelta(minutes=31 * i))

        decision = limiter.admit(
            "user_a", Priority.HIGH, requires_immediate=True, now=NOW + timedelta(minutes=311)
        )
        assert decision.outcome is AdmissionOutcome.SEND_NOW
        assert decision.bypassed_cap is True
        assert audit_log.query("user_a", event_type=AuditEventType.RATE_LIMIT_BYPASSED)

    def test_immediate_ignores_spacing(self):
        limiter, _, _ = _make_limiter()
        limiter.admit("user_a", Priority.EMERGENCY, now=NOW)
        decision = limiter.admit("user_a", Priority.EMERGENCY, requires_immediate=True, now=NOW)
        assert decision.outcome is AdmissionOutcome.SEND_NOW
        assert decision.bypassed_cap is False


# ---------------------------------------------------------------------------
# 3. Atomic admission
# ---------------------------------------------------------------------------

class TestConcurrentAdmission:
    def test_cap_holds_under_concurrency(self):
        table = dict(DEFAULT_POLICY.priority_table)
        table[Priority.LOW] = PriorityPolicy(
            min_spacing_minutes=0, max_per_day=3, escalation_timeout_minutes=240
        )
        limiter, repo, _ = _make_limiter(SafetyPolicy(priority_table=table))
        outcomes: list[AdmissionOutcome] = []
        lock = threading.Lock()

        def worker() -> None:
            decision = limiter.admit("user_a", Priority.LOW, now=NOW)
            with lock:
                outcomes.append(decision.outcome)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count(AdmissionOutcome.SEND_NOW) == 3
        assert outcomes.count(AdmissionOutcome.REJECTED) == 17
        assert len(repo.get_rate_limit("user_a").slots) == 3


# ---------------------------------------------------------------------------
# 4. Submission
# ---------------------------------------------------------------------------

class TestSubmit:
    def test_admitted_notification_stored(self):
        scheduler, repo, _, _ = _make_scheduler()
        n = _submit(scheduler)
        stored = repo.get_notification(n.notification_id)
        assert stored.status is NotificationStatus.PENDING
        assert stored.destination == "user_a"
        assert stored.needs_admission is False

    def test_deferred_notification_rescheduled(self):
        scheduler, _, _, _ = _make_scheduler()
        _submit(scheduler)
        deferred = _submit(scheduler, now=NOW + timedelta(minutes=5))
        assert deferred.scheduled_for == NOW + timedelta(minutes=30)
        assert deferred.needs_admission is True

    def test_rejected_notification_not_stored(self):
        scheduler, repo, _, _ = _make_scheduler()
        for i in range(3):
            _submit(scheduler, Priority.LOW, now=NOW + timedelta(hours=2 * i))
        assert _submit(scheduler, Priority.LOW, now=NOW + timedelta(hours=7)) is None
        assert len(repo.list_notifications("user_a")) == 3

    def test_future_notification_defers_admission(self):
        scheduler, repo, _, _ = _make_scheduler()
        n = _submit(scheduler, scheduled_for=NOW + timedelta(minutes=30))
        assert n.scheduled_for == NOW + timedelta(minutes=30)
        assert n.needs_admission is True
        assert repo.get_rate_limit("user_a").slots == []


# ---------------------------------------------------------------------------
# 5. Delivery
# ---------------------------------------------------------------------------

class TestDelivery:
    def test_due_message_sent(self):
        scheduler, repo, gateway, audit_log = _make_scheduler()
        n = _submit(scheduler)
        stats = scheduler.deliver_due("user_a", NOW)
        assert stats.sent == 1
        assert len(gateway.sent_to("user_a")) == 1
        stored = repo.get_notification(n.notification_id)
        assert stored.status is NotificationStatus.SENT
        assert stored.sent_at == NOW
        assert audit_log.query("user_a", event_type=AuditEventType.NOTIFICATION_SENT)

    def test_future_message_not_sent_early(self):
        scheduler, _, gateway, _ = _make_scheduler()
        _submit(scheduler, scheduled_for=NOW + timedelta(minutes=30))
        assert scheduler.deliver_due("user_a", NOW).sent == 0
        assert scheduler.deliver_due("user_a", NOW + timedelta(minutes=30)).sent == 1
        assert len(gateway.sent) == 1

    def test_failed_delivery_retried(self):
        gateway = RecordingGateway(fail_destinations={"user_a"})
        scheduler, repo, gateway, audit_log = _make_scheduler(gateway)
        n = _submit(scheduler)

        stats = scheduler.deliver_due("user_a", NOW)
        assert stats.failed == 1
        assert repo.get_notification(n.notification_id).status is NotificationStatus.FAILED
        assert audit_log.query("user_a", event_type=AuditEventType.NOTIFICATION_FAILED)

        gateway.fail_destinations.clear()
        stats = scheduler.deliver_due("user_a", NOW + timedelta(minutes=5))
        stored = repo.get_notification(n.notification_id)
        assert stats.sent == 1
        assert stored.status is NotificationStatus.SENT
        assert stored.attempts == 2

    def test_gateway_exception_recorded_as_failure(self):
        gateway = RecordingGateway(raise_destinations={"user_a"})
        scheduler, repo, _, _ = _make_scheduler(gateway)
        n = _submit(scheduler)
        scheduler.deliver_due("user_a", NOW)
        stored = repo.get_notification(n.notification_id)
        assert stored.status is NotificationStatus.FAILED
        assert "ConnectionError" in stored.last_error

    def test_retries_stop_at_max_attempts(self):
        gateway = RecordingGateway(fail_destinations={"user_a"})
        scheduler, repo, _, _ = _make_scheduler(gateway)
        n = _submit(scheduler)
        for minute in range(5):
            scheduler.deliver_due("user_a", NOW + timedelta(minutes=minute))
        assert repo.get_notification(n.notification_id).attempts == 3

    def test_retries_stop_after_grace_window(self):
        gateway = RecordingGateway(fail_destinations={"user_a"})
        scheduler, repo, _, _ = _make_scheduler(gateway)
        n = _submit(scheduler)
        scheduler.deliver_due("user_a", NOW)
        stats = scheduler.deliver_due("user_a", NOW + timedelta(minutes=31))
        assert stats.failed == 0
        assert repo.get_notification(n.notification_id).attempts == 1

    def test_deferred_message_readmitted_when_due(self):
        scheduler, repo, gateway, _ = _make_scheduler()
        _submit(scheduler)
        deferred = _submit(scheduler, now=NOW + timedelta(minutes=5))
        scheduler.deliver_due("user_a", NOW + timedelta(minutes=5))
        assert len(gateway.sent) == 1

        stats = scheduler.deliver_due("user_a", deferred.scheduled_for)
        assert stats.sent == 1
        assert repo.get_notification(deferred.notification_id).needs_admission is False

    def test_rejected_at_delivery_is_cancelled(self):
        scheduler, repo, _, _ = _make_scheduler()
        future = _submit(scheduler, Priority.LOW, scheduled_for=NOW + timedelta(hours=8))
        for i in range(3):
            _submit(scheduler, Priority.LOW, now=NOW + timedelta(hours=2 * i))

        stats = scheduler.deliver_due("user_a", NOW + timedelta(hours=8))
        assert stats.cancelled == 1
        assert repo.get_notification(future.notification_id).status is NotificationStatus.CANCELLED

    def test_tier_check_handler_invoked(self):
        scheduler, repo, gateway, _ = _make_scheduler()
        check = scheduler.schedule_tier_check(
            "user_a", "case_1", expected_tier=Tier.TIER1_GENTLE, due_at=NOW, priority=Priority.HIGH, now=NOW
        )
        seen = []
        stats = scheduler.deliver_due("user_a", NOW, tier_check_handler=lambda c, t: seen.append(c))
        assert [c.notification_id for c in seen] == [check.notification_id]
        assert stats.tier_checks == 1
        assert gateway.sent == []
        assert repo.get_notification(check.notification_id).status is NotificationStatus.SENT


# ---------------------------------------------------------------------------
# 6. Cancellation
# ---------------------------------------------------------------------------

class TestCancellation:
    def test_cancel_for_case_is_idempotent(self):
        scheduler, repo, _, audit_log = _make_scheduler()
        _submit(scheduler, case_id="case_1")
        _submit(scheduler, Priority.LOW, case_id="case_1")
        _submit(scheduler, Priority.MEDIUM, case_id="case_2")

        assert scheduler.cancel_for_case("user_a", "case_1", now=NOW) == 2
        assert scheduler.cancel_for_case("user_a", "case_1", now=NOW) == 0
        assert len(repo.list_notifications("user_a", status=NotificationStatus.PENDING)) == 1
        assert len(audit_log.query("user_a", event_type=AuditEventType.NOTIFICATIONS_CANCELLED)) == 1

    def test_cancel_releases_rate_limit_slot(self):
        scheduler, repo, gateway, _ = _make_scheduler()
        _submit(scheduler, case_id="case_1")
        scheduler.cancel_for_case("user_a", "case_1", now=NOW)
        assert gateway.sent_to("user_a") == []
        assert repo.get_rate_limit("user_a").slots == []

        n = _submit(scheduler, now=NOW + timedelta(minutes=5))
        assert n.scheduled_for == NOW + timedelta(minutes=5)
        assert n.needs_admission is False

    def test_cancel_keeps_slots_of_sent_messages(self):
        scheduler, repo, _, _ = _make_scheduler()
        _submit(scheduler, case_id="case_1")
        scheduler.deliver_due("user_a", NOW)
        _submit(scheduler, Priority.LOW, case_id="case_1", now=NOW + timedelta(minutes=1))

        scheduler.cancel_for_case("user_a", "case_1", now=NOW + timedelta(minutes=2))
        assert len(repo.get_rate_limit("user_a").slots) == 1


# ---------------------------------------------------------------------------
# 7. Delivery method selection
# ---------------------------------------------------------------------------

class TestDeliveryMethod:
    def test_critical_with_phone_uses_sms(self):
        profile = UserProfile(user_id="u", phone="+15550100")
        assert select_delivery_method(Priority.CRITICAL, profile) is DeliveryMethod.SMS
        assert select_delivery_method(Priority.EMERGENCY, profile) is DeliveryMethod.SMS

    def test_high_uses_sms_only_when_preferred(self):
        assert select_delivery_method(
            Priority.HIGH, UserProfile(user_id="u", phone="+15550100")
        ) is DeliveryMethod.PUSH
        assert select_delivery_method(
            Priority.HIGH, UserProfile(user_id="u", phone="+15550100", prefers_sms=True)
        ) is DeliveryMethod.SMS

    def test_no_profile_uses_push(self):
        assert select_delivery_method(Priority.EMERGENCY, None) is DeliveryMethod.PUSH

    def test_contact_without_phone_uses_email(self):
        contact = EmergencyContact(user_id="u", name="C", email="c@example.org")
        assert select_contact_method(contact) is DeliveryMethod.EMAIL
