"""
Notification Scheduler and Rate Limiter.

Every outbound message passes through ``RateLimiter.admit`` before it is
stored.  The limiter keeps, per recipient, the send slots it has admitted in
the last 24 hours.  The policy row of the new message's priority sets the
thresholds; every slot charged to the recipient counts against them:

* daily cap reached -> ``REJECTED``
* last admitted send closer than ``min_spacing`` -> ``DEFERRED`` until the
  spacing has elapsed
* otherwise ``SEND_NOW``, and the slot is recorded

A notification marked ``requires_immediate`` bypasses both the cap and the
spacing, is never charged against later messages, and is logged and
audited.  A slot whose notification is cancelled before delivery is
released.  Check-and-record happens in one atomic
``Repository.update_rate_limit`` call so two concurrent submissions can
never both take the last slot.

Deferred and future-dated notifications are stored with ``needs_admission``
and admitted again when they come due.  Tier-check notifications are the
escalation timers: they are never rate-limited and never reach the gateway.
"""

from __future__ import annotations

import enum
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import structlog
from pydantic import BaseModel, Field

from wellguard.audit import AuditEventType, AuditLog
from wellguard.config import SafetyPolicy
from wellguard.exceptions import DeliveryError, WellGuardError
from wellguard.gateway import GuardedGateway
from wellguard.models import (
    DeliveryMethod,
    DestinationType,
    EmergencyContact,
    NotificationKind,
    NotificationStatus,
    Priority,
    RateLimitSlot,
    RateLimitState,
    ScheduledNotification,
    Tier,
    UserProfile,
)
from wellguard.repository import Repository, UserLockRegistry

logger = structlog.get_logger(__name__)

_WINDOW = timedelta(hours=24)

TierCheckHandler = Callable[[ScheduledNotification, datetime], None]


# ---------------------------------------------------------------------------
# Delivery method selection
# ---------------------------------------------------------------------------

def select_delivery_method(priority: Priority, profile: Optional[UserProfile]) -> DeliveryMethod:
    """Pick the channel for a message to the monitored user or their buddy."""
    has_phone = bool(profile and profile.phone)
    if priority in (Priority.EMERGENCY, Priority.CRITICAL) and has_phone:
        return DeliveryMethod.SMS
    if priority is Priority.HIGH and has_phone and profile.prefers_sms:
        return DeliveryMethod.SMS
    return DeliveryMethod.PUSH


def select_contact_method(contact: EmergencyContact) -> DeliveryMethod:
    """Emergency contacts have no app; SMS when possible, else e-mail."""
    return DeliveryMethod.SMS if contact.phone else DeliveryMethod.EMAIL


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------

class AdmissionOutcome(str, enum.Enum):
    SEND_NOW = "SEND_NOW"
    DEFERRED = "DEFERRED"
    REJECTED = "REJECTED"


class AdmissionDecision(BaseModel):
    outcome: AdmissionOutcome
    deferred_until: Optional[datetime] = None
    reason: str = ""
    bypassed_cap: bool = Field(
        default=False,
        description="True when an urgent notification was admitted over the daily cap.",
    )


class RateLimiter:
    """Per-recipient admission control against the priority policy table."""

    def __init__(
        self,
        repository: Repository,
        policy: SafetyPolicy,
        audit_log: Optional[AuditLog] = None,
    ) -> None:
        self._repo = repository
        self._policy = policy
        self._audit_log = audit_log

    def admit(
        self,
        user_id: str,
        priority: Priority,
        requires_immediate: bool = False,
        now: Optional[datetime] = None,
        notification_id: str = "",
        on_behalf_of: Optional[str] = None,
    ) -> AdmissionDecision:
        """Decide whether one more message may go to ``user_id`` now.

        Args:
            user_id: The recipient whose fatigue budget is charged.
            priority: Selects the policy row.
            requires_immediate: Bypass cap and spacing.
            now: Decision time.  Defaults to the current UTC time.
            notification_id: Ties the slot to its notification for ``release``
                and the audit trail.
            on_behalf_of: Monitored user the message concerns; the audit
                entry is filed under this user.  Defaults to ``user_id``.

        Returns:
            An ``AdmissionDecision``.  A ``SEND_NOW`` decision has already
            reserved its slot.
        """
        now = now or datetime.now(timezone.utc)
        row = self._policy.for_priority(priority)

        def decide(state: RateLimitState) -> AdmissionDecision:
            state.slots = [s for s in state.slots if now - s.timestamp < _WINDOW]
            charged = [s for s in state.slots if not s.requires_immediate]
            over_cap = len(charged) >= row.max_per_day

            if requires_immediate:
                state.slots.append(
                    RateLimitSlot(
                        timestamp=now,
                        priority=priority,
                        notification_id=notification_id,
                        requires_immediate=True,
                        bypassed_cap=over_cap,
                    )
                )
                return AdmissionDecision(
                    outcome=AdmissionOutcome.SEND_NOW,
                    reason="requires_immediate",
                    bypassed_cap=over_cap,
                )

            if over_cap:
                return AdmissionDecision(
                    outcome=AdmissionOutcome.REJECTED,
                    reason=f"{len(charged)} sent today; {priority.value} allows {row.max_per_day}",
                )

            if charged:
                last = max(s.timestamp for s in charged)
                ready_at = last + row.min_spacing
                if now < ready_at:
                    return AdmissionDecision(
                        outcome=AdmissionOutcome.DEFERRED,
                        deferred_until=ready_at,
                        reason=f"min spacing of {row.min_spacing_minutes} min for {priority.value}",
                    )

            state.slots.append(
                RateLimitSlot(timestamp=now, priority=priority, notification_id=notification_id)
            )
            return AdmissionDecision(outcome=AdmissionOutcome.SEND_NOW)

        decision = self._repo.update_rate_limit(user_id, decide)
        self._record(on_behalf_of or user_id, user_id, priority, decision, now, notification_id)
        return decision

    def release(self, user_id: str, notification_ids: set[str]) -> int:
        """Return the slots held by notifications that will never be sent."""
        if not notification_ids:
            return 0

        def drop(state: RateLimitState) -> int:
            before = len(state.slots)
            state.slots = [s for s in state.slots if s.notification_id not in notification_ids]
            return before - len(state.slots)

        released = self._repo.update_rate_limit(user_id, drop)
        if released:
            logger.debug("rate_limit_released", user_id=user_id, count=released)
        return released

    def _record(
        self,
        user_id: str,
        recipient: str,
        priority: Priority,
        decision: AdmissionDecision,
        now: datetime,
        notification_id: str,
    ) -> None:
        if decision.bypassed_cap:
            logger.warning(
                "rate_limit_bypassed",
                user_id=user_id,
                priority=priority.value,
                notification_id=notification_id,
            )
            event_type = AuditEventType.RATE_LIMIT_BYPASSED
        elif decision.outcome is AdmissionOutcome.SEND_NOW:
            logger.debug("notification_admitted", user_id=user_id, priority=priority.value)
            event_type = AuditEventType.NOTIFICATION_ADMITTED
        elif decision.outcome is AdmissionOutcome.DEFERRED:
            logger.info(
                "notification_deferred",
                user_id=user_id,
                priority=priority.value,
                deferred_until=decision.deferred_until.isoformat(),
            )
            event_type = AuditEventType.NOTIFICATION_DEFERRED
        else:
            logger.info(
                "notification_rejected",
                user_id=user_id,
                priority=priority.value,
                reason=decision.reason,
            )
            event_type = AuditEventType.NOTIFICATION_REJECTED

        if self._audit_log is not None:
            self._audit_log.record(
                event_type,
                user_id=user_id,
                target_entity=notification_id,
                actor="rate_limiter",
                timestamp=now,
                recipient=recipient,
                priority=priority.value,
                outcome=decision.outcome.value,
                reason=decision.reason,
            )


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class DeliveryStats(BaseModel):
    """What one ``deliver_due`` pass did for one user."""

    sent: int = 0
    failed: int = 0
    deferred: int = 0
    cancelled: int = 0
    tier_checks: int = 0
    errors: list[str] = Field(default_factory=list)

    def merge(self, other: "DeliveryStats") -> None:
        self.sent += other.sent
        self.failed += other.failed
        self.deferred += other.deferred
        self.cancelled += other.cancelled
        self.tier_checks += other.tier_checks
        self.errors.extend(other.errors)


class NotificationScheduler:
    """Stores, admits and delivers ``ScheduledNotification``s."""

    def __init__(
        self,
        repository: Repository,
        rate_limiter: RateLimiter,
        gateway: GuardedGateway,
        policy: SafetyPolicy,
        audit_log: Optional[AuditLog] = None,
        locks: Optional[UserLockRegistry] = None,
    ) -> None:
        self._repo = repository
        self._limiter = rate_limiter
        self._gateway = gateway
        self._policy = policy
        self._audit_log = audit_log
        self._locks = locks or UserLockRegistry()

    # -- submission --

    def submit(
        self,
        user_id: str,
        content: str,
        priority: Priority,
        delivery_method: DeliveryMethod,
        destination: Optional[str] = None,
        destination_type: DestinationType = DestinationType.USER,
        case_id: Optional[str] = None,
        requires_immediate: bool = False,
        scheduled_for: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Optional[ScheduledNotification]:
        """Admit and store one outbound message.

        Args:
            user_id: The monitored user the message concerns.
            content: Message text.
            priority: Rate-limit row.
            delivery_method: Channel for the gateway.
            destination: Recipient id; defaults to ``user_id``.
            destination_type: User, buddy, or emergency contact.
            case_id: Owning escalation case, if any.
            requires_immediate: Bypass cap and spacing.
            scheduled_for: Future delivery time.  Admission is postponed
                until the notification comes due.
            now: Submission time.

        Returns:
            The stored notification, or None when admission was rejected.
        """
        now = now or datetime.now(timezone.utc)
        destination = destination or user_id
        notification = ScheduledNotification(
            user_id=user_id,
            case_id=case_id,
            destination=destination,
            destination_type=destination_type,
            delivery_method=delivery_method,
            content=content,
            created_at=now,
            scheduled_for=now,
            priority=priority,
            requires_immediate=requires_immediate,
        )

        if scheduled_for is not None and scheduled_for > now:
            notification.scheduled_for = scheduled_for
            notification.needs_admission = True
            self._repo.save_notification(notification)
            logger.info(
                "notification_scheduled",
                user_id=user_id,
                notification_id=notification.notification_id,
                scheduled_for=scheduled_for.isoformat(),
            )
            return notification

        decision = self._limiter.admit(
            destination,
            priority,
            requires_immediate=requires_immediate,
            now=now,
            notification_id=notification.notification_id,
            on_behalf_of=user_id,
        )
        if decision.outcome is AdmissionOutcome.REJECTED:
            return None
        if decision.outcome is AdmissionOutcome.DEFERRED:
            notification.scheduled_for = decision.deferred_until
            notification.needs_admission = True
        self._repo.save_notification(notification)
        return notification

    def schedule_tier_check(
        self,
        user_id: str,
        case_id: str,
        expected_tier: Tier,
        due_at: datetime,
        priority: Priority,
        now: Optional[datetime] = None,
    ) -> ScheduledNotification:
        """Store an escalation timer.  Never rate-limited."""
        now = now or datetime.now(timezone.utc)
        check = ScheduledNotification(
            user_id=user_id,
            case_id=case_id,
            kind=NotificationKind.TIER_CHECK,
            destination=user_id,
            destination_type=DestinationType.USER,
            delivery_method=DeliveryMethod.SYSTEM,
            content=f"tier check: expect {expected_tier.value}",
            created_at=now,
            scheduled_for=max(due_at, now),
            priority=priority,
            expected_tier=expected_tier,
        )
        self._repo.save_notification(check)
        return check

    def pending_tier_checks(self, user_id: str, case_id: str) -> list[ScheduledNotification]:
        return [
            n
            for n in self._repo.list_notifications(
                user_id, status=NotificationStatus.PENDING, case_id=case_id
            )
            if n.kind is NotificationKind.TIER_CHECK
        ]

    def cancel_for_case(
        self, user_id: str, case_id: str, now: Optional[datetime] = None
    ) -> int:
        """Cancel every pending notification of ``case_id``.  Idempotent."""
        now = now or datetime.now(timezone.utc)
        cancelled = 0
        held: dict[str, set[str]] = defaultdict(set)
        for n in self._repo.list_notifications(
            user_id, status=NotificationStatus.PENDING, case_id=case_id
        ):
            n.status = NotificationStatus.CANCELLED
            n.last_error = "case closed"
            self._repo.save_notification(n)
            cancelled += 1
            if n.kind is NotificationKind.MESSAGE and not n.needs_admission:
                held[n.destination].add(n.notification_id)
        for destination, ids in held.items():
            self._limiter.release(destination, ids)
        if cancelled:
            logger.info("notifications_cancelled", user_id=user_id, case_id=case_id, count=cancelled)
            if self._audit_log is not None:
                self._audit_log.record(
                    AuditEventType.NOTIFICATIONS_CANCELLED,
                    user_id=user_id,
                    target_entity=case_id,
                    actor="scheduler",
                    timestamp=now,
                    count=cancelled,
                )
        return cancelled

    # -- delivery --

    def deliver_due(
        self,
        user_id: str,
        now: Optional[datetime] = None,
        tier_check_handler: Optional[TierCheckHandler] = None,
    ) -> DeliveryStats:
        """Process every notification of ``user_id`` that is due at ``now``.

        Tier checks run first, so messages they create with a due time of
        ``now`` go out in the same pass.  Failed messages inside the retry
        grace window and under the attempt limit are retried.
        """
        now = now or datetime.now(timezone.utc)
        stats = DeliveryStats()
        with self._locks.lock_for(user_id):
            for check in self._due(user_id, now, NotificationKind.TIER_CHECK):
                self._run_tier_check(check, now, tier_check_handler, stats)
            for message in self._due(user_id, now, NotificationKind.MESSAGE):
                self._deliver_message(message, now, stats)
        return stats

    def _due(
        self, user_id: str, now: datetime, kind: NotificationKind
    ) -> list[ScheduledNotification]:
        delivery = self._policy.delivery
        due = []
        for n in self._repo.list_notifications(user_id):
            if n.kind is not kind or n.scheduled_for > now:
                continue
            if n.status is NotificationStatus.PENDING:
                due.append(n)
            elif (
                n.status is NotificationStatus.FAILED
                and n.attempts < delivery.max_delivery_attempts
                and now - n.scheduled_for <= delivery.delivery_retry_grace
            ):
                due.append(n)
        return due

    def _run_tier_check(
        self,
        check: ScheduledNotification,
        now: datetime,
        handler: Optional[TierCheckHandler],
        stats: DeliveryStats,
    ) -> None:
        if handler is None:
            return
        try:
            handler(check, now)
        except WellGuardError as exc:
            # Left pending; the next sweep retries it.
            logger.error(
                "tier_check_failed",
                user_id=check.user_id,
                case_id=check.case_id,
                notification_id=check.notification_id,
                error=exc.message,
            )
            stats.errors.append(f"tier_check {check.notification_id}: {exc.message}")
            return
        # The handler may have cancelled this check along with the case.
        current = self._repo.get_notification(check.notification_id)
        if current is not None and current.status is NotificationStatus.PENDING:
            current.status = NotificationStatus.SENT
            current.sent_at = now
            current.attempts += 1
            self._repo.save_notification(current)
        stats.tier_checks += 1

    def _deliver_message(
        self, n: ScheduledNotification, now: datetime, stats: DeliveryStats
    ) -> None:
        if n.needs_admission:
            decision = self._limiter.admit(
                n.destination,
                n.priority,
                requires_immediate=n.requires_immediate,
                now=now,
                notification_id=n.notification_id,
                on_behalf_of=n.user_id,
            )
            if decision.outcome is AdmissionOutcome.REJECTED:
                n.status = NotificationStatus.CANCELLED
                n.last_error = decision.reason
                self._repo.save_notification(n)
                stats.cancelled += 1
                return
            if decision.outcome is AdmissionOutcome.DEFERRED:
                n.scheduled_for = decision.deferred_until
                self._repo.save_notification(n)
                stats.deferred += 1
                return
            n.needs_admission = False

        n.attempts += 1
        try:
            self._gateway.deliver(n.destination, n.delivery_method, n.content)
        except DeliveryError as exc:
            n.status = NotificationStatus.FAILED
            n.last_error = exc.message
            self._repo.save_notification(n)
            stats.failed += 1
            logger.warning(
                "notification_delivery_failed",
                user_id=n.user_id,
                notification_id=n.notification_id,
                attempts=n.attempts,
                error=exc.message,
            )
            self._audit(AuditEventType.NOTIFICATION_FAILED, n, now, error=exc.message)
            return

        n.status = NotificationStatus.SENT
        n.sent_at = now
        n.last_error = ""
        self._repo.save_notification(n)
        stats.sent += 1
        logger.info(
            "notification_sent",
            user_id=n.user_id,
            notification_id=n.notification_id,
            channel=n.delivery_method.value,
            priority=n.priority.value,
        )
        self._audit(AuditEventType.NOTIFICATION_SENT, n, now)

    def _audit(
        self, event_type: AuditEventType, n: ScheduledNotification, now: datetime, **extra
    ) -> None:
        if self._audit_log is None:
            return
        self._audit_log.record(
            event_type,
            user_id=n.user_id,
            target_entity=n.notification_id,
            actor="scheduler",
            timestamp=now,
            case_id=n.case_id,
            destination_type=n.destination_type.value,
            channel=n.delivery_method.value,
            priority=n.priority.value,
            attempts=n.attempts,
            **extra,
        )
