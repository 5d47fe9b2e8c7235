"""
Escalation State Machine.

This module owns the lifecycle of ``EscalationCase``.  A high or critical
``RiskEvent`` opens a case (or merges into the user's open one); unanswered
check-ins advance it through a bounded tier sequence; a user response
resolves it.

**State machine:**

    Idle -> Tier1_Gentle -> Tier2_Urgent -> Tier3_ContactAlert -> Expired

with two shortcuts:

    Idle -> Tier2_Urgent        critical event that requires an immediate response
    Tier1/2/3 -> Resolved       the user answered

On entering a tier the machine queues that tier's outbound messages and a
tier-check notification due when the tier's timeout elapses.  The sweep
delivers that tier check back to ``handle_tier_check``; a tier check whose
case has since moved on (or closed) is stale and ignored.

**Failure semantics:**

* Every transition is computed on a working copy and only takes effect once
  ``Repository.save_case`` accepts it.  Side effects (messages, timers,
  cancellations) are issued after the save.
* A concurrent update surfaces as ``StateConflictError``; the machine re-reads
  the case and retries a bounded number of times.
* A ``RepositoryError`` propagates.  For a tier check that means the check
  stays pending and the next sweep retries it.

Per-user decisions are serialized by ``UserLockRegistry``.

DISCLAIMER: Tiers describe notification urgency.  Reaching Tier 3 alerts a
user's chosen contacts; it does not dispatch emergency services.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, TypeVar

import structlog

from wellguard.audit import AuditEventType, AuditLog
from wellguard.config import SafetyPolicy
from wellguard.contacts import alert_emergency_contacts, notify_buddy
from wellguard.exceptions import StateConflictError, WellGuardError
from wellguard.models import (
    TIER_ORDER,
    EscalationCase,
    Priority,
    ResponseKind,
    RiskEvent,
    ScheduledNotification,
    Severity,
    Tier,
    TierRecord,
    max_severity,
)
from wellguard.repository import Repository, UserLockRegistry
from wellguard.scheduler import NotificationScheduler, select_delivery_method

logger = structlog.get_logger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Valid tier transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[Tier, set[Tier]] = {
    Tier.IDLE: {Tier.TIER1_GENTLE, Tier.TIER2_URGENT},
    Tier.TIER1_GENTLE: {Tier.TIER2_URGENT, Tier.RESOLVED},
    Tier.TIER2_URGENT: {Tier.TIER3_CONTACT_ALERT, Tier.RESOLVED},
    Tier.TIER3_CONTACT_ALERT: {Tier.EXPIRED, Tier.RESOLVED},
    Tier.RESOLVED: set(),  # terminal
    Tier.EXPIRED: set(),  # terminal
}

_NEXT_TIER: dict[Tier, Tier] = {
    Tier.TIER1_GENTLE: Tier.TIER2_URGENT,
    Tier.TIER2_URGENT: Tier.TIER3_CONTACT_ALERT,
    Tier.TIER3_CONTACT_ALERT: Tier.EXPIRED,
}

_USER_MESSAGES: dict[Tier, str] = {
    Tier.TIER1_GENTLE: (
        "Checking in on you. Reply 1 if you're safe, or 2 if you'd like support."
    ),
    Tier.TIER2_URGENT: (
        "We haven't heard from you and want to make sure you're okay. "
        "Please reply 1 if you're safe, or 2 if you need help."
    ),
}


class InvalidTransitionError(WellGuardError):
    """Raised when a tier transition is not in the transition table."""


def case_priority(severity: Severity, requires_immediate: bool) -> Priority:
    """Notification priority for a case with the given severity."""
    if severity is Severity.CRITICAL:
        return Priority.EMERGENCY if requires_immediate else Priority.CRITICAL
    if severity is Severity.HIGH:
        return Priority.HIGH
    return Priority(severity.value)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class EscalationStateMachine:
    """Opens, merges, advances and closes escalation cases.

    Args:
        repository: Case storage with versioned saves.
        scheduler: Receives user messages, contact alerts and tier checks.
        policy: Timeouts and contact limits.
        audit_log: Optional audit trail.
        locks: Shared per-user lock registry.
    """

    def __init__(
        self,
        repository: Repository,
        scheduler: NotificationScheduler,
        policy: SafetyPolicy,
        audit_log: Optional[AuditLog] = None,
        locks: Optional[UserLockRegistry] = None,
    ) -> None:
        self._repo = repository
        self._scheduler = scheduler
        self._policy = policy
        self._audit_log = audit_log
        self._locks = locks or UserLockRegistry()

    # -- helpers --

    def _validate_transition(self, case: EscalationCase, target: Tier) -> None:
        allowed = _VALID_TRANSITIONS.get(case.current_tier, set())
        if target not in allowed:
            raise InvalidTransitionError(
                f"Cannot transition from {case.current_tier.value} to {target.value}. "
                f"Allowed transitions: {sorted(t.value for t in allowed)}",
                details={"case_id": case.case_id},
            )

    def _transition(self, case: EscalationCase, target: Tier, now: datetime, reason: str) -> None:
        self._validate_transition(case, target)
        case.current_tier = target
        case.last_action_at = now
        case.tier_history.append(TierRecord(tier=target, timestamp=now, reason=reason))
        if not case.is_open:
            case.closed_at = now

    def _with_retry(self, user_id: str, operation: Callable[[], T]) -> T:
        attempts = self._policy.escalation.max_conflict_retries
        with self._locks.lock_for(user_id):
            for attempt in range(1, attempts + 1):
                try:
                    return operation()
                except StateConflictError as exc:
                    logger.warning(
                        "case_version_conflict",
                        user_id=user_id,
                        case_id=exc.entity_id,
                        attempt=attempt,
                    )
                    if attempt == attempts:
                        raise
        raise AssertionError("unreachable")

    def _audit(
        self, event_type: AuditEventType, case: EscalationCase, now: datetime, **metadata
    ) -> None:
        if self._audit_log is None:
            return
        self._audit_log.record(
            event_type,
            user_id=case.user_id,
            target_entity=case.case_id,
            actor="escalation",
            timestamp=now,
            tier=case.current_tier.value,
            severity=case.severity.value,
            **metadata,
        )

    def timeout_for(self, case: EscalationCase, tier: Tier) -> timedelta:
        """How long ``case`` may remain at ``tier`` before its tier check fires."""
        if tier is Tier.TIER1_GENTLE:
            return self._policy.escalation.tier1_timeout
        if tier is Tier.TIER2_URGENT:
            priority = case_priority(case.severity, case.requires_immediate)
            return self._policy.for_priority(priority).escalation_timeout
        if tier is Tier.TIER3_CONTACT_ALERT:
            return self._policy.escalation.final_grace_window
        raise InvalidTransitionError(f"Tier {tier.value} has no timeout")

    # -- entering a tier --

    def _on_enter(self, case: EscalationCase, now: datetime) -> None:
        tier = case.current_tier
        priority = case_priority(case.severity, case.requires_immediate)

        if tier in _USER_MESSAGES:
            profile = self._repo.get_user(case.user_id)
            self._scheduler.submit(
                user_id=case.user_id,
                content=_USER_MESSAGES[tier],
                priority=priority,
                delivery_method=select_delivery_method(priority, profile),
                case_id=case.case_id,
                requires_immediate=case.requires_immediate and tier is Tier.TIER2_URGENT,
                now=now,
            )
        if tier is Tier.TIER2_URGENT:
            notify_buddy(case, priority, self._repo, self._scheduler, now)
        if tier is Tier.TIER3_CONTACT_ALERT:
            alert_emergency_contacts(
                case,
                priority=priority,
                reason="tier3",
                repository=self._repo,
                scheduler=self._scheduler,
                audit_log=self._audit_log,
                limit=self._policy.escalation.contacts_to_notify,
                now=now,
            )

        self._scheduler.schedule_tier_check(
            user_id=case.user_id,
            case_id=case.case_id,
            expected_tier=tier,
            due_at=now + self.timeout_for(case, tier),
            priority=priority,
            now=now,
        )

    # -- public operations --

    def handle_risk_event(
        self, event: RiskEvent, now: Optional[datetime] = None
    ) -> Optional[EscalationCase]:
        """Open or merge a case for an actionable event.

        Low and medium events are ignored.  Returns the stored case, or None
        when the event was not actionable.
        """
        if not event.is_actionable:
            return None
        now = now or datetime.now(timezone.utc)
        return self._with_retry(event.user_id, lambda: self._apply_event(event, now))

    def _apply_event(self, event: RiskEvent, now: datetime) -> EscalationCase:
        bypass = event.severity is Severity.CRITICAL and event.requires_immediate
        case = self._repo.get_open_case(event.user_id)

        if case is None:
            case = EscalationCase(
                user_id=event.user_id,
                trigger_event_id=event.event_id,
                severity=event.severity,
                requires_immediate=event.requires_immediate,
                current_tier=Tier.IDLE,
                opened_at=now,
                last_action_at=now,
                tier_history=[TierRecord(tier=Tier.IDLE, timestamp=now, reason="opened")],
            )
            target = Tier.TIER2_URGENT if bypass else Tier.TIER1_GENTLE
            self._transition(case, target, now, reason=f"{event.source_type.value}:{event.severity.value}")
            saved = self._repo.save_case(case, expected_version=0)
            logger.info(
                "case_opened",
                user_id=saved.user_id,
                case_id=saved.case_id,
                tier=saved.current_tier.value,
                trigger_event_id=event.event_id,
            )
            self._audit(AuditEventType.CASE_OPENED, saved, now, trigger_event_id=event.event_id)
            self._on_enter(saved, now)
            return saved

        if event.event_id in case.event_ids:
            return case

        expected = case.version
        case.merged_event_ids.append(event.event_id)
        case.severity = max_severity(case.severity, event.severity)
        case.requires_immediate = case.requires_immediate or event.requires_immediate
        advance = bypass and case.current_tier is Tier.TIER1_GENTLE
        if advance:
            self._transition(case, Tier.TIER2_URGENT, now, reason="merged critical event")
        saved = self._repo.save_case(case, expected_version=expected)

        logger.info(
            "case_merged",
            user_id=saved.user_id,
            case_id=saved.case_id,
            event_id=event.event_id,
            tier=saved.current_tier.value,
        )
        self._audit(AuditEventType.CASE_MERGED, saved, now, event_id=event.event_id)
        if advance:
            self._audit(AuditEventType.CASE_TIER_ADVANCED, saved, now, from_tier=Tier.TIER1_GENTLE.value)
            self._on_enter(saved, now)
        return saved

    def handle_user_response(
        self,
        user_id: str,
        response_kind: ResponseKind,
        now: Optional[datetime] = None,
    ) -> Optional[EscalationCase]:
        """Resolve the user's open case after a qualifying response.

        A ``HELP`` response does not resolve anything; it arrives separately
        as a critical risk event.  Returns the resolved case, or None.
        """
        if response_kind is ResponseKind.HELP:
            return None
        now = now or datetime.now(timezone.utc)

        def resolve() -> Optional[EscalationCase]:
            case = self._repo.get_open_case(user_id)
            if case is None:
                return None
            expected = case.version
            self._transition(case, Tier.RESOLVED, now, reason=f"user_response:{response_kind.value}")
            case.resolution_note = f"User responded ({response_kind.value})."
            saved = self._repo.save_case(case, expected_version=expected)
            self._scheduler.cancel_for_case(user_id, saved.case_id, now=now)
            logger.info("case_resolved", user_id=user_id, case_id=saved.case_id)
            self._audit(AuditEventType.CASE_RESOLVED, saved, now, response_kind=response_kind.value)
            return saved

        return self._with_retry(user_id, resolve)

    def handle_tier_check(
        self, check: ScheduledNotification, now: Optional[datetime] = None
    ) -> Optional[EscalationCase]:
        """Advance the case if it is still in the tier the check expects.

        Returns the updated case, or None when the check was stale.
        """
        now = now or datetime.now(timezone.utc)

        def advance() -> Optional[EscalationCase]:
            case = self._repo.get_case(check.case_id) if check.case_id else None
            if case is None or not case.is_open or case.current_tier is not check.expected_tier:
                logger.debug(
                    "tier_check_stale",
                    user_id=check.user_id,
                    case_id=check.case_id,
                    expected_tier=check.expected_tier.value if check.expected_tier else None,
                )
                return None

            expected = case.version
            from_tier = case.current_tier
            self._transition(case, _NEXT_TIER[from_tier], now, reason="timeout")
            if case.current_tier is Tier.EXPIRED:
                case.resolution_note = "No response after emergency contacts were alerted."
            saved = self._repo.save_case(case, expected_version=expected)

            logger.info(
                "case_tier_advanced",
                user_id=saved.user_id,
                case_id=saved.case_id,
                from_tier=from_tier.value,
                to_tier=saved.current_tier.value,
            )
            if saved.current_tier is Tier.EXPIRED:
                self._scheduler.cancel_for_case(saved.user_id, saved.case_id, now=now)
                self._audit(AuditEventType.CASE_EXPIRED, saved, now, from_tier=from_tier.value)
            else:
                self._audit(AuditEventType.CASE_TIER_ADVANCED, saved, now, from_tier=from_tier.value)
                self._on_enter(saved, now)
            return saved

        return self._with_retry(check.user_id, advance)

    def recover_timers(self, user_id: str, now: Optional[datetime] = None) -> bool:
        """Re-create a missing tier check for the user's open case.

        Covers a crash between a case save and the scheduling of its timer.
        Returns True when a tier check was scheduled.
        """
        now = now or datetime.now(timezone.utc)
        with self._locks.lock_for(user_id):
            case = self._repo.get_open_case(user_id)
            if case is None or TIER_ORDER[case.current_tier] < TIER_ORDER[Tier.TIER1_GENTLE]:
                return False
            if self._scheduler.pending_tier_checks(user_id, case.case_id):
                return False
            self._scheduler.schedule_tier_check(
                user_id=user_id,
                case_id=case.case_id,
                expected_tier=case.current_tier,
                due_at=case.last_action_at + self.timeout_for(case, case.current_tier),
                priority=case_priority(case.severity, case.requires_immediate),
                now=now,
            )
            logger.warning("tier_check_recovered", user_id=user_id, case_id=case.case_id)
            return True
