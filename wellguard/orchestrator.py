"""
Safety Orchestrator -- ingestion entry points and the periodic sweep.

Data flows one way:

    producers -> Collector -> (Scorer) -> Escalation SM -> Scheduler -> Gateway

Upstream producers call the ``ingest_*`` methods.  Each input becomes a
``RiskEvent``; actionable events go to the escalation state machine, and
event intents (contact notification, rescoring) are honoured here so that no
component calls back up the pipeline.

An event is stored before it is routed.  If routing fails with a
``WellGuardError`` the event is parked in the repository's routing backlog
and the caller still gets the event back.

An external timer calls ``run_sweep()``.  One sweep, per user and in
parallel across users:

1. re-routes the events in the routing backlog,
2. runs the pattern detector and routes any new derived events,
3. delivers due notifications and fires due tier checks,
4. re-creates missing escalation timers,
5. recomputes the wellness score.

A failure in one user's sweep is logged and reported; the other users are
unaffected.
"""

from __future__ import annotations

import concurrent.futures
from datetime import datetime, timedelta, timezone
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from wellguard.audit import AuditEventType, AuditLog
from wellguard.case_report import CaseReport, generate_case_report
from wellguard.collector import RiskSignalCollector
from wellguard.config import DEFAULT_POLICY, SafetyPolicy
from wellguard.contacts import alert_emergency_contacts
from wellguard.escalation import EscalationStateMachine
from wellguard.exceptions import SweepUserError, WellGuardError
from wellguard.gateway import GuardedGateway, MessageGateway
from wellguard.geofence import POST_EXIT_ACTION, GeofenceEngine
from wellguard.models import (
    BuddyResponse,
    CheckInOutcome,
    EmergencyContact,
    LocationUpdate,
    MoodEntry,
    NotificationStatus,
    Priority,
    ResponseKind,
    RiskEvent,
    RiskForecast,
    SensorReading,
    UserProfile,
    ZoneTransition,
)
from wellguard.patterns import PatternDetector
from wellguard.repository import Repository, UserLockRegistry
from wellguard.scheduler import (
    DeliveryStats,
    NotificationScheduler,
    RateLimiter,
    select_delivery_method,
)
from wellguard.scorer import GuardedScorer, RiskScorer
from wellguard.wellness import WellnessAggregator

logger = structlog.get_logger(__name__)

NOTIFY_CONTACTS = "notify_contacts"
RESCORE = "rescore"

# Zone actions that become a message to the user: action -> (content, priority)
_ZONE_MESSAGES: dict[str, tuple[str, Priority]] = {
    "send_safe_zone_confirmation": ("You're in {zone}, one of your safe places.", Priority.LOW),
    "send_safety_reminder": (
        "You've left {zone}. Your safety plan is a tap away if you need it.",
        Priority.MEDIUM,
    ),
    "send_coping_resources": (
        "You've arrived at {zone}. Here are your coping strategies if things feel hard.",
        Priority.HIGH,
    ),
    "send_relief_confirmation": ("You've left {zone}. Well done looking after yourself.", Priority.LOW),
    "send_wellness_encouragement": ("Enjoy your time at {zone}.", Priority.LOW),
    "encourage_return": ("That was a short visit to {zone}. Consider going back when you can.", Priority.LOW),
}

_HEALTH_PENDING_DEGRADED = 1000
_HEALTH_FAILED_UNHEALTHY = 50


class SweepReport(BaseModel):
    """Summary of one ``run_sweep`` call."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    users_processed: int = 0
    failed_users: list[str] = Field(default_factory=list)
    notifications_sent: int = 0
    notifications_failed: int = 0
    notifications_deferred: int = 0
    notifications_cancelled: int = 0
    tier_checks_processed: int = 0
    events_rerouted: int = 0
    patterns_detected: int = 0
    timers_recovered: int = 0
    wellness_scores_computed: int = 0
    events_pruned: int = 0


class HealthStatus(BaseModel):
    status: str
    pending_notifications: int
    failed_notifications_24h: int
    open_cases: int


class _UserSweepResult(BaseModel):
    user_id: str
    delivery: DeliveryStats = Field(default_factory=DeliveryStats)
    events_rerouted: int = 0
    patterns_detected: int = 0
    timer_recovered: bool = False
    wellness_computed: bool = False


class SafetyOrchestrator:
    """Wires the components together around one repository.

    Args:
        repository: Storage backend.
        scorer: External AI risk scorer.
        gateway: External message transport.
        policy: Deployment policy.  Defaults to ``DEFAULT_POLICY``.
        audit_log: Audit trail.  A fresh one is created when omitted.
    """

    def __init__(
        self,
        repository: Repository,
        scorer: RiskScorer,
        gateway: MessageGateway,
        policy: SafetyPolicy = DEFAULT_POLICY,
        audit_log: Optional[AuditLog] = None,
    ) -> None:
        self.repository = repository
        self.policy = policy
        self.audit_log = audit_log if audit_log is not None else AuditLog()
        self.locks = UserLockRegistry()

        self.scorer = GuardedScorer(
            scorer, policy.delivery.scorer_timeout_seconds, audit_log=self.audit_log
        )
        self.gateway = GuardedGateway(gateway, policy.delivery.gateway_timeout_seconds)
        self.rate_limiter = RateLimiter(repository, policy, self.audit_log)
        self.scheduler = NotificationScheduler(
            repository, self.rate_limiter, self.gateway, policy, self.audit_log, self.locks
        )
        self.escalation = EscalationStateMachine(
            repository, self.scheduler, policy, self.audit_log, self.locks
        )
        self.collector = RiskSignalCollector(repository, self.scorer, policy, self.audit_log)
        self.geofence = GeofenceEngine(repository, policy, self.audit_log, self.locks)
        self.patterns = PatternDetector(repository, policy)
        self.wellness = WellnessAggregator(repository, policy)

    # -- registration --

    def register_user(self, profile: UserProfile) -> None:
        self.repository.save_user(profile)

    def add_emergency_contact(self, contact: EmergencyContact) -> None:
        self.repository.save_contact(contact)

    # -- ingestion --

    def ingest_mood(self, entry: MoodEntry, now: Optional[datetime] = None) -> RiskEvent:
        return self._ingest(entry, now)

    def ingest_sensor(self, reading: SensorReading, now: Optional[datetime] = None) -> RiskEvent:
        return self._ingest(reading, now)

    def ingest_buddy_response(self, response: BuddyResponse, now: Optional[datetime] = None) -> RiskEvent:
        return self._ingest(response, now)

    def ingest_forecast(self, forecast: RiskForecast, now: Optional[datetime] = None) -> RiskEvent:
        return self._ingest(forecast, now)

    def ingest_checkin(self, outcome: CheckInOutcome, now: Optional[datetime] = None) -> RiskEvent:
        """Record a missed check-in or a reply.

        A reply that does not itself raise an actionable event (safe,
        negative, or a mild free-text answer) resolves the open case.
        """
        now = now or datetime.now(timezone.utc)
        event = self.collector.normalize(outcome, now=now)
        if outcome.missed or event.is_actionable:
            self._route_or_defer(event, now)
        else:
            kind = ResponseKind(event.metadata["response_kind"])
            self.escalation.handle_user_response(outcome.user_id, kind, now=now)
        return event

    def ingest_location(self, update: LocationUpdate, now: Optional[datetime] = None) -> list[ZoneTransition]:
        """Run geofencing for one location fix and act on any transitions."""
        now = now or datetime.now(timezone.utc)
        transitions = self.geofence.on_location_update(
            update.user_id,
            update.latitude,
            update.longitude,
            update.accuracy_m,
            update.timestamp,
        )
        for transition in transitions:
            event = self.collector.normalize(transition, now=now)
            self._route_or_defer(event, now)
            self._apply_zone_actions(transition, now)
        return transitions

    def _ingest(self, raw, now: Optional[datetime]) -> RiskEvent:
        now = now or datetime.now(timezone.utc)
        event = self.collector.normalize(raw, now=now)
        self._route_or_defer(event, now)
        return event

    # -- routing --

    def _route(self, event: RiskEvent, now: datetime) -> None:
        case = self.escalation.handle_risk_event(event, now=now)
        intents = event.intents

        if NOTIFY_CONTACTS in intents and case is not None:
            alert_emergency_contacts(
                case,
                priority=Priority.HIGH,
                reason=f"{event.source_type.value}_intent",
                repository=self.repository,
                scheduler=self.scheduler,
                audit_log=self.audit_log,
                limit=self.policy.escalation.contacts_to_notify,
                now=now,
            )
        if RESCORE in intents:
            rescored = self.collector.evaluate_with_scorer(event.user_id, now=now)
            self._route_or_defer(rescored, now)

    def _route_or_defer(self, event: RiskEvent, now: datetime) -> Optional[str]:
        """Route a stored event.  On failure park it for the next sweep and
        return the error message."""
        try:
            self._route(event, now)
        except WellGuardError as exc:
            self.repository.defer_routing(event.event_id)
            logger.error(
                "routing_deferred",
                user_id=event.user_id,
                event_id=event.event_id,
                severity=event.severity.value,
                error=exc.message,
            )
            self.audit_log.record(
                AuditEventType.ROUTING_DEFERRED,
                user_id=event.user_id,
                target_entity=event.event_id,
                actor="orchestrator",
                timestamp=now,
                error=exc.message,
            )
            return exc.message
        return None

    def _apply_zone_actions(self, transition: ZoneTransition, now: datetime) -> None:
        zone, zone_event = transition.zone, transition.event
        profile = self.repository.get_user(zone.user_id)
        label = zone.name or "this place"

        for action in transition.actions:
            if action in _ZONE_MESSAGES:
                template, priority = _ZONE_MESSAGES[action]
                self.scheduler.submit(
                    user_id=zone.user_id,
                    content=template.format(zone=label),
                    priority=priority,
                    delivery_method=select_delivery_method(priority, profile),
                    now=now,
                )
            elif action == POST_EXIT_ACTION:
                due = zone_event.timestamp + timedelta(
                    minutes=self.policy.post_exit_check_delay_minutes
                )
                self.scheduler.submit(
                    user_id=zone.user_id,
                    content=f"Checking in after you left {label}. How are you feeling?",
                    priority=Priority.MEDIUM,
                    delivery_method=select_delivery_method(Priority.MEDIUM, profile),
                    scheduled_for=due,
                    now=now,
                )
            else:
                # Monitoring-frequency and pattern-logging actions are advisory.
                logger.debug("zone_action", user_id=zone.user_id, zone_id=zone.zone_id, action=action)

    # -- sweep --

    def run_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """Run one sweep over every known user."""
        now = now or datetime.now(timezone.utc)
        report = SweepReport(started_at=now)
        report.events_pruned = self.repository.prune_events(
            now - timedelta(days=self.policy.retention_days)
        )

        user_ids = self.repository.list_user_ids()
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.policy.sweep_max_workers,
            thread_name_prefix="wellguard-sweep",
        ) as pool:
            futures = {pool.submit(self._sweep_user, uid, now): uid for uid in user_ids}
            for future in concurrent.futures.as_completed(futures):
                user_id = futures[future]
                report.users_processed += 1
                try:
                    result = future.result()
                except Exception as exc:
                    logger.exception("sweep_user_failed", user_id=user_id)
                    self.audit_log.record(
                        AuditEventType.SWEEP_USER_FAILED,
                        user_id=user_id,
                        actor="orchestrator",
                        timestamp=now,
                        error=f"{type(exc).__name__}: {exc}",
                    )
                    report.failed_users.append(user_id)
                    continue
                self._merge(report, result)

        report.failed_users.sort()
        report.finished_at = datetime.now(timezone.utc)
        logger.info(
            "sweep_completed",
            users=report.users_processed,
            failed=len(report.failed_users),
            sent=report.notifications_sent,
            tier_checks=report.tier_checks_processed,
        )
        return report

    def _sweep_user(self, user_id: str, now: datetime) -> _UserSweepResult:
        result = _UserSweepResult(user_id=user_id)
        errors: list[str] = []
        structlog.contextvars.bind_contextvars(user_id=user_id)
        try:
            for parked in self.repository.list_deferred_routing(user_id):
                error = self._reroute(parked, now)
                if error is None:
                    result.events_rerouted += 1
                else:
                    errors.append(f"route {parked.event_id}: {error}")

            for derived in self.patterns.detect(user_id, now):
                if self.repository.get_event(derived.event_id) is not None:
                    continue
                self.repository.append_event(derived)
                result.patterns_detected += 1
                logger.info(
                    "pattern_detected",
                    event_id=derived.event_id,
                    rule=derived.metadata["rule"],
                    severity=derived.severity.value,
                )
                self.audit_log.record(
                    AuditEventType.PATTERN_DETECTED,
                    user_id=user_id,
                    target_entity=derived.event_id,
                    actor="patterns",
                    timestamp=now,
                    rule=derived.metadata["rule"],
                    severity=derived.severity.value,
                )
                error = self._route_or_defer(derived, now)
                if error is not None:
                    errors.append(f"route {derived.event_id}: {error}")

            result.delivery = self.scheduler.deliver_due(
                user_id, now, tier_check_handler=self.escalation.handle_tier_check
            )
            result.timer_recovered = self.escalation.recover_timers(user_id, now)
            self.wellness.compute(user_id, now)
            result.wellness_computed = True
        finally:
            structlog.contextvars.unbind_contextvars("user_id")

        errors.extend(result.delivery.errors)
        if errors:
            raise SweepUserError(user_id, errors)
        return result

    def _reroute(self, event: RiskEvent, now: datetime) -> Optional[str]:
        try:
            self._route(event, now)
        except WellGuardError as exc:
            logger.warning("reroute_failed", event_id=event.event_id, error=exc.message)
            return exc.message
        self.repository.clear_deferred_routing(event.event_id)
        logger.info("event_rerouted", event_id=event.event_id, severity=event.severity.value)
        return None

    @staticmethod
    def _merge(report: SweepReport, result: _UserSweepResult) -> None:
        d = result.delivery
        report.notifications_sent += d.sent
        report.notifications_failed += d.failed
        report.notifications_deferred += d.deferred
        report.notifications_cancelled += d.cancelled
        report.tier_checks_processed += d.tier_checks
        report.events_rerouted += result.events_rerouted
        report.patterns_detected += result.patterns_detected
        report.timers_recovered += int(result.timer_recovered)
        report.wellness_scores_computed += int(result.wellness_computed)

    # -- health --

    def health_check(self, now: Optional[datetime] = None) -> HealthStatus:
        """Coarse backlog health: degraded over 1000 pending, unhealthy over
        50 failed deliveries in the last 24 hours."""
        now = now or datetime.now(timezone.utc)
        pending = failed = open_cases = 0
        for user_id in self.repository.list_user_ids():
            pending += len(self.repository.list_notifications(user_id, status=NotificationStatus.PENDING))
            failed += sum(
                1
                for n in self.repository.list_notifications(user_id, status=NotificationStatus.FAILED)
                if now - n.scheduled_for <= timedelta(hours=24)
            )
            if self.repository.get_open_case(user_id) is not None:
                open_cases += 1

        if failed > _HEALTH_FAILED_UNHEALTHY:
            status = "unhealthy"
        elif pending > _HEALTH_PENDING_DEGRADED:
            status = "degraded"
        else:
            status = "healthy"
        return HealthStatus(
            status=status,
            pending_notifications=pending,
            failed_notifications_24h=failed,
            open_cases=open_cases,
        )

    # -- reporting --

    def case_report(self, case_id: str, now: Optional[datetime] = None) -> CaseReport:
        """Timeline report for one case.

        Raises:
            KeyError: If the case does not exist.
        """
        case = self.repository.get_case(case_id)
        if case is None:
            raise KeyError(f"No escalation case '{case_id}'")
        events = [e for e in (self.repository.get_event(eid) for eid in case.event_ids) if e is not None]
        return generate_case_report(case, events, now=now)
