"""
Core data models for the WellGuard Safety Signal Orchestrator.

Every input channel is normalized into a ``RiskEvent``; escalation state lives
in ``EscalationCase``; outbound work (user messages, contact alerts, and
internal tier-check timers) is a ``ScheduledNotification``.

DISCLAIMER: These structures describe a notification workflow.  Severity
values are routing signals, not clinical assessments.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class SourceType(str, enum.Enum):
    """Input channel a ``RiskEvent`` was derived from."""

    MOOD = "mood"
    SENSOR = "sensor"
    CHECKIN = "checkin"
    ZONE = "zone"
    BUDDY = "buddy"
    PREDICTION = "prediction"
    PATTERN = "pattern"


class Severity(str, enum.Enum):
    """Severity of a single piece of risk evidence.

    Only ``HIGH`` and ``CRITICAL`` are actionable by the escalation state
    machine; ``LOW`` and ``MEDIUM`` events are recorded for the pattern
    detector and the wellness aggregator.
    """

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Priority(str, enum.Enum):
    """Notification priority.  Selects a row of the rate-limit policy table."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


class Tier(str, enum.Enum):
    """Escalation tiers.

    ``RESOLVED`` and ``EXPIRED`` are terminal.  Tiers only move forward; the
    sole skip is ``IDLE -> TIER2_URGENT`` for critical events that require an
    immediate response.
    """

    IDLE = "Idle"
    TIER1_GENTLE = "Tier1_Gentle"
    TIER2_URGENT = "Tier2_Urgent"
    TIER3_CONTACT_ALERT = "Tier3_ContactAlert"
    RESOLVED = "Resolved"
    EXPIRED = "Expired"


class DeliveryMethod(str, enum.Enum):
    SMS = "sms"
    PUSH = "push"
    EMAIL = "email"
    SYSTEM = "system"


class NotificationStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class NotificationKind(str, enum.Enum):
    """``TIER_CHECK`` notifications are escalation timers consumed internally."""

    MESSAGE = "message"
    TIER_CHECK = "tier_check"


class DestinationType(str, enum.Enum):
    USER = "user"
    CONTACT = "contact"
    BUDDY = "buddy"


class ZoneType(str, enum.Enum):
    SAFE = "safe"
    TRIGGER = "trigger"
    NEUTRAL = "neutral"
    WELLNESS = "wellness"


class ZoneEventType(str, enum.Enum):
    ENTRY = "entry"
    EXIT = "exit"


class SensorMetric(str, enum.Enum):
    HEART_RATE = "heart_rate"
    STRESS = "stress"
    SLEEP = "sleep"
    ACTIVITY = "activity"


class ResponseKind(str, enum.Enum):
    """Classification of a free-text check-in reply."""

    SAFE = "safe"
    HELP = "help"
    NEGATIVE = "negative"
    CUSTOM = "custom"


# ---------------------------------------------------------------------------
# Orderings
# ---------------------------------------------------------------------------

SEVERITY_ORDER: dict[Severity, int] = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}

TIER_ORDER: dict[Tier, int] = {
    Tier.IDLE: 0,
    Tier.TIER1_GENTLE: 1,
    Tier.TIER2_URGENT: 2,
    Tier.TIER3_CONTACT_ALERT: 3,
    Tier.RESOLVED: 4,
    Tier.EXPIRED: 4,
}

TERMINAL_TIERS = frozenset({Tier.RESOLVED, Tier.EXPIRED})

ACTIONABLE_SEVERITIES = frozenset({Severity.HIGH, Severity.CRITICAL})


def max_severity(a: Severity, b: Severity) -> Severity:
    """Return the more severe of two severities."""
    return a if SEVERITY_ORDER[a] >= SEVERITY_ORDER[b] else b


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Risk events
# ---------------------------------------------------------------------------

class RiskEvent(BaseModel):
    """Normalized unit of risk evidence from any input channel.

    Immutable once created; the event log is append-only.
    """

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=_new_id)
    user_id: str = Field(..., min_length=1)
    source_type: SourceType
    severity: Severity
    score: float = Field(..., ge=0.0, le=1.0)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    created_at: datetime = Field(default_factory=_utcnow)
    requires_immediate: bool = False
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description=(
            "Source-specific payload.  ``intents`` (list of strings) carries "
            "downstream requests such as 'notify_contacts' or 'rescore'."
        ),
    )

    @property
    def is_actionable(self) -> bool:
        return self.severity in ACTIONABLE_SEVERITIES

    @property
    def intents(self) -> list[str]:
        return list(self.metadata.get("intents", []))


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------

class TierRecord(BaseModel):
    """One entry of an escalation case's tier history."""

    tier: Tier
    timestamp: datetime
    reason: str = ""


class EscalationCase(BaseModel):
    """Per-user state-machine instance tracking response to an unresolved risk.

    At most one case per user may be open (non-terminal) at any time.  The
    ``version`` counter is bumped on every durable save and used for
    optimistic concurrency checks in the repository.
    """

    case_id: str = Field(default_factory=_new_id)
    user_id: str = Field(..., min_length=1)
    trigger_event_id: str
    merged_event_ids: list[str] = Field(default_factory=list)
    severity: Severity
    requires_immediate: bool = False
    current_tier: Tier = Tier.IDLE
    opened_at: datetime = Field(default_factory=_utcnow)
    last_action_at: datetime = Field(default_factory=_utcnow)
    closed_at: Optional[datetime] = None
    tier_history: list[TierRecord] = Field(default_factory=list)
    resolution_note: str = ""
    version: int = 0

    @property
    def is_open(self) -> bool:
        return self.current_tier not in TERMINAL_TIERS

    @property
    def event_ids(self) -> list[str]:
        return [self.trigger_event_id, *self.merged_event_ids]


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class ScheduledNotification(BaseModel):
    """A unit of outbound work.

    Message notifications go to the external delivery gateway.  Tier-check
    notifications (``kind=TIER_CHECK``, ``delivery_method=SYSTEM``) are
    escalation timers consumed by the state machine and never delivered.
    """

    notification_id: str = Field(default_factory=_new_id)
    user_id: str = Field(..., min_length=1)
    case_id: Optional[str] = None
    kind: NotificationKind = NotificationKind.MESSAGE
    destination: str = Field(..., description="User id or emergency contact id.")
    destination_type: DestinationType = DestinationType.USER
    delivery_method: DeliveryMethod
    content: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    scheduled_for: datetime = Field(default_factory=_utcnow)
    priority: Priority = Priority.MEDIUM
    status: NotificationStatus = NotificationStatus.PENDING
    requires_immediate: bool = False
    needs_admission: bool = Field(
        default=False,
        description="Rate-limit admission is still owed at delivery time.",
    )
    attempts: int = 0
    sent_at: Optional[datetime] = None
    last_error: str = ""
    expected_tier: Optional[Tier] = Field(
        default=None,
        description="For tier checks: the tier the case must still be in.",
    )

    @model_validator(mode="after")
    def _scheduled_not_before_creation(self) -> "ScheduledNotification":
        if self.scheduled_for < self.created_at:
            raise ValueError("scheduled_for must not precede created_at")
        return self


# ---------------------------------------------------------------------------
# Geofencing
# ---------------------------------------------------------------------------

class Zone(BaseModel):
    """A circular geofence owned by one user.

    ``last_event_type`` of ``None`` means no event has been emitted yet.
    """

    zone_id: str = Field(default_factory=_new_id)
    user_id: str = Field(..., min_length=1)
    name: str = ""
    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)
    radius_m: float = Field(..., gt=0)
    zone_type: ZoneType
    last_event_type: Optional[ZoneEventType] = None
    entry_count: int = 0
    last_entered_at: Optional[datetime] = None
    active: bool = True
    custom_triggers: list[str] = Field(default_factory=list)
    post_exit_check_armed: bool = False


class ZoneEvent(BaseModel):
    zone_event_id: str = Field(default_factory=_new_id)
    zone_id: str
    user_id: str
    event_type: ZoneEventType
    timestamp: datetime
    duration_seconds: Optional[float] = Field(
        default=None,
        description="Set on exit: time since the matching entry.",
    )
    accuracy_m: Optional[float] = None
    triggered_actions: list[str] = Field(default_factory=list)


class ZoneTransition(BaseModel):
    """A zone entry or exit together with the actions it triggered."""

    zone: Zone
    event: ZoneEvent
    actions: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Wellness
# ---------------------------------------------------------------------------

class WellnessScore(BaseModel):
    user_id: str
    value: int = Field(..., ge=0, le=100)
    computed_at: datetime = Field(default_factory=_utcnow)
    components: dict[str, float] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# People
# ---------------------------------------------------------------------------

class UserProfile(BaseModel):
    user_id: str = Field(..., min_length=1)
    display_name: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    prefers_sms: bool = False
    buddy_user_id: Optional[str] = None


class EmergencyContact(BaseModel):
    contact_id: str = Field(default_factory=_new_id)
    user_id: str
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    priority: int = Field(default=1, ge=1, description="1 is contacted first.")
    active: bool = True


# ---------------------------------------------------------------------------
# Raw inputs from upstream producers
# ---------------------------------------------------------------------------

class MoodEntry(BaseModel):
    user_id: str = Field(..., min_length=1)
    mood_score: float = Field(..., ge=1, le=5, description="Self-reported mood, 1 (lowest) to 5.")
    notes: str = ""
    recorded_at: datetime = Field(default_factory=_utcnow)


class SensorReading(BaseModel):
    user_id: str = Field(..., min_length=1)
    metric: SensorMetric
    value: float
    unit: str = ""
    recorded_at: datetime = Field(default_factory=_utcnow)


class CheckInOutcome(BaseModel):
    """Either a missed daily check-in or the user's reply to one."""

    user_id: str = Field(..., min_length=1)
    missed: bool = False
    response: str = ""
    occurred_at: datetime = Field(default_factory=_utcnow)


class BuddyResponse(BaseModel):
    """Free-text reply of the monitored user to a buddy's check-in."""

    user_id: str = Field(..., min_length=1)
    buddy_user_id: str
    response: str
    received_at: datetime = Field(default_factory=_utcnow)


class RiskForecast(BaseModel):
    user_id: str = Field(..., min_length=1)
    risk_level: Severity
    risk_score: float = Field(..., ge=0.0, le=1.0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    forecast_for: Optional[datetime] = None
    reasoning: str = ""
    issued_at: datetime = Field(default_factory=_utcnow)


class LocationUpdate(BaseModel):
    user_id: str = Field(..., min_length=1)
    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)
    accuracy_m: float = Field(default=0.0, ge=0.0)
    timestamp: datetime = Field(default_factory=_utcnow)


class ScorerResult(BaseModel):
    """Output of the external AI risk scorer."""

    risk_level: Severity
    risk_score: float = Field(..., ge=0.0, le=1.0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str = ""
    fallback: bool = Field(
        default=False,
        description="True when the scorer failed and the conservative default was used.",
    )


# ---------------------------------------------------------------------------
# Per-user shared mutable state
# ---------------------------------------------------------------------------

class RateLimitSlot(BaseModel):
    timestamp: datetime
    priority: Priority
    notification_id: str = ""
    requires_immediate: bool = False
    bypassed_cap: bool = False


class RateLimitState(BaseModel):
    """Admitted send slots for one user, newest last."""

    user_id: str
    slots: list[RateLimitSlot] = Field(default_factory=list)
    version: int = 0


class CheckInStreak(BaseModel):
    """True consecutive-miss run length for one user's daily check-ins."""

    user_id: str
    consecutive_misses: int = 0
    last_missed_at: Optional[datetime] = None
    last_response_at: Optional[datetime] = None
    responded_count: int = 0
    version: int = 0
