"""
Persistence boundary for the WellGuard orchestrator.

``Repository`` is the abstract contract every storage backend implements.
The schema and migrations belong to the backend; the orchestrator only relies
on the operations below and on two atomicity guarantees:

* ``save_case`` is a compare-and-set on ``EscalationCase.version``; a stale
  write raises ``StateConflictError`` instead of overwriting.  It also refuses
  to store a second open case for the same user.
* ``update_rate_limit`` and ``update_checkin_streak`` are atomic per-user
  read-modify-write operations.

``InMemoryRepository`` is the reference backend used by tests and the
synthetic walkthrough.  It stores deep copies so callers can never mutate
stored state by accident.
"""

from __future__ import annotations

import abc
import threading
from collections import defaultdict
from datetime import datetime
from typing import Callable, Optional, TypeVar

from wellguard.exceptions import StateConflictError
from wellguard.models import (
    CheckInStreak,
    EmergencyContact,
    EscalationCase,
    NotificationStatus,
    RateLimitState,
    RiskEvent,
    ScheduledNotification,
    UserProfile,
    WellnessScore,
    Zone,
    ZoneEvent,
)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Per-user locks
# ---------------------------------------------------------------------------

class UserLockRegistry:
    """Hands out one re-entrant lock per user id.

    Holding a user's lock serializes every state decision for that user
    (case transitions, rate-limit admission, delivery) while leaving other
    users free to proceed in parallel.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def lock_for(self, user_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[user_id] = lock
            return lock


# ---------------------------------------------------------------------------
# Abstract repository
# ---------------------------------------------------------------------------

class Repository(abc.ABC):
    """Storage contract.  All reads return copies."""

    # -- users and contacts --------------------------------------------------

    @abc.abstractmethod
    def save_user(self, profile: UserProfile) -> None: ...

    @abc.abstractmethod
    def get_user(self, user_id: str) -> Optional[UserProfile]: ...

    @abc.abstractmethod
    def list_user_ids(self) -> list[str]:
        """Every user with a profile or any stored state, sorted."""

    @abc.abstractmethod
    def save_contact(self, contact: EmergencyContact) -> None: ...

    @abc.abstractmethod
    def list_contacts(self, user_id: str) -> list[EmergencyContact]: ...

    # -- risk events ---------------------------------------------------------

    @abc.abstractmethod
    def append_event(self, event: RiskEvent) -> None: ...

    @abc.abstractmethod
    def get_event(self, event_id: str) -> Optional[RiskEvent]: ...

    @abc.abstractmethod
    def list_events(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[RiskEvent]:
        """Events for ``user_id`` with ``since <= created_at <= until``,
        ordered by ``created_at`` then ``event_id``."""

    @abc.abstractmethod
    def prune_events(self, before: datetime) -> int:
        """Delete events created before ``before``; return how many."""

    @abc.abstractmethod
    def defer_routing(self, event_id: str) -> None:
        """Remember a stored event whose routing did not complete."""

    @abc.abstractmethod
    def list_deferred_routing(self, user_id: str) -> list[RiskEvent]:
        """Stored events of ``user_id`` still awaiting routing, oldest first."""

    @abc.abstractmethod
    def clear_deferred_routing(self, event_id: str) -> None: ...

    # -- escalation cases ----------------------------------------------------

    @abc.abstractmethod
    def get_case(self, case_id: str) -> Optional[EscalationCase]: ...

    @abc.abstractmethod
    def get_open_case(self, user_id: str) -> Optional[EscalationCase]: ...

    @abc.abstractmethod
    def list_cases(self, user_id: str) -> list[EscalationCase]: ...

    @abc.abstractmethod
    def save_case(self, case: EscalationCase, expected_version: int) -> EscalationCase:
        """Store ``case`` if the stored version equals ``expected_version``.

        Returns:
            The stored copy, with ``version`` incremented.

        Raises:
            StateConflictError: On a version mismatch, or when another open
                case already exists for the user.
            RepositoryError: When the backend fails.
        """

    # -- notifications -------------------------------------------------------

    @abc.abstractmethod
    def save_notification(self, notification: ScheduledNotification) -> None:
        """Insert or replace by ``notification_id``."""

    @abc.abstractmethod
    def get_notification(self, notification_id: str) -> Optional[ScheduledNotification]: ...

    @abc.abstractmethod
    def list_notifications(
        self,
        user_id: str,
        status: Optional[NotificationStatus] = None,
        case_id: Optional[str] = None,
    ) -> list[ScheduledNotification]:
        """Ordered by ``scheduled_for`` then ``notification_id``."""

    # -- zones ---------------------------------------------------------------

    @abc.abstractmethod
    def save_zone(self, zone: Zone) -> None: ...

    @abc.abstractmethod
    def get_zone(self, zone_id: str) -> Optional[Zone]: ...

    @abc.abstractmethod
    def list_zones(self, user_id: str, active_only: bool = True) -> list[Zone]: ...

    @abc.abstractmethod
    def append_zone_event(self, event: ZoneEvent) -> None: ...

    @abc.abstractmethod
    def list_zone_events(self, user_id: str, zone_id: Optional[str] = None) -> list[ZoneEvent]: ...

    # -- wellness ------------------------------------------------------------

    @abc.abstractmethod
    def save_wellness_score(self, score: WellnessScore) -> None: ...

    @abc.abstractmethod
    def get_latest_wellness_score(self, user_id: str) -> Optional[WellnessScore]: ...

    # -- atomic per-user state -----------------------------------------------

    @abc.abstractmethod
    def get_rate_limit(self, user_id: str) -> RateLimitState: ...

    @abc.abstractmethod
    def update_rate_limit(self, user_id: str, fn: Callable[[RateLimitState], T]) -> T:
        """Apply ``fn`` to a working copy of the user's rate-limit state and
        store the result atomically.  Returns whatever ``fn`` returns."""

    @abc.abstractmethod
    def get_checkin_streak(self, user_id: str) -> CheckInStreak: ...

    @abc.abstractmethod
    def update_checkin_streak(self, user_id: str, fn: Callable[[CheckInStreak], T]) -> T:
        """Atomic read-modify-write of the user's check-in streak."""


# ---------------------------------------------------------------------------
# In-memory reference implementation
# ---------------------------------------------------------------------------

class InMemoryRepository(Repository):
    """Thread-safe dictionary-backed repository."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._user_locks = UserLockRegistry()
        self._users: dict[str, UserProfile] = {}
        self._contacts: dict[str, dict[str, EmergencyContact]] = defaultdict(dict)
        self._events: dict[str, RiskEvent] = {}
        self._unrouted: set[str] = set()
        self._cases: dict[str, EscalationCase] = {}
        self._notifications: dict[str, ScheduledNotification] = {}
        self._zones: dict[str, Zone] = {}
        self._zone_events: list[ZoneEvent] = []
        self._wellness: dict[str, WellnessScore] = {}
        self._rate_limits: dict[str, RateLimitState] = {}
        self._streaks: dict[str, CheckInStreak] = {}

    # -- users and contacts --------------------------------------------------

    def save_user(self, profile: UserProfile) -> None:
        with self._lock:
            self._users[profile.user_id] = profile.model_copy(deep=True)

    def get_user(self, user_id: str) -> Optional[UserProfile]:
        with self._lock:
            profile = self._users.get(user_id)
            return profile.model_copy(deep=True) if profile else None

    def list_user_ids(self) -> list[str]:
        with self._lock:
            ids = set(self._users)
            ids.update(e.user_id for e in self._events.values())
            ids.update(c.user_id for c in self._cases.values())
            ids.update(n.user_id for n in self._notifications.values())
            ids.update(z.user_id for z in self._zones.values())
        return sorted(ids)

    def save_contact(self, contact: EmergencyContact) -> None:
        with self._lock:
            self._contacts[contact.user_id][contact.contact_id] = contact.model_copy(deep=True)

    def list_contacts(self, user_id: str) -> list[EmergencyContact]:
        with self._lock:
            contacts = [c.model_copy(deep=True) for c in self._contacts.get(user_id, {}).values()]
        return sorted(contacts, key=lambda c: (c.priority, c.contact_id))

    # -- risk events ---------------------------------------------------------

    def append_event(self, event: RiskEvent) -> None:
        with self._lock:
            if event.event_id in self._events:
                raise StateConflictError(event.event_id, expected=0, actual=1)
            self._events[event.event_id] = event

    def get_event(self, event_id: str) -> Optional[RiskEvent]:
        with self._lock:
            return self._events.get(event_id)

    def list_events(
        self,
        user_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> list[RiskEvent]:
        with self._lock:
            events = [e for e in self._events.values() if e.user_id == user_id]
        if since is not None:
            events = [e for e in events if e.created_at >= since]
        if until is not None:
            events = [e for e in events if e.created_at <= until]
        return sorted(events, key=lambda e: (e.created_at, e.event_id))

    def prune_events(self, before: datetime) -> int:
        with self._lock:
            stale = [eid for eid, e in self._events.items() if e.created_at < before]
            for eid in stale:
                del self._events[eid]
                self._unrouted.discard(eid)
        return len(stale)

    def defer_routing(self, event_id: str) -> None:
        with self._lock:
            self._unrouted.add(event_id)

    def list_deferred_routing(self, user_id: str) -> list[RiskEvent]:
        with self._lock:
            events = [
                self._events[eid]
                for eid in self._unrouted
                if eid in self._events and self._events[eid].user_id == user_id
            ]
        return sorted(events, key=lambda e: (e.created_at, e.event_id))

    def clear_deferred_routing(self, event_id: str) -> None:
        with self._lock:
            self._unrouted.discard(event_id)

    # -- escalation cases ----------------------------------------------------

    def get_case(self, case_id: str) -> Optional[EscalationCase]:
        with self._lock:
            case = self._cases.get(case_id)
            return case.model_copy(deep=True) if case else None

    def get_open_case(self, user_id: str) -> Optional[EscalationCase]:
        with self._lock:
            for case in self._cases.values():
                if case.user_id == user_id and case.is_open:
                    return case.model_copy(deep=True)
        return None

    def list_cases(self, user_id: str) -> list[EscalationCase]:
        with self._lock:
            cases = [c.model_copy(deep=True) for c in self._cases.values() if c.user_id == user_id]
        return sorted(cases, key=lambda c: (c.opened_at, c.case_id))

    def save_case(self, case: EscalationCase, expected_version: int) -> EscalationCase:
        with self._lock:
            stored = self._cases.get(case.case_id)
            actual = stored.version if stored else 0
            if actual != expected_version:
                raise StateConflictError(case.case_id, expected_version, actual)
            if case.is_open:
                for other in self._cases.values():
                    if (
                        other.user_id == case.user_id
                        and other.case_id != case.case_id
                        and other.is_open
                    ):
                        raise StateConflictError(other.case_id, expected_version, other.version)
            saved = case.model_copy(deep=True, update={"version": expected_version + 1})
            self._cases[case.case_id] = saved
            return saved.model_copy(deep=True)

    # -- notifications -------------------------------------------------------

    def save_notification(self, notification: ScheduledNotification) -> None:
        with self._lock:
            self._notifications[notification.notification_id] = notification.model_copy(deep=True)

    def get_notification(self, notification_id: str) -> Optional[ScheduledNotification]:
        with self._lock:
            n = self._notifications.get(notification_id)
            return n.model_copy(deep=True) if n else None

    def list_notifications(
        self,
        user_id: str,
        status: Optional[NotificationStatus] = None,
        case_id: Optional[str] = None,
    ) -> list[ScheduledNotification]:
        with self._lock:
            items = [
                n.model_copy(deep=True)
                for n in self._notifications.values()
                if n.user_id == user_id
                and (status is None or n.status == status)
                and (case_id is None or n.case_id == case_id)
            ]
        return sorted(items, key=lambda n: (n.scheduled_for, n.notification_id))

    # -- zones ---------------------------------------------------------------

    def save_zone(self, zone: Zone) -> None:
        with self._lock:
            self._zones[zone.zone_id] = zone.model_copy(deep=True)

    def get_zone(self, zone_id: str) -> Optional[Zone]:
        with self._lock:
            zone = self._zones.get(zone_id)
            return zone.model_copy(deep=True) if zone else None

    def list_zones(self, user_id: str, active_only: bool = True) -> list[Zone]:
        with self._lock:
            zones = [
                z.model_copy(deep=True)
                for z in self._zones.values()
                if z.user_id == user_id and (z.active or not active_only)
            ]
        return sorted(zones, key=lambda z: z.zone_id)

    def append_zone_event(self, event: ZoneEvent) -> None:
        with self._lock:
            self._zone_events.append(event.model_copy(deep=True))

    def list_zone_events(self, user_id: str, zone_id: Optional[str] = None) -> list[ZoneEvent]:
        with self._lock:
            return [
                e.model_copy(deep=True)
                for e in self._zone_events
                if e.user_id == user_id and (zone_id is None or e.zone_id == zone_id)
            ]

    # -- wellness ------------------------------------------------------------

    def save_wellness_score(self, score: WellnessScore) -> None:
        with self._lock:
            self._wellness[score.user_id] = score.model_copy(deep=True)

    def get_latest_wellness_score(self, user_id: str) -> Optional[WellnessScore]:
        with self._lock:
            score = self._wellness.get(user_id)
            return score.model_copy(deep=True) if score else None

    # -- atomic per-user state -----------------------------------------------

    def get_rate_limit(self, user_id: str) -> RateLimitState:
        with self._lock:
            state = self._rate_limits.get(user_id) or RateLimitState(user_id=user_id)
            return state.model_copy(deep=True)

    def update_rate_limit(self, user_id: str, fn: Callable[[RateLimitState], T]) -> T:
        with self._user_locks.lock_for(user_id):
            working = self.get_rate_limit(user_id)
            result = fn(working)
            working.version += 1
            with self._lock:
                self._rate_limits[user_id] = working
            return result

    def get_checkin_streak(self, user_id: str) -> CheckInStreak:
        with self._lock:
            streak = self._streaks.get(user_id) or CheckInStreak(user_id=user_id)
            return streak.model_copy(deep=True)

    def update_checkin_streak(self, user_id: str, fn: Callable[[CheckInStreak], T]) -> T:
        with self._user_locks.lock_for(user_id):
            working = self.get_checkin_streak(user_id)
            result = fn(working)
            working.version += 1
            with self._lock:
                self._streaks[user_id] = working
            return result
