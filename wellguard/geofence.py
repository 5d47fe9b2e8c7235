"""
Geofence Zone Engine.

Each user owns circular zones (safe, trigger, neutral, wellness).  A
location update is compared against every active zone with the haversine
great-circle distance; crossing a boundary emits a ``ZoneEvent`` and the
actions fixed for that (zone type, event type) pair.

Hysteresis is discrete: a zone only emits ``entry`` when its last event was
``exit`` or nothing, and only emits ``exit`` when its last event was
``entry``.  Repeated updates on the same side of the boundary emit nothing,
so entries and exits strictly alternate.

Entering a trigger zone arms a follow-up: the matching exit carries
``schedule_post_exit_check_in`` and the orchestrator queues a check-in a
fixed delay after the exit.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Optional

import structlog

from wellguard.audit import AuditEventType, AuditLog
from wellguard.config import SafetyPolicy
from wellguard.exceptions import InvalidZoneError, MalformedInputError
from wellguard.models import Zone, ZoneEvent, ZoneEventType, ZoneTransition, ZoneType
from wellguard.repository import Repository, UserLockRegistry

logger = structlog.get_logger(__name__)

EARTH_RADIUS_M = 6_371_000.0

POST_EXIT_ACTION = "schedule_post_exit_check_in"

_WELLNESS_SHORT_VISIT_SECONDS = 300

_ACTIONS: dict[tuple[ZoneType, ZoneEventType], list[str]] = {
    (ZoneType.SAFE, ZoneEventType.ENTRY): ["send_safe_zone_confirmation", "reduce_monitoring"],
    (ZoneType.SAFE, ZoneEventType.EXIT): ["increase_monitoring", "send_safety_reminder"],
    (ZoneType.TRIGGER, ZoneEventType.ENTRY): [
        "send_coping_resources",
        "open_or_merge_escalation_case",
        "schedule_post_exit_check",
    ],
    (ZoneType.TRIGGER, ZoneEventType.EXIT): ["send_relief_confirmation"],
    (ZoneType.WELLNESS, ZoneEventType.ENTRY): ["send_wellness_encouragement"],
    (ZoneType.NEUTRAL, ZoneEventType.ENTRY): ["log_location_pattern"],
}


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in metres between two WGS84 points."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def zone_actions(
    zone: Zone,
    event_type: ZoneEventType,
    duration_seconds: Optional[float] = None,
) -> list[str]:
    """Actions triggered by ``event_type`` on ``zone``."""
    actions = list(_ACTIONS.get((zone.zone_type, event_type), []))
    if (
        zone.zone_type is ZoneType.WELLNESS
        and event_type is ZoneEventType.EXIT
        and duration_seconds is not None
        and duration_seconds < _WELLNESS_SHORT_VISIT_SECONDS
    ):
        actions.append("encourage_return")
    actions.extend(t for t in zone.custom_triggers if event_type.value in t)
    return actions


def _validate_point(latitude: float, longitude: float, error: type) -> None:
    if not (math.isfinite(latitude) and -90.0 <= latitude <= 90.0):
        raise error(f"Latitude out of range: {latitude}")
    if not (math.isfinite(longitude) and -180.0 <= longitude <= 180.0):
        raise error(f"Longitude out of range: {longitude}")


class GeofenceEngine:
    """Zone CRUD plus boundary detection for location updates."""

    def __init__(
        self,
        repository: Repository,
        policy: SafetyPolicy,
        audit_log: Optional[AuditLog] = None,
        locks: Optional[UserLockRegistry] = None,
    ) -> None:
        self._repo = repository
        self._policy = policy
        self._audit_log = audit_log
        self._locks = locks or UserLockRegistry()

    def create_zone(
        self,
        user_id: str,
        name: str,
        latitude: float,
        longitude: float,
        radius_m: float,
        zone_type: ZoneType,
        custom_triggers: Optional[list[str]] = None,
    ) -> Zone:
        """Create and store a zone.

        Raises:
            InvalidZoneError: If ``radius_m <= 0`` or the center is out of range.
        """
        if not (math.isfinite(radius_m) and radius_m > 0):
            raise InvalidZoneError(
                f"Zone radius must be positive, got {radius_m}",
                details={"user_id": user_id, "name": name},
            )
        _validate_point(latitude, longitude, InvalidZoneError)
        zone = Zone(
            user_id=user_id,
            name=name,
            latitude=latitude,
            longitude=longitude,
            radius_m=radius_m,
            zone_type=zone_type,
            custom_triggers=list(custom_triggers or []),
        )
        self._repo.save_zone(zone)
        logger.info("zone_created", user_id=user_id, zone_id=zone.zone_id, zone_type=zone_type.value)
        return zone

    def create_default_zones(self, user_id: str, home_latitude: float, home_longitude: float) -> list[Zone]:
        """Create a safe zone around the user's home."""
        home = self.create_zone(
            user_id,
            name="Home",
            latitude=home_latitude,
            longitude=home_longitude,
            radius_m=self._policy.default_home_zone_radius_m,
            zone_type=ZoneType.SAFE,
        )
        return [home]

    def deactivate_zone(self, zone_id: str) -> Optional[Zone]:
        zone = self._repo.get_zone(zone_id)
        if zone is None:
            return None
        zone.active = False
        self._repo.save_zone(zone)
        return zone

    def on_location_update(
        self,
        user_id: str,
        latitude: float,
        longitude: float,
        accuracy_m: float,
        timestamp: datetime,
    ) -> list[ZoneTransition]:
        """Detect zone entries and exits for one location fix.

        Returns:
            One ``ZoneTransition`` per zone whose side of the boundary changed,
            ordered by zone id.

        Raises:
            MalformedInputError: If the coordinates are out of range.
        """
        _validate_point(latitude, longitude, MalformedInputError)
        transitions: list[ZoneTransition] = []

        with self._locks.lock_for(user_id):
            for zone in self._repo.list_zones(user_id, active_only=True):
                distance = haversine_m(latitude, longitude, zone.latitude, zone.longitude)
                inside = distance <= zone.radius_m

                if inside and zone.last_event_type is not ZoneEventType.ENTRY:
                    transition = self._enter(zone, timestamp, accuracy_m)
                elif not inside and zone.last_event_type is ZoneEventType.ENTRY:
                    transition = self._exit(zone, timestamp, accuracy_m)
                else:
                    continue

                self._repo.save_zone(transition.zone)
                self._repo.append_zone_event(transition.event)
                transitions.append(transition)
                self._record(transition, distance)

        return transitions

    def _enter(self, zone: Zone, timestamp: datetime, accuracy_m: float) -> ZoneTransition:
        zone.last_event_type = ZoneEventType.ENTRY
        zone.entry_count += 1
        zone.last_entered_at = timestamp
        actions = zone_actions(zone, ZoneEventType.ENTRY)
        if "schedule_post_exit_check" in actions:
            zone.post_exit_check_armed = True
        event = ZoneEvent(
            zone_id=zone.zone_id,
            user_id=zone.user_id,
            event_type=ZoneEventType.ENTRY,
            timestamp=timestamp,
            accuracy_m=accuracy_m,
            triggered_actions=actions,
        )
        return ZoneTransition(zone=zone, event=event, actions=actions)

    def _exit(self, zone: Zone, timestamp: datetime, accuracy_m: float) -> ZoneTransition:
        duration = None
        if zone.last_entered_at is not None:
            duration = max((timestamp - zone.last_entered_at).total_seconds(), 0.0)
        zone.last_event_type = ZoneEventType.EXIT
        actions = zone_actions(zone, ZoneEventType.EXIT, duration)
        if zone.post_exit_check_armed:
            actions.append(POST_EXIT_ACTION)
            zone.post_exit_check_armed = False
        event = ZoneEvent(
            zone_id=zone.zone_id,
            user_id=zone.user_id,
            event_type=ZoneEventType.EXIT,
            timestamp=timestamp,
            duration_seconds=duration,
            accuracy_m=accuracy_m,
            triggered_actions=actions,
        )
        return ZoneTransition(zone=zone, event=event, actions=actions)

    def _record(self, transition: ZoneTransition, distance: float) -> None:
        zone, event = transition.zone, transition.event
        logger.info(
            "zone_transition",
            user_id=zone.user_id,
            zone_id=zone.zone_id,
            zone_type=zone.zone_type.value,
            event_type=event.event_type.value,
            distance_m=round(distance, 1),
        )
        if self._audit_log is not None:
            self._audit_log.record(
                AuditEventType.ZONE_TRANSITION,
                user_id=zone.user_id,
                target_entity=zone.zone_id,
                actor="geofence",
                timestamp=event.timestamp,
                zone_type=zone.zone_type.value,
                event_type=event.event_type.value,
                actions=event.triggered_actions,
            )
