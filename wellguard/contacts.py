"""
Emergency Contact and Buddy Routing.

When an escalation case reaches Tier 3, or when a long run of missed
check-ins asks for it, the orchestrator alerts the user's emergency contacts.
Contacts are ranked by their configured priority (1 first) and only the top
``contacts_to_notify`` active ones are alerted.  Every attempt is recorded in
the audit log, including the case where no contact is configured.

Contact alerts are submitted with ``requires_immediate`` so they are never
dropped by the rate limiter.  Each recipient has its own fatigue budget.

DISCLAIMER: Alerting a contact is a notification, not an emergency-service
dispatch.  Operational response is outside this system.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

import structlog

from wellguard.audit import AuditEventType, AuditLog
from wellguard.models import (
    DestinationType,
    EmergencyContact,
    EscalationCase,
    Priority,
    ScheduledNotification,
)
from wellguard.repository import Repository
from wellguard.scheduler import (
    NotificationScheduler,
    select_contact_method,
    select_delivery_method,
)

logger = structlog.get_logger(__name__)


class ContactAlertResult:
    """Result of alerting one emergency contact."""

    def __init__(
        self,
        contact: EmergencyContact,
        notification: Optional[ScheduledNotification],
    ) -> None:
        self.contact = contact
        self.notification = notification

    @property
    def queued(self) -> bool:
        return self.notification is not None

    def __repr__(self) -> str:
        return f"ContactAlertResult(contact_id='{self.contact.contact_id}', queued={self.queued})"


def select_contacts(contacts: list[EmergencyContact], limit: int) -> list[EmergencyContact]:
    """Return the ``limit`` highest-priority active contacts."""
    active = [c for c in contacts if c.active]
    return sorted(active, key=lambda c: (c.priority, c.contact_id))[:limit]


def alert_emergency_contacts(
    case: EscalationCase,
    priority: Priority,
    reason: str,
    repository: Repository,
    scheduler: NotificationScheduler,
    audit_log: Optional[AuditLog],
    limit: int,
    now: datetime,
) -> list[ContactAlertResult]:
    """Queue an alert to each of the user's top emergency contacts.

    Args:
        case: The escalation case prompting the alert.
        priority: Notification priority to use.
        reason: Short machine-readable cause, e.g. ``"tier3"``.
        repository: Source of the user's contacts and profile.
        scheduler: Where alerts are submitted.
        audit_log: Receives one ``CONTACTS_ALERTED`` entry.
        limit: Maximum number of contacts to alert.
        now: Submission time.

    Returns:
        One ``ContactAlertResult`` per selected contact.
    """
    chosen = select_contacts(repository.list_contacts(case.user_id), limit)
    profile = repository.get_user(case.user_id)
    name = profile.display_name if profile and profile.display_name else "Your contact"

    results: list[ContactAlertResult] = []
    for contact in chosen:
        notification = scheduler.submit(
            user_id=case.user_id,
            content=(
                f"{name} has not responded to several urgent safety check-ins. "
                "Please try to reach them."
            ),
            priority=priority,
            delivery_method=select_contact_method(contact),
            destination=contact.contact_id,
            destination_type=DestinationType.CONTACT,
            case_id=case.case_id,
            requires_immediate=True,
            now=now,
        )
        results.append(ContactAlertResult(contact, notification))

    if not chosen:
        logger.warning("no_emergency_contacts", user_id=case.user_id, case_id=case.case_id)
    else:
        logger.info(
            "contacts_alerted",
            user_id=case.user_id,
            case_id=case.case_id,
            reason=reason,
            count=len(chosen),
        )

    if audit_log is not None:
        audit_log.record(
            AuditEventType.CONTACTS_ALERTED,
            user_id=case.user_id,
            target_entity=case.case_id,
            actor="contacts",
            timestamp=now,
            reason=reason,
            contact_ids=[c.contact_id for c in chosen],
            queued=[r.queued for r in results],
            note="" if chosen else "No active emergency contacts configured.",
        )
    return results


def notify_buddy(
    case: EscalationCase,
    priority: Priority,
    repository: Repository,
    scheduler: NotificationScheduler,
    now: datetime,
) -> Optional[ScheduledNotification]:
    """Queue a heads-up to the user's buddy, if one is configured."""
    profile = repository.get_user(case.user_id)
    if profile is None or not profile.buddy_user_id:
        return None
    buddy = repository.get_user(profile.buddy_user_id)
    name = profile.display_name or "Your buddy"
    return scheduler.submit(
        user_id=case.user_id,
        content=f"{name} may need support right now. Consider checking in with them.",
        priority=priority,
        delivery_method=select_delivery_method(priority, buddy),
        destination=profile.buddy_user_id,
        destination_type=DestinationType.BUDDY,
        case_id=case.case_id,
        now=now,
    )
