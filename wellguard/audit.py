"""
Operational Audit Trail (Hash-Chained).

The orchestrator records every decision that changes what a user, buddy, or
emergency contact will receive: risk events entering the log, escalation
cases opening and advancing, rate-limit outcomes (including cap bypasses for
urgent notifications), delivery successes and failures, cancellations, zone
transitions, scorer fallbacks, and derived patterns.

Entries are linked by a SHA-256 hash chain so that an edited entry is
detectable by ``verify_chain()``.  The log is append-only and safe to write
from the sweep's worker threads.

Queries and exports are scoped by ``user_id``; exports redact contact
details (phone numbers, e-mail addresses, names) from metadata.
"""

from __future__ import annotations

import enum
import hashlib
import json
import re
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Audit event types
# ---------------------------------------------------------------------------

class AuditEventType(str, enum.Enum):
    # Signals
    RISK_EVENT_RECORDED = "RISK_EVENT_RECORDED"
    PATTERN_DETECTED = "PATTERN_DETECTED"
    SCORER_FALLBACK = "SCORER_FALLBACK"
    ZONE_TRANSITION = "ZONE_TRANSITION"

    # Escalation lifecycle
    CASE_OPENED = "CASE_OPENED"
    CASE_MERGED = "CASE_MERGED"
    CASE_TIER_ADVANCED = "CASE_TIER_ADVANCED"
    CASE_RESOLVED = "CASE_RESOLVED"
    CASE_EXPIRED = "CASE_EXPIRED"
    CONTACTS_ALERTED = "CONTACTS_ALERTED"

    # Notifications
    NOTIFICATION_ADMITTED = "NOTIFICATION_ADMITTED"
    NOTIFICATION_DEFERRED = "NOTIFICATION_DEFERRED"
    NOTIFICATION_REJECTED = "NOTIFICATION_REJECTED"
    RATE_LIMIT_BYPASSED = "RATE_LIMIT_BYPASSED"
    NOTIFICATION_SENT = "NOTIFICATION_SENT"
    NOTIFICATION_FAILED = "NOTIFICATION_FAILED"
    NOTIFICATIONS_CANCELLED = "NOTIFICATIONS_CANCELLED"

    # Sweep
    ROUTING_DEFERRED = "ROUTING_DEFERRED"
    SWEEP_USER_FAILED = "SWEEP_USER_FAILED"


# ---------------------------------------------------------------------------
# Audit entry model
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """A single audit record, linked to its predecessor by hash."""

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    user_id: str = Field(
        ...,
        description="Monitored user the entry concerns.  Scopes queries and exports.",
    )
    actor: str = Field(
        default="system",
        description="Component that made the decision ('escalation', 'scheduler', ...).",
    )
    event_type: AuditEventType
    target_entity: str = Field(
        default="",
        description="Case, notification, event, or zone identifier.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)
    previous_hash: str = Field(
        default="",
        description="SHA-256 of the previous entry.  Empty for the first entry.",
    )

    def canonical_bytes(self) -> bytes:
        data = {
            "entry_id": self.entry_id,
            "timestamp": self.timestamp.isoformat(),
            "user_id": self.user_id,
            "actor": self.actor,
            "event_type": self.event_type.value,
            "target_entity": self.target_entity,
            "metadata": self.metadata,
            "previous_hash": self.previous_hash,
        }
        return json.dumps(data, sort_keys=True, default=str).encode("utf-8")

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_bytes()).hexdigest()


# ---------------------------------------------------------------------------
# Contact-detail redaction
# ---------------------------------------------------------------------------

_PII_PATTERNS: dict[str, re.Pattern] = {
    "phone": re.compile(r"\+?\b\d{3}[-. ]?\d{3}[-. ]?\d{4}\b"),
    "email": re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
}

_PII_KEYS = {"name", "contact_name", "display_name", "email", "phone", "address",
             "destination_address"}


def redact_pii_from_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Replace contact details in ``metadata`` with ``[REDACTED]`` markers.

    Keys known to hold personal details are blanked outright; other string
    values are scanned for phone numbers and e-mail addresses.  Nested
    dictionaries and lists are handled recursively.

    Args:
        metadata: The original metadata dictionary.

    Returns:
        A new dictionary; the input is not modified.
    """
    redacted: dict[str, Any] = {}
    for key, value in metadata.items():
        if key.lower() in _PII_KEYS:
            redacted[key] = "[REDACTED]"
        else:
            redacted[key] = _redact_value(value)
    return redacted


def _redact_value(value: Any) -> Any:
    if isinstance(value, str):
        for pattern_name, pattern in _PII_PATTERNS.items():
            value = pattern.sub(f"[REDACTED-{pattern_name.upper()}]", value)
        return value
    if isinstance(value, dict):
        return redact_pii_from_metadata(value)
    if isinstance(value, list):
        return [_redact_value(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

class AuditLog:
    """Append-only, hash-chained audit log.

    There is no update or delete.  ``append`` and ``record`` are serialized by
    an internal lock so that the chain stays linear when several users are
    swept concurrently.
    """

    def __init__(self) -> None:
        self._entries: list[AuditEntry] = []
        self._hashes: list[str] = []
        self._lock = threading.Lock()

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Append ``entry``, filling in its ``previous_hash`` link."""
        with self._lock:
            entry.previous_hash = self._hashes[-1] if self._hashes else ""
            self._entries.append(entry)
            self._hashes.append(entry.compute_hash())
        return entry

    def record(
        self,
        event_type: AuditEventType,
        /,
        user_id: str,
        target_entity: str = "",
        actor: str = "system",
        timestamp: Optional[datetime] = None,
        **metadata: Any,
    ) -> AuditEntry:
        """Build and append an entry in one call."""
        entry = AuditEntry(
            user_id=user_id,
            actor=actor,
            event_type=event_type,
            target_entity=target_entity,
            metadata=metadata,
        )
        if timestamp is not None:
            entry.timestamp = timestamp
        return self.append(entry)

    def verify_chain(self) -> tuple[bool, Optional[int]]:
        """Walk the log and validate every hash link.

        Returns:
            ``(valid, broken_at)`` where ``broken_at`` is the index of the
            first broken link, or None when the chain is intact.
        """
        with self._lock:
            entries = list(self._entries)
            hashes = list(self._hashes)

        for i, entry in enumerate(entries):
            if i == 0:
                if entry.previous_hash != "":
                    return (False, 0)
            elif entry.previous_hash != entries[i - 1].compute_hash():
                return (False, i)
            if hashes[i] != entry.compute_hash():
                return (False, i)
        return (True, None)

    def query(
        self,
        user_id: str,
        event_type: Optional[AuditEventType] = None,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
        target_entity: Optional[str] = None,
    ) -> list[AuditEntry]:
        """Return copies of the entries for ``user_id`` matching every filter."""
        with self._lock:
            entries = list(self._entries)

        results = []
        for entry in entries:
            if entry.user_id != user_id:
                continue
            if event_type is not None and entry.event_type != event_type:
                continue
            if time_start is not None and entry.timestamp < time_start:
                continue
            if time_end is not None and entry.timestamp > time_end:
                continue
            if target_entity is not None and entry.target_entity != target_entity:
                continue
            results.append(entry.model_copy(deep=True))
        return results

    def export_for_review(
        self,
        user_id: str,
        time_start: Optional[datetime] = None,
        time_end: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Produce a JSON-serializable, redacted export of one user's entries."""
        entries = self.query(user_id, time_start=time_start, time_end=time_end)

        redacted_entries = []
        for entry in entries:
            entry_dict = entry.model_dump(mode="json")
            entry_dict["metadata"] = redact_pii_from_metadata(entry_dict["metadata"])
            redacted_entries.append(entry_dict)

        chain_valid, broken_at = self.verify_chain()

        return {
            "export_metadata": {
                "user_id": user_id,
                "exported_at": datetime.now(timezone.utc).isoformat(),
                "entry_count": len(redacted_entries),
                "chain_integrity": "VALID" if chain_valid else f"BROKEN_AT_INDEX_{broken_at}",
            },
            "entries": redacted_entries,
        }

    def __len__(self) -> int:
        return len(self._entries)
