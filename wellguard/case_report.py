"""
Escalation Case Timeline Report.

Builds a structured summary of one escalation case for operator review: the
tier timeline with the reason for each move, the triggering and merged
risk events, and how the case ended.

DISCLAIMER: Case reports summarize a notification workflow.  They are not
clinical records.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from wellguard.models import EscalationCase, RiskEvent, Tier

_TIER_DESCRIPTIONS: dict[Tier, str] = {
    Tier.IDLE: "Case opened.",
    Tier.TIER1_GENTLE: "Gentle check-in sent to the user.",
    Tier.TIER2_URGENT: "Urgent check-in sent to the user.",
    Tier.TIER3_CONTACT_ALERT: "Emergency contacts alerted.",
    Tier.RESOLVED: "User responded; pending notifications cancelled.",
    Tier.EXPIRED: "No response within the final grace window.",
}


class CaseReport:
    """A serializable timeline summary of one escalation case."""

    def __init__(
        self,
        case_id: str,
        user_id: str,
        severity: str,
        current_tier: str,
        outcome: str,
        timeline: list[dict[str, str]],
        events: list[dict[str, Any]],
        generated_at: str,
    ) -> None:
        self.case_id = case_id
        self.user_id = user_id
        self.severity = severity
        self.current_tier = current_tier
        self.outcome = outcome
        self.timeline = timeline
        self.events = events
        self.generated_at = generated_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_type": "Escalation Case Report",
            "case_id": self.case_id,
            "user_id": self.user_id,
            "severity": self.severity,
            "current_tier": self.current_tier,
            "outcome": self.outcome,
            "timeline": self.timeline,
            "events": self.events,
            "generated_at": self.generated_at,
        }

    def __repr__(self) -> str:
        return (
            f"CaseReport(case_id={self.case_id}, "
            f"tier={self.current_tier}, outcome={self.outcome})"
        )


def generate_case_report(
    case: EscalationCase,
    events: Optional[list[RiskEvent]] = None,
    now: Optional[datetime] = None,
) -> CaseReport:
    """Build a ``CaseReport`` for ``case``.

    Args:
        case: The escalation case.
        events: Risk events to include.  Only those belonging to the case
            (trigger or merged) are kept, in case order.
        now: Report generation time.

    Returns:
        The report.
    """
    now = now or datetime.now(timezone.utc)
    by_id = {e.event_id: e for e in events or []}
    case_events = [
        _event_summary(by_id[eid], role="trigger" if eid == case.trigger_event_id else "merged")
        for eid in case.event_ids
        if eid in by_id
    ]

    return CaseReport(
        case_id=case.case_id,
        user_id=case.user_id,
        severity=case.severity.value,
        current_tier=case.current_tier.value,
        outcome=_outcome(case),
        timeline=_build_timeline(case),
        events=case_events,
        generated_at=now.isoformat(),
    )


def _outcome(case: EscalationCase) -> str:
    if case.current_tier is Tier.RESOLVED:
        return "resolved"
    if case.current_tier is Tier.EXPIRED:
        return "expired"
    return "open"


def _build_timeline(case: EscalationCase) -> list[dict[str, str]]:
    return [
        {
            "tier": record.tier.value,
            "timestamp": record.timestamp.isoformat(),
            "reason": record.reason,
            "description": _TIER_DESCRIPTIONS[record.tier],
        }
        for record in case.tier_history
    ]


def _event_summary(event: RiskEvent, role: str) -> dict[str, Any]:
    return {
        "event_id": event.event_id,
        "role": role,
        "source_type": event.source_type.value,
        "severity": event.severity.value,
        "score": event.score,
        "requires_immediate": event.requires_immediate,
        "created_at": event.created_at.isoformat(),
    }
