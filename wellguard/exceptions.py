"""
Error taxonomy for the WellGuard orchestrator.

Policy violations reject bad input before anything is persisted.  External
dependency failures are absorbed by their callers: the scorer falls back and
delivery is retried.  Repository errors surface to the sweep, which records the
affected user as failed and moves on.
"""

from __future__ import annotations

from typing import Any, Optional


class WellGuardError(Exception):
    """Base exception for all WellGuard errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


# ---------------------------------------------------------------------------
# Input and policy
# ---------------------------------------------------------------------------

class PolicyViolationError(WellGuardError):
    """Raised when input violates a configured or structural rule."""


class InvalidZoneError(PolicyViolationError):
    """Raised when a zone is created with a non-positive radius or bad center."""


class MalformedInputError(PolicyViolationError):
    """Raised when raw input cannot be normalized into a risk event."""


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

class StateConflictError(WellGuardError):
    """Raised when a versioned save finds a newer stored version."""

    def __init__(self, entity_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Version conflict on '{entity_id}': expected {expected}, found {actual}",
            details={"entity_id": entity_id, "expected": expected, "actual": actual},
        )
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual


class RepositoryError(WellGuardError):
    """Raised when the persistence layer fails to read or write."""


# ---------------------------------------------------------------------------
# External dependencies
# ---------------------------------------------------------------------------

class ExternalDependencyError(WellGuardError):
    """Raised when a collaborator outside the orchestrator fails."""


class ScorerUnavailableError(ExternalDependencyError):
    """Raised when the AI risk scorer errors or times out."""


class DeliveryError(ExternalDependencyError):
    """Raised when the message gateway errors or times out."""


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------

class SweepUserError(WellGuardError):
    """Raised inside one user's sweep when part of its work could not complete."""

    def __init__(self, user_id: str, errors: list[str]) -> None:
        super().__init__(
            f"{len(errors)} error(s) during sweep for user '{user_id}'",
            details={"user_id": user_id, "errors": errors},
        )
        self.user_id = user_id
        self.errors = errors
