"""
AI Risk Scorer boundary.

The concrete model call lives outside this package.  The orchestrator only
sees ``RiskScorer.score(features) -> ScorerResult`` and always goes through
``GuardedScorer``, which enforces a timeout and substitutes a conservative
fallback (low risk, score 0.1, confidence 0.5) when the scorer errors.
Callers never see a scorer exception.
"""

from __future__ import annotations

import abc
import concurrent.futures
from typing import Any, Callable, Optional, Union

import structlog

from wellguard.audit import AuditEventType, AuditLog
from wellguard.exceptions import ScorerUnavailableError
from wellguard.models import ScorerResult, Severity

logger = structlog.get_logger(__name__)

FALLBACK_RESULT = ScorerResult(
    risk_level=Severity.LOW,
    risk_score=0.1,
    confidence=0.5,
    reasoning="scorer unavailable; conservative default applied",
    fallback=True,
)


class RiskScorer(abc.ABC):
    """Contract for the external AI risk scorer."""

    @abc.abstractmethod
    def score(self, features: dict[str, Any]) -> ScorerResult:
        """Score a feature dictionary.  May raise or block."""


class StaticRiskScorer(RiskScorer):
    """Returns a fixed result, or the result of a callable, for every call.

    Used by tests and the synthetic walkthrough.
    """

    def __init__(
        self,
        result: Union[ScorerResult, Callable[[dict[str, Any]], ScorerResult]],
    ) -> None:
        self._result = result
        self.calls: list[dict[str, Any]] = []

    def score(self, features: dict[str, Any]) -> ScorerResult:
        self.calls.append(dict(features))
        if callable(self._result):
            return self._result(features)
        return self._result.model_copy()


class GuardedScorer:
    """Runs a ``RiskScorer`` with a timeout and a fallback result.

    Args:
        scorer: The wrapped scorer.
        timeout_seconds: Upper bound on one ``score`` call.
        audit_log: Optional; receives a ``SCORER_FALLBACK`` entry per fallback.
        executor: Optional shared executor.  One is created when omitted.
    """

    def __init__(
        self,
        scorer: RiskScorer,
        timeout_seconds: float = 15.0,
        audit_log: Optional[AuditLog] = None,
        executor: Optional[concurrent.futures.Executor] = None,
    ) -> None:
        self._scorer = scorer
        self._timeout = timeout_seconds
        self._audit_log = audit_log
        self._executor = executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=4, thread_name_prefix="wellguard-scorer"
        )

    def evaluate(self, features: dict[str, Any]) -> ScorerResult:
        """Score ``features``; returns ``FALLBACK_RESULT`` on any failure."""
        try:
            return self._call(features)
        except ScorerUnavailableError as exc:
            return self._fallback(features, exc.message)

    def _call(self, features: dict[str, Any]) -> ScorerResult:
        future = self._executor.submit(self._scorer.score, features)
        try:
            return future.result(timeout=self._timeout)
        except concurrent.futures.TimeoutError as exc:
            future.cancel()
            raise ScorerUnavailableError(f"Scorer timed out after {self._timeout}s") from exc
        except Exception as exc:
            raise ScorerUnavailableError(f"Scorer raised {type(exc).__name__}: {exc}") from exc

    def _fallback(self, features: dict[str, Any], reason: str) -> ScorerResult:
        user_id = str(features.get("user_id", ""))
        logger.warning("scorer_fallback", user_id=user_id, reason=reason)
        if self._audit_log is not None and user_id:
            self._audit_log.record(
                AuditEventType.SCORER_FALLBACK,
                user_id=user_id,
                actor="scorer",
                reason=reason,
            )
        return FALLBACK_RESULT.model_copy()
