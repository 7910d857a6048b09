"""Retry decisions and backoff timing for failed work items."""

from __future__ import annotations

import random
from dataclasses import dataclass

from goal_autopilot.config import RetrySettings
from goal_autopilot.scheduler.failure_classifier import (
    ErrorPattern,
    FailureClassification,
    FailureClassifier,
)
from goal_autopilot.scheduler.models import (
    RETRY_STRATEGY_ORDER,
    EscalationSeverity,
    EscalationType,
    FailureCategory,
    RetryStrategy,
    WorkItem,
)


@dataclass(slots=True)
class RetryDecision:
    """What to do after one failed attempt."""

    should_retry: bool
    strategy: RetryStrategy
    classification: FailureClassification
    reason: str
    delay_seconds: float = 0.0

    @property
    def category(self) -> FailureCategory:
        return self.classification.category

    def escalation_type(self) -> EscalationType:
        if self.classification.recoverable:
            return EscalationType.RETRIES_EXHAUSTED
        return {
            FailureCategory.RESOURCE: EscalationType.RESOURCE,
            FailureCategory.PERMISSION: EscalationType.PERMISSION,
            FailureCategory.CAPABILITY: EscalationType.CAPABILITY,
        }.get(self.category, EscalationType.RETRIES_EXHAUSTED)

    def escalation_severity(self) -> EscalationSeverity:
        if self.category in {FailureCategory.PERMISSION, FailureCategory.RESOURCE}:
            return EscalationSeverity.HIGH
        return EscalationSeverity.MEDIUM

    def to_event_details(self) -> dict[str, object]:
        return {
            "should_retry": self.should_retry,
            "strategy": self.strategy.value,
            "reason": self.reason,
            "delay_seconds": round(self.delay_seconds, 3),
            **self.classification.to_event_details(),
        }


class RetryHandler:
    """Classifies failures and picks the next retry strategy or escalation."""

    def __init__(
        self,
        *,
        settings: RetrySettings,
        classifier: FailureClassifier | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.classifier = classifier or FailureClassifier()
        self._random = rng or random.Random()  # noqa: S311

    def register_pattern(self, pattern: ErrorPattern) -> None:
        self.classifier.register_pattern(pattern)

    def max_attempts_for(self, work_item: WorkItem) -> int:
        return min(work_item.max_retries, self.settings.max_retries)

    def decide_retry(
        self,
        work_item: WorkItem,
        error: str,
        *,
        kind: FailureCategory | None = None,
    ) -> RetryDecision:
        """Decide how to continue after a failure.

        ``work_item.retry_count`` must already include the failure being
        decided on.
        """

        classification = self.classifier.classify(error, kind=kind)
        limit = self.max_attempts_for(work_item)
        if work_item.retry_count >= limit:
            return RetryDecision(
                should_retry=False,
                strategy=RetryStrategy.HUMAN_GUIDANCE,
                classification=classification,
                reason=f"retry limit reached ({work_item.retry_count}/{limit})",
            )
        if not classification.recoverable:
            return RetryDecision(
                should_retry=False,
                strategy=RetryStrategy.HUMAN_GUIDANCE,
                classification=classification,
                reason=f"unrecoverable {classification.category.value} failure "
                f"({classification.matched_rule})",
            )

        strategy = self._next_strategy(
            start=classification.strategy,
            attempted=work_item.attempted_strategies,
        )
        if strategy == RetryStrategy.HUMAN_GUIDANCE:
            return RetryDecision(
                should_retry=False,
                strategy=strategy,
                classification=classification,
                reason="all automatic strategies attempted",
            )
        return RetryDecision(
            should_retry=True,
            strategy=strategy,
            classification=classification,
            reason=f"{classification.category.value} failure, retrying with {strategy.value}",
            delay_seconds=self.get_retry_delay(max(work_item.retry_count - 1, 0)),
        )

    def get_retry_delay(self, attempt: int) -> float:
        """Exponential backoff with multiplicative jitter, clamped to the max delay."""

        base_delay = self.settings.base_delay_seconds * (2 ** max(attempt, 0))
        jitter = self.settings.jitter_factor
        factor = self._random.uniform(1 - jitter, 1 + jitter)
        return min(self.settings.max_delay_seconds, max(0.0, base_delay * factor))

    @staticmethod
    def _next_strategy(
        *,
        start: RetryStrategy,
        attempted: tuple[RetryStrategy, ...],
    ) -> RetryStrategy:
        tried = set(attempted)
        for strategy in RETRY_STRATEGY_ORDER[RETRY_STRATEGY_ORDER.index(start) :]:
            if strategy == RetryStrategy.HUMAN_GUIDANCE:
                break
            if strategy not in tried:
                return strategy
        return RetryStrategy.HUMAN_GUIDANCE
