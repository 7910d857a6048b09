from __future__ import annotations

import allure
import pytest

from goal_autopilot.scheduler.failure_classifier import ErrorPattern, FailureClassifier
from goal_autopilot.scheduler.models import FailureCategory, RetryStrategy

pytestmark = [
    allure.epic("Goal Scheduler"),
    allure.feature("Failure Classification"),
]


@pytest.mark.parametrize(
    ("error", "category", "recoverable", "strategy", "rule"),
    [
        (
            "Error 429: rate limit reached",
            FailureCategory.TRANSIENT,
            True,
            RetryStrategy.SAME_APPROACH,
            "rate_limit_transient",
        ),
        (
            "upstream returned 503 Service Unavailable",
            FailureCategory.TRANSIENT,
            True,
            RetryStrategy.SAME_APPROACH,
            "server_error_transient",
        ),
        (
            "read ETIMEDOUT while streaming",
            FailureCategory.TRANSIENT,
            True,
            RetryStrategy.SAME_APPROACH,
            "network_transient",
        ),
        (
            "insufficient_quota: check your billing details",
            FailureCategory.RESOURCE,
            False,
            RetryStrategy.HUMAN_GUIDANCE,
            "billing_or_quota",
        ),
        (
            "HTTP 401 Unauthorized",
            FailureCategory.PERMISSION,
            False,
            RetryStrategy.HUMAN_GUIDANCE,
            "access_or_auth",
        ),
        (
            "request rejected by content policy",
            FailureCategory.PERMISSION,
            False,
            RetryStrategy.HUMAN_GUIDANCE,
            "content_policy",
        ),
        (
            "This model's maximum context length is 200000 tokens",
            FailureCategory.CAPABILITY,
            True,
            RetryStrategy.PARAMETER_ADJUST,
            "context_limit",
        ),
        (
            "model not found: claude-nonexistent",
            FailureCategory.CAPABILITY,
            True,
            RetryStrategy.ALTERNATIVE_TOOL,
            "model_not_available",
        ),
    ],
)
def test_default_patterns(error, category, recoverable, strategy, rule) -> None:
    classification = FailureClassifier().classify(error)

    assert classification.category == category
    assert classification.recoverable is recoverable
    assert classification.strategy == strategy
    assert classification.matched_rule == rule
    assert classification.matched_pattern is not None


def test_billing_wins_over_rate_limit_markers() -> None:
    classification = FailureClassifier().classify("429 quota exceeded for this billing period")

    assert classification.category == FailureCategory.RESOURCE


def test_unmatched_error_uses_engine_hint_or_unknown() -> None:
    classifier = FailureClassifier()

    unknown = classifier.classify("segmentation fault in agent")
    hinted = classifier.classify("exit code 1", kind=FailureCategory.CAPABILITY)

    assert unknown.category == FailureCategory.UNKNOWN
    assert unknown.recoverable
    assert unknown.strategy == RetryStrategy.SAME_APPROACH
    assert unknown.matched_rule == "fallback_unknown"
    assert hinted.category == FailureCategory.CAPABILITY
    assert hinted.strategy == RetryStrategy.ALTERNATIVE_TOOL
    assert hinted.matched_rule == "engine_hint"


def test_registered_pattern_takes_precedence() -> None:
    classifier = FailureClassifier()
    custom = ErrorPattern(
        pattern=r"sandbox quota",
        category=FailureCategory.TRANSIENT,
        recoverable=True,
        strategy=RetryStrategy.DECOMPOSE_FURTHER,
        description="sandbox_busy",
    )

    classifier.register_pattern(custom)
    registered = classifier.classify("sandbox quota temporarily exhausted")

    assert registered.matched_rule == "sandbox_busy"
    assert registered.strategy == RetryStrategy.DECOMPOSE_FURTHER
    assert classifier.patterns()[0] == custom
    assert classifier.remove_pattern(r"sandbox quota")
    assert classifier.classify("sandbox quota exhausted").category == FailureCategory.RESOURCE


def test_event_details_are_versioned() -> None:
    details = FailureClassifier().classify("bad gateway").to_event_details()

    assert details["classifier_version"] == 1
    assert details["category"] == "transient"
    assert details["matched_pattern"] == "bad gateway"
