"""Deterministic failure classification backed by a registrable pattern table."""

from __future__ import annotations

import re
import threading
from dataclasses import dataclass

from goal_autopilot.scheduler.models import FailureCategory, RetryStrategy

FAILURE_CLASSIFIER_VERSION = 1


@dataclass(slots=True, frozen=True)
class ErrorPattern:
    """One row of the pattern table; ``pattern`` is a case-insensitive regex."""

    pattern: str
    category: FailureCategory
    recoverable: bool
    strategy: RetryStrategy
    description: str


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    category: FailureCategory
    recoverable: bool
    strategy: RetryStrategy
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "category": self.category.value,
            "recoverable": self.recoverable,
            "strategy": self.strategy.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def _pattern(
    pattern: str,
    category: FailureCategory,
    strategy: RetryStrategy,
    description: str,
    *,
    recoverable: bool = True,
) -> ErrorPattern:
    return ErrorPattern(
        pattern=pattern,
        category=category,
        recoverable=recoverable,
        strategy=strategy,
        description=description,
    )


_HUMAN = RetryStrategy.HUMAN_GUIDANCE

# Order matters: billing and auth markers win over generic transient ones.
DEFAULT_PATTERNS: tuple[ErrorPattern, ...] = (
    _pattern(
        r"insufficient_quota|quota|billing|payment required|out of credits|budget exceeded",
        FailureCategory.RESOURCE,
        _HUMAN,
        "billing_or_quota",
        recoverable=False,
    ),
    _pattern(
        r"\b401\b|\b403\b|unauthorized|forbidden|permission denied|invalid[_ ]api[_ ]key",
        FailureCategory.PERMISSION,
        _HUMAN,
        "access_or_auth",
        recoverable=False,
    ),
    _pattern(
        r"content[_ ]policy|safety system|flagged as unsafe",
        FailureCategory.PERMISSION,
        _HUMAN,
        "content_policy",
        recoverable=False,
    ),
    _pattern(
        r"context[_ ]length|maximum context|max_tokens|too many tokens|prompt is too long",
        FailureCategory.CAPABILITY,
        RetryStrategy.PARAMETER_ADJUST,
        "context_limit",
    ),
    _pattern(
        r"model not found|unknown model|unsupported model|invalid model|model is not available",
        FailureCategory.CAPABILITY,
        RetryStrategy.ALTERNATIVE_TOOL,
        "model_not_available",
    ),
    _pattern(
        r"\bunsupported\b|not capable|tool not available",
        FailureCategory.CAPABILITY,
        RetryStrategy.ALTERNATIVE_TOOL,
        "capability_unsupported",
    ),
    _pattern(
        r"rate[_ ]limit|too many requests|\b429\b",
        FailureCategory.TRANSIENT,
        RetryStrategy.SAME_APPROACH,
        "rate_limit_transient",
    ),
    _pattern(
        r"\b50[0234]\b|internal server error|bad gateway|service unavailable|gateway timeout",
        FailureCategory.TRANSIENT,
        RetryStrategy.SAME_APPROACH,
        "server_error_transient",
    ),
    _pattern(
        r"timed? ?out|etimedout|econnreset|connection reset|temporarily unavailable|network error",
        FailureCategory.TRANSIENT,
        RetryStrategy.SAME_APPROACH,
        "network_transient",
    ),
)

_CATEGORY_DEFAULTS: dict[FailureCategory, tuple[bool, RetryStrategy]] = {
    FailureCategory.TRANSIENT: (True, RetryStrategy.SAME_APPROACH),
    FailureCategory.RESOURCE: (False, _HUMAN),
    FailureCategory.CAPABILITY: (True, RetryStrategy.ALTERNATIVE_TOOL),
    FailureCategory.PERMISSION: (False, _HUMAN),
    FailureCategory.UNKNOWN: (True, RetryStrategy.SAME_APPROACH),
}


class FailureClassifier:
    """Maps error text to a failure category using an ordered pattern table.

    Patterns registered at runtime take precedence over earlier ones.
    """

    def __init__(self, patterns: tuple[ErrorPattern, ...] = DEFAULT_PATTERNS) -> None:
        self._lock = threading.Lock()
        self._patterns: list[tuple[ErrorPattern, re.Pattern[str]]] = [
            (item, re.compile(item.pattern, re.IGNORECASE)) for item in patterns
        ]

    def register_pattern(self, pattern: ErrorPattern) -> None:
        compiled = re.compile(pattern.pattern, re.IGNORECASE)
        with self._lock:
            self._patterns.insert(0, (pattern, compiled))

    def remove_pattern(self, pattern: str) -> bool:
        with self._lock:
            before = len(self._patterns)
            self._patterns = [item for item in self._patterns if item[0].pattern != pattern]
            return len(self._patterns) != before

    def patterns(self) -> list[ErrorPattern]:
        with self._lock:
            return [item for item, _ in self._patterns]

    def classify(
        self,
        error: str,
        *,
        kind: FailureCategory | None = None,
    ) -> FailureClassification:
        """Classify error text; ``kind`` is used when no pattern matches."""

        with self._lock:
            patterns = list(self._patterns)
        for item, compiled in patterns:
            match = compiled.search(error or "")
            if match is None:
                continue
            return FailureClassification(
                category=item.category,
                recoverable=item.recoverable,
                strategy=item.strategy,
                matched_rule=item.description,
                matched_pattern=match.group(0).lower(),
            )

        category = kind or FailureCategory.UNKNOWN
        recoverable, strategy = _CATEGORY_DEFAULTS[category]
        return FailureClassification(
            category=category,
            recoverable=recoverable,
            strategy=strategy,
            matched_rule="engine_hint" if kind is not None else "fallback_unknown",
            matched_pattern=None,
        )
