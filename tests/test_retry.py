from __future__ import annotations

import random
from dataclasses import replace
from datetime import UTC, datetime

import allure
import pytest

from goal_autopilot.config import RetrySettings
from goal_autopilot.scheduler.models import (
    EffortEstimate,
    EscalationSeverity,
    EscalationType,
    FailureCategory,
    RetryStrategy,
    VerificationStatus,
    WorkItem,
    WorkItemStatus,
    WorkItemType,
)
from goal_autopilot.scheduler.retry import RetryHandler

pytestmark = [
    allure.epic("Goal Scheduler"),
    allure.feature("Retry Strategies"),
]

_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


def _failed_item(**overrides: object) -> WorkItem:
    item = WorkItem(
        work_item_id="w1",
        goal_id="g1",
        title="Implement parser",
        description="",
        item_type=WorkItemType.CODE,
        estimated_effort=EffortEstimate.M,
        estimated_tokens=8_000,
        estimated_cost_usd=0.0,
        status=WorkItemStatus.FAILED,
        priority=50,
        dependencies=(),
        retry_count=1,
        max_retries=3,
        attempted_strategies=(),
        next_strategy=None,
        next_retry_at=None,
        last_error=None,
        last_error_category=None,
        verification_status=VerificationStatus.PENDING,
        skipped=False,
        created_at=_NOW,
        updated_at=_NOW,
    )
    return replace(item, **overrides)


def _handler(**settings: object) -> RetryHandler:
    defaults: dict[str, object] = {
        "max_retries": 3,
        "base_delay_seconds": 1.0,
        "max_delay_seconds": 30.0,
        "jitter_factor": 0.0,
    }
    defaults.update(settings)
    return RetryHandler(settings=RetrySettings(**defaults), rng=random.Random(7))


def test_transient_failure_retries_same_approach() -> None:
    decision = _handler().decide_retry(_failed_item(), "502 bad gateway")

    assert decision.should_retry
    assert decision.strategy == RetryStrategy.SAME_APPROACH
    assert decision.category == FailureCategory.TRANSIENT
    assert decision.delay_seconds == pytest.approx(1.0)


def test_strategies_escalate_past_attempted_ones() -> None:
    handler = _handler()
    item = _failed_item(
        retry_count=2,
        attempted_strategies=(RetryStrategy.SAME_APPROACH,),
    )

    decision = handler.decide_retry(item, "503 service unavailable")

    assert decision.strategy == RetryStrategy.PARAMETER_ADJUST
    assert decision.delay_seconds == pytest.approx(2.0)


def test_capability_failure_starts_with_alternative_tool() -> None:
    item = _failed_item(attempted_strategies=(RetryStrategy.ALTERNATIVE_TOOL,))

    decision = _handler(max_retries=10).decide_retry(
        replace(item, max_retries=10),
        "unsupported model for tool use",
    )

    assert decision.should_retry
    assert decision.strategy == RetryStrategy.MODEL_UPGRADE


def test_all_strategies_attempted_needs_human() -> None:
    item = _failed_item(
        retry_count=2,
        max_retries=10,
        attempted_strategies=(
            RetryStrategy.SAME_APPROACH,
            RetryStrategy.PARAMETER_ADJUST,
            RetryStrategy.ALTERNATIVE_TOOL,
            RetryStrategy.MODEL_UPGRADE,
            RetryStrategy.DECOMPOSE_FURTHER,
        ),
    )

    decision = _handler(max_retries=10).decide_retry(item, "connection reset by peer")

    assert not decision.should_retry
    assert decision.strategy == RetryStrategy.HUMAN_GUIDANCE
    assert decision.escalation_type() == EscalationType.RETRIES_EXHAUSTED


def test_retry_limit_uses_lower_of_item_and_global_limit() -> None:
    handler = _handler(max_retries=2)

    decision = handler.decide_retry(_failed_item(retry_count=2, max_retries=5), "timeout")

    assert not decision.should_retry
    assert decision.strategy == RetryStrategy.HUMAN_GUIDANCE
    assert "retry limit reached (2/2)" in decision.reason
    assert decision.escalation_type() == EscalationType.RETRIES_EXHAUSTED
    assert handler.max_attempts_for(_failed_item(max_retries=1)) == 1


def test_permission_failure_escalates_immediately() -> None:
    decision = _handler().decide_retry(_failed_item(), "403 Forbidden")

    assert not decision.should_retry
    assert decision.escalation_type() == EscalationType.PERMISSION
    assert decision.escalation_severity() == EscalationSeverity.HIGH
    assert decision.to_event_details()["category"] == "permission"


def test_resource_failure_maps_to_resource_escalation() -> None:
    decision = _handler().decide_retry(_failed_item(), "payment required")

    assert decision.escalation_type() == EscalationType.RESOURCE
    assert decision.escalation_severity() == EscalationSeverity.HIGH


@pytest.mark.parametrize("attempt", [0, 1, 2, 3])
def test_delay_stays_within_jitter_bounds(attempt: int) -> None:
    handler = _handler(base_delay_seconds=1.0, max_delay_seconds=100.0, jitter_factor=0.2)
    expected = 2**attempt

    delays = [handler.get_retry_delay(attempt) for _ in range(50)]

    assert all(expected * 0.8 <= delay <= expected * 1.2 for delay in delays)
    assert len(set(delays)) > 1


def test_delay_is_clamped_to_max() -> None:
    handler = _handler(base_delay_seconds=1.0, max_delay_seconds=5.0, jitter_factor=0.5)

    assert all(handler.get_retry_delay(10) == 5.0 for _ in range(20))
