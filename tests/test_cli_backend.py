from __future__ import annotations

import shlex
import sys
import threading
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from goal_autopilot.config import ExecutionSettings
from goal_autopilot.scheduler.abort import CancellationHandle
from goal_autopilot.scheduler.backend.base import ExecutionRequest
from goal_autopilot.scheduler.backend.cli_backend import (
    BackendRunError,
    CommandExecutionEngine,
    build_prompt,
    build_run_args,
)
from goal_autopilot.scheduler.model_selection import ModelSelection
from goal_autopilot.scheduler.models import (
    AbortScope,
    EffortEstimate,
    Err,
    FailureCategory,
    ModelTier,
    Ok,
    RetryStrategy,
    VerificationStatus,
    WorkItem,
    WorkItemStatus,
    WorkItemType,
)

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Agent Command Rendering"),
]

_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
_AGENT = f"{shlex.quote(sys.executable)} -m goal_autopilot.scheduler.backend.echo_agent"


def _request(
    *,
    run_id: str = "run-1",
    strategy: RetryStrategy = RetryStrategy.SAME_APPROACH,
    timeout_seconds: float = 30.0,
    **work_item: object,
) -> ExecutionRequest:
    item = WorkItem(
        work_item_id="w1",
        goal_id="g1",
        title="Summarize changelog",
        description="Keep it short",
        item_type=WorkItemType.DOC,
        estimated_effort=EffortEstimate.S,
        estimated_tokens=2_000,
        estimated_cost_usd=0.0,
        status=WorkItemStatus.IN_PROGRESS,
        priority=50,
        dependencies=(),
        retry_count=0,
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
    return ExecutionRequest(
        run_id=run_id,
        goal_id="g1",
        work_item=replace(item, **work_item),
        selection=ModelSelection(
            model="claude-haiku-4-5",
            tier=ModelTier.SIMPLE,
            score=19,
            factors=[],
            fallback_chain=(),
            temperature=0.2,
            reasoning="test",
        ),
        strategy=strategy,
        cancellation=CancellationHandle(AbortScope.RUN, run_id),
        timeout_seconds=timeout_seconds,
    )


def _engine(tmp_path: Path, arguments: str) -> CommandExecutionEngine:
    return CommandExecutionEngine(
        ExecutionSettings(
            command_template=f"{_AGENT} --model {{model}} {arguments} -- {{prompt}}",
            poll_interval_seconds=0.02,
            workdir_root=tmp_path / "runs",
        ),
        grace_seconds=1.0,
    )


def test_build_run_args_quotes_placeholder_values() -> None:
    run_args = build_run_args(
        command_template="agent --model {model} --item {work_item_id} -p {prompt}",
        model="claude-sonnet-4-5",
        prompt='fix "parser"; rm -rf /',
        work_item_id="w 1",
    )

    assert run_args == [
        "agent",
        "--model",
        "claude-sonnet-4-5",
        "--item",
        "w 1",
        "-p",
        'fix "parser"; rm -rf /',
    ]


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        ("agent --model {model}", "{prompt}"),
        ("agent {prompt} {manifest}", "placeholder"),
    ],
)
def test_build_run_args_rejects_bad_templates(template: str, message: str) -> None:
    with pytest.raises(BackendRunError, match=message) as error:
        build_run_args(command_template=template, model="m", prompt="p", work_item_id="w")

    assert error.value.transient is False


def test_build_prompt_adds_strategy_hint_and_last_error() -> None:
    prompt = build_prompt(
        _request(strategy=RetryStrategy.DECOMPOSE_FURTHER, last_error="context too long"),
    )

    assert prompt.splitlines()[0] == "Summarize changelog"
    assert "split the work into smaller steps" in prompt
    assert prompt.endswith("Last error: context too long")
    assert build_prompt(_request()) == "Summarize changelog\n\nKeep it short"


def test_successful_run_reports_usage_and_logs(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("GOAL_AUTOPILOT_LLM_PRICING", "claude:*:1.0:1.0")

    outcome = _engine(tmp_path, "--tokens 321").execute(_request())

    assert isinstance(outcome.result, Ok)
    stdout_path = tmp_path / "runs" / "run-1" / "stdout.log"
    assert outcome.result.value == [str(stdout_path)]
    assert stdout_path.read_text("utf-8").startswith("[claude-haiku-4-5] Summarize changelog")
    assert (tmp_path / "runs" / "run-1" / "stderr.log").exists()
    assert outcome.tokens_used == 321
    assert outcome.cost_usd == pytest.approx(0.000321)
    assert not outcome.timed_out
    assert not outcome.cancelled


def test_failed_run_returns_stderr_tail(tmp_path: Path) -> None:
    outcome = _engine(tmp_path, "--fail 'HTTP 429 rate limit'").execute(_request())

    assert outcome.result == Err(None, "HTTP 429 rate limit")
    assert outcome.tokens_used == 100


def test_missing_executable_is_not_transient(tmp_path: Path) -> None:
    engine = CommandExecutionEngine(
        ExecutionSettings(
            command_template="goal-autopilot-no-such-binary {prompt}",
            workdir_root=tmp_path / "runs",
        ),
    )

    with pytest.raises(BackendRunError, match="Command not found") as error:
        engine.execute(_request())

    assert error.value.transient is False


def test_cancellation_terminates_process(tmp_path: Path) -> None:
    request = _request()
    timer = threading.Timer(
        0.3,
        lambda: request.cancellation.cancel(reason="goal cancelled", actor="alice"),
    )
    timer.start()
    try:
        outcome = _engine(tmp_path, "--sleep 10").execute(request)
    finally:
        timer.cancel()

    assert outcome.cancelled
    assert outcome.result == Err(None, "Run cancelled: goal cancelled")
    assert outcome.time_seconds < 10


def test_timeout_is_transient_failure(tmp_path: Path) -> None:
    outcome = _engine(tmp_path, "--sleep 10").execute(_request(timeout_seconds=0.5))

    assert outcome.timed_out
    assert outcome.result == Err(FailureCategory.TRANSIENT, "Run timed out after 0.5s")
