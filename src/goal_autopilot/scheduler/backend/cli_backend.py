"""Subprocess execution engine driven by a command template."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import time
from typing import IO

from goal_autopilot.config import ExecutionSettings
from goal_autopilot.scheduler.abort import TIMEOUT_REASON, CancellationHandle
from goal_autopilot.scheduler.backend.base import ExecutionOutcome, ExecutionRequest
from goal_autopilot.scheduler.models import Err, FailureCategory, Ok, RetryStrategy
from goal_autopilot.scheduler.pricing import estimate_cost_usd
from goal_autopilot.scheduler.usage import extract_usage

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_ERROR_TAIL_CHARS = 500

_STRATEGY_HINTS = {
    RetryStrategy.SAME_APPROACH: "",
    RetryStrategy.PARAMETER_ADJUST: "Previous attempt failed; keep the output smaller and focused.",
    RetryStrategy.ALTERNATIVE_TOOL: "Previous attempt failed; use a different tool or approach.",
    RetryStrategy.MODEL_UPGRADE: "Previous attempt failed; reason step by step before acting.",
    RetryStrategy.DECOMPOSE_FURTHER: "Previous attempt failed; split the work into smaller steps.",
}


class BackendRunError(RuntimeError):
    """Engine could not run the command at all; ``transient`` hints retryability."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CommandExecutionEngine:
    """Render the command template per run and supervise the subprocess."""

    def __init__(self, settings: ExecutionSettings, *, grace_seconds: float = 5.0) -> None:
        self.settings = settings
        self.grace_seconds = grace_seconds

    def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        run_dir = self.settings.workdir_root / request.run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        stdout_path = run_dir / "stdout.log"
        stderr_path = run_dir / "stderr.log"
        run_args = build_run_args(
            command_template=self.settings.command_template,
            model=request.selection.model,
            prompt=build_prompt(request),
            work_item_id=request.work_item.work_item_id,
        )

        env = os.environ.copy()
        env["GOAL_AUTOPILOT_RUN_ID"] = request.run_id
        env["GOAL_AUTOPILOT_GOAL_ID"] = request.goal_id
        env["GOAL_AUTOPILOT_WORK_ITEM_ID"] = request.work_item.work_item_id
        env["GOAL_AUTOPILOT_MODEL"] = request.selection.model
        env["GOAL_AUTOPILOT_STRATEGY"] = request.strategy.value

        started = time.monotonic()
        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out = _run_subprocess(
                    run_args=run_args,
                    env=env,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    timeout_seconds=request.timeout_seconds,
                    cancellation=request.cancellation,
                    poll_interval_seconds=self.settings.poll_interval_seconds,
                    grace_seconds=self.grace_seconds,
                )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"Command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(f"Command failed to start: {error}", transient=True) from error
        elapsed = time.monotonic() - started

        stdout = stdout_path.read_text("utf-8", errors="replace")
        stderr = stderr_path.read_text("utf-8", errors="replace")
        usage = extract_usage(stdout=stdout, stderr=stderr)
        cost = estimate_cost_usd(
            agent=self.settings.agent,
            model=request.selection.model,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
        )
        logger.debug(
            "Run %s exited code=%s tokens=%s (%s) elapsed=%.2fs",
            request.run_id,
            exit_code,
            usage.total_tokens,
            usage.usage_status,
            elapsed,
        )

        cancelled = request.cancellation.is_cancelled and not timed_out
        if cancelled and request.cancellation.reason == TIMEOUT_REASON:
            cancelled, timed_out = False, True
        if timed_out:
            result = Err(
                FailureCategory.TRANSIENT,
                f"Run timed out after {request.timeout_seconds:g}s",
            )
        elif cancelled:
            result = Err(None, f"Run cancelled: {request.cancellation.reason}")
        elif exit_code == 0:
            result = Ok([str(stdout_path)])
        else:
            detail = stderr.strip()[-_ERROR_TAIL_CHARS:] or f"Command exited with code {exit_code}"
            result = Err(None, detail)
        return ExecutionOutcome(
            result=result,
            tokens_used=usage.tokens,
            cost_usd=cost,
            time_seconds=elapsed,
            timed_out=timed_out,
            cancelled=cancelled,
        )


def build_prompt(request: ExecutionRequest) -> str:
    work_item = request.work_item
    parts = [work_item.title]
    if work_item.description:
        parts.append(work_item.description)
    hint = _STRATEGY_HINTS.get(request.strategy, "")
    if hint:
        parts.append(hint)
    if work_item.last_error:
        parts.append(f"Last error: {work_item.last_error}")
    return "\n\n".join(parts)


def build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    work_item_id: str,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("Command template is empty.", transient=False)
    if "{prompt}" not in stripped:
        raise BackendRunError("Command template must include {prompt}.", transient=False)
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            work_item_id=shlex.quote(work_item_id),
        )
    except KeyError as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error
    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError("Command template rendered empty command.", transient=False)
    return argv


def _run_subprocess(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    timeout_seconds: float,
    cancellation: CancellationHandle,
    poll_interval_seconds: float,
    grace_seconds: float,
) -> tuple[int, bool]:
    """Return ``(exit_code, timed_out)``; cancellation terminates the process."""

    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    started = time.monotonic()
    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False
        if time.monotonic() - started >= timeout_seconds:
            _terminate_process(process, grace_seconds)
            return TIMEOUT_EXIT_CODE, True
        if cancellation.wait(poll_interval_seconds):
            _terminate_process(process, grace_seconds)
            return process.returncode if process.returncode is not None else -1, False


def _terminate_process(process: subprocess.Popen[str], grace_seconds: float) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=max(grace_seconds, 0.1))
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
