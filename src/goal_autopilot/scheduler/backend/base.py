"""Execution engine contract consumed by the scheduler."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from goal_autopilot.scheduler.abort import CancellationHandle
from goal_autopilot.scheduler.model_selection import ModelSelection
from goal_autopilot.scheduler.models import Result, RetryStrategy, WorkItem


@dataclass(slots=True)
class ExecutionRequest:
    """Inputs required to execute one run of a work item."""

    run_id: str
    goal_id: str
    work_item: WorkItem
    selection: ModelSelection
    strategy: RetryStrategy
    cancellation: CancellationHandle
    timeout_seconds: float
    remaining_tokens: int | None = None
    remaining_cost_usd: float | None = None


@dataclass(slots=True)
class ExecutionOutcome:
    """Outcome envelope; ``result`` carries artifacts or the error."""

    result: Result[list[str]]
    tokens_used: int = 0
    cost_usd: float = 0.0
    time_seconds: float = 0.0
    timed_out: bool = False
    cancelled: bool = False


class ExecutionEngine(Protocol):
    """Protocol implemented by execution engines."""

    def execute(self, request: ExecutionRequest) -> ExecutionOutcome:
        """Run one attempt, honoring ``request.cancellation``."""
