"""Execution engine implementations."""

from goal_autopilot.scheduler.backend.base import (
    ExecutionEngine,
    ExecutionOutcome,
    ExecutionRequest,
)
from goal_autopilot.scheduler.backend.cli_backend import BackendRunError, CommandExecutionEngine

__all__ = [
    "BackendRunError",
    "CommandExecutionEngine",
    "ExecutionEngine",
    "ExecutionOutcome",
    "ExecutionRequest",
]
