"""Quality gate contract applied to work items in ``verify``."""

from __future__ import annotations

from typing import Protocol

from goal_autopilot.scheduler.models import Ok, Result, Run, WorkItem


class VerificationGate(Protocol):
    def verify(self, work_item: WorkItem, run: Run, artifacts: list[str]) -> Result[None]:
        """Return ``Ok`` to accept the run output or ``Err`` with the rejection reason."""


class AcceptAllGate:
    """Default gate: quality checks live outside the scheduler."""

    def verify(
        self,
        work_item: WorkItem,  # noqa: ARG002
        run: Run,  # noqa: ARG002
        artifacts: list[str],  # noqa: ARG002
    ) -> Result[None]:
        return Ok(None)
