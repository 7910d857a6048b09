"""Transition tables for goal, work item and run statuses."""

from __future__ import annotations

from enum import Enum

from goal_autopilot.scheduler.models import GoalStatus, RunStatus, WorkItemStatus

GOAL_TRANSITIONS: dict[GoalStatus, frozenset[GoalStatus]] = {
    GoalStatus.QUEUED: frozenset({GoalStatus.ACTIVE, GoalStatus.CANCELLED}),
    GoalStatus.ACTIVE: frozenset(
        {GoalStatus.BLOCKED, GoalStatus.COMPLETED, GoalStatus.CANCELLED},
    ),
    GoalStatus.BLOCKED: frozenset({GoalStatus.ACTIVE, GoalStatus.CANCELLED}),
    GoalStatus.COMPLETED: frozenset(),
    GoalStatus.CANCELLED: frozenset(),
}

WORK_ITEM_TRANSITIONS: dict[WorkItemStatus, frozenset[WorkItemStatus]] = {
    WorkItemStatus.QUEUED: frozenset({WorkItemStatus.READY, WorkItemStatus.BLOCKED}),
    WorkItemStatus.READY: frozenset({WorkItemStatus.IN_PROGRESS, WorkItemStatus.BLOCKED}),
    WorkItemStatus.IN_PROGRESS: frozenset(
        {WorkItemStatus.VERIFY, WorkItemStatus.FAILED, WorkItemStatus.BLOCKED},
    ),
    WorkItemStatus.VERIFY: frozenset({WorkItemStatus.DONE, WorkItemStatus.FAILED}),
    WorkItemStatus.DONE: frozenset(),
    WorkItemStatus.FAILED: frozenset({WorkItemStatus.READY, WorkItemStatus.BLOCKED}),
    WorkItemStatus.BLOCKED: frozenset({WorkItemStatus.READY}),
}

RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.RUNNING: frozenset(
        {RunStatus.SUCCESS, RunStatus.FAILURE, RunStatus.TIMEOUT, RunStatus.ABORTED},
    ),
    RunStatus.SUCCESS: frozenset(),
    RunStatus.FAILURE: frozenset(),
    RunStatus.TIMEOUT: frozenset(),
    RunStatus.ABORTED: frozenset(),
}

TERMINAL_GOAL_STATUSES = frozenset({GoalStatus.COMPLETED, GoalStatus.CANCELLED})
TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.SUCCESS, RunStatus.FAILURE, RunStatus.TIMEOUT, RunStatus.ABORTED},
)

_TABLES: dict[type[Enum], dict] = {
    GoalStatus: GOAL_TRANSITIONS,
    WorkItemStatus: WORK_ITEM_TRANSITIONS,
    RunStatus: RUN_TRANSITIONS,
}

AnyStatus = GoalStatus | WorkItemStatus | RunStatus


class InvalidTransitionError(RuntimeError):
    """Attempted status change that the transition table does not allow."""

    def __init__(self, from_status: AnyStatus, to_status: AnyStatus) -> None:
        super().__init__(
            f"Invalid transition {type(from_status).__name__}: "
            f"{from_status.value} -> {to_status.value}",
        )
        self.from_status = from_status
        self.to_status = to_status


def can_transition(from_status: AnyStatus, to_status: AnyStatus) -> bool:
    """Return True when the table for ``from_status`` lists ``to_status``.

    Statuses of different entity kinds never transition into each other.
    """

    if type(from_status) is not type(to_status):
        return False
    table = _TABLES.get(type(from_status))
    if table is None:
        return False
    return to_status in table.get(from_status, frozenset())


def require_transition(from_status: AnyStatus, to_status: AnyStatus) -> None:
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status)


def allowed_transitions(status: AnyStatus) -> frozenset:
    table = _TABLES.get(type(status))
    if table is None:
        return frozenset()
    return table.get(status, frozenset())


def is_terminal(status: AnyStatus) -> bool:
    return not allowed_transitions(status)
