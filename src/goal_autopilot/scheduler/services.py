"""Use-case services for goal and work-item intake."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field

from goal_autopilot.config import Settings
from goal_autopilot.scheduler.budget import BudgetStatus, BudgetTracker
from goal_autopilot.scheduler.escalation import EscalationHandler
from goal_autopilot.scheduler.events import EventBus
from goal_autopilot.scheduler.lifecycle import TERMINAL_GOAL_STATUSES
from goal_autopilot.scheduler.model_selection import ModelSelection, ModelSelector, TierConfig
from goal_autopilot.scheduler.models import (
    EffortEstimate,
    Escalation,
    Goal,
    GoalCreate,
    GoalStatus,
    Run,
    SuccessCriterion,
    WorkItem,
    WorkItemCreate,
    WorkItemStatus,
    WorkItemType,
)
from goal_autopilot.scheduler.repository import NotFoundError, SqlSchedulerRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CreateGoal:
    """High-level command to register a goal."""

    title: str
    description: str = ""
    priority: int = 50
    success_criteria: tuple[str, ...] = ()
    budget_tokens: int | None = None
    budget_time_seconds: float | None = None
    budget_cost_usd: float | None = None
    goal_id: str | None = None


@dataclass(slots=True)
class AddWorkItem:
    """High-level command to attach a work item to a goal."""

    goal_id: str
    title: str
    description: str = ""
    item_type: str = WorkItemType.CODE.value
    effort: str = EffortEstimate.M.value
    estimated_tokens: int | None = None
    estimated_cost_usd: float = 0.0
    priority: int = 50
    dependencies: tuple[str, ...] = ()
    max_retries: int = 3
    work_item_id: str | None = None


@dataclass(slots=True)
class PlannedGoal:
    goal: Goal
    planning: ModelSelection


@dataclass(slots=True)
class GoalOverview:
    """Everything an operator needs to judge one goal."""

    goal: Goal
    work_items: list[WorkItem]
    runs: dict[str, list[Run]]
    escalations: list[Escalation]
    budget: BudgetStatus
    item_counts: dict[str, int] = field(default_factory=dict)


class GoalService:
    """Goal intake and operator actions that do not need a running scheduler.

    Cancelling from here only flips persisted state; a scheduler running in
    another process notices the cancelled goal on its next tick and aborts
    whatever it still has in flight for it.
    """

    def __init__(
        self,
        *,
        repository: SqlSchedulerRepository,
        settings: Settings,
        events: EventBus | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.events = events or EventBus()
        self.escalations = EscalationHandler(repository, events=self.events)
        self.budget = BudgetTracker(settings=settings.budget, repository=repository)
        self.model_selector = ModelSelector(TierConfig.from_settings(settings.models))

    def create_goal(self, command: CreateGoal) -> PlannedGoal:
        if not command.title.strip():
            raise ValueError("Goal title must not be empty.")
        for name, value in (
            ("budget_tokens", command.budget_tokens),
            ("budget_time_seconds", command.budget_time_seconds),
            ("budget_cost_usd", command.budget_cost_usd),
        ):
            if value is not None and value < 0:
                raise ValueError(f"{name} must be >= 0.")
        goal = self.repository.create_goal(
            GoalCreate(
                title=command.title.strip(),
                description=command.description,
                goal_id=command.goal_id,
                priority=command.priority,
                success_criteria=[
                    SuccessCriterion(description=item) for item in command.success_criteria
                ],
                budget_tokens=command.budget_tokens,
                budget_time_seconds=command.budget_time_seconds,
                budget_cost_usd=command.budget_cost_usd,
            ),
        )
        planning = self.model_selector.select_model_for_planning(goal)
        self.repository.add_event(
            goal_id=goal.goal_id,
            entity_type="goal",
            entity_id=goal.goal_id,
            event_type="planning_model_selected",
            details=planning.to_metadata(),
        )
        logger.info("Goal %s created (planning model %s)", goal.goal_id, planning.model)
        return PlannedGoal(goal=goal, planning=planning)

    def add_work_item(self, command: AddWorkItem) -> WorkItem:
        goal = self._require_goal(command.goal_id)
        if goal.status in TERMINAL_GOAL_STATUSES:
            raise ValueError(f"Goal {goal.goal_id} is {goal.status.value}; cannot add work.")
        try:
            item_type = WorkItemType(command.item_type.strip().lower())
        except ValueError as error:
            raise ValueError(f"Unsupported work item type: {command.item_type!r}") from error
        try:
            effort = EffortEstimate(command.effort.strip().upper())
        except ValueError as error:
            raise ValueError(f"Unsupported effort estimate: {command.effort!r}") from error
        if command.max_retries < 0:
            raise ValueError("max_retries must be >= 0.")
        return self.repository.create_work_item(
            WorkItemCreate(
                goal_id=goal.goal_id,
                title=command.title,
                description=command.description,
                work_item_id=command.work_item_id,
                item_type=item_type,
                estimated_effort=effort,
                estimated_tokens=command.estimated_tokens,
                estimated_cost_usd=command.estimated_cost_usd,
                priority=command.priority,
                dependencies=command.dependencies,
                max_retries=command.max_retries,
            ),
        )

    def submit_goal(self, goal_id: str) -> Goal:
        goal = self._require_goal(goal_id)
        if goal.status != GoalStatus.QUEUED:
            raise ValueError(f"Goal {goal_id} is {goal.status.value}; only queued goals submit.")
        if not self.repository.get_work_items_for_goal(goal_id):
            raise ValueError(f"Goal {goal_id} has no work items.")
        if not self.repository.update_goal_status(
            goal_id=goal_id,
            expected=GoalStatus.QUEUED,
            status=GoalStatus.ACTIVE,
            details={"reason": "submitted"},
        ):
            raise ValueError(f"Goal {goal_id} changed state concurrently; try again.")
        self.events.publish("goal_submitted", goal_id=goal_id)
        return self._require_goal(goal_id)

    def cancel_goal(self, goal_id: str, *, actor: str = "human", reason: str = "cancelled") -> Goal:
        goal = self._require_goal(goal_id)
        if goal.status in TERMINAL_GOAL_STATUSES:
            raise ValueError(f"Goal {goal_id} is already {goal.status.value}.")
        if not self.repository.update_goal_status(
            goal_id=goal_id,
            expected=goal.status,
            status=GoalStatus.CANCELLED,
            details={"actor": actor, "reason": reason},
        ):
            raise ValueError(f"Goal {goal_id} changed state concurrently; try again.")
        for escalation in self.escalations.get_pending_escalations(goal_id):
            self.escalations.dismiss_escalation(
                escalation.escalation_id,
                reason=f"goal cancelled: {reason}",
                actor=actor,
            )
        self.events.publish("goal_cancelled", goal_id=goal_id, actor=actor)
        logger.info("Goal %s cancelled by %s", goal_id, actor)
        return self._require_goal(goal_id)

    def overview(self, goal_id: str) -> GoalOverview:
        goal = self._require_goal(goal_id)
        work_items = self.repository.get_work_items_for_goal(goal_id)
        return GoalOverview(
            goal=goal,
            work_items=work_items,
            runs={
                item.work_item_id: self.repository.get_runs_by_work_item(item.work_item_id)
                for item in work_items
            },
            escalations=self.escalations.list_escalations(goal_id=goal_id),
            budget=self.budget.get_budget_status(goal),
            item_counts=dict(Counter(item.status.value for item in work_items)),
        )

    def list_goals(self, *, status: str | None = None, limit: int = 50) -> list[Goal]:
        statuses = (GoalStatus(status.strip().lower()),) if status else None
        return self.repository.list_goals(statuses=statuses, limit=limit)

    def status_counts(self) -> tuple[dict[str, int], dict[str, int]]:
        """Goal and work item counts by status across the whole database."""

        goals = self.repository.list_goals(limit=1_000_000)
        work_items = self.repository.list_work_items(statuses=tuple(WorkItemStatus))
        return (
            dict(Counter(goal.status.value for goal in goals)),
            dict(Counter(item.status.value for item in work_items)),
        )

    def _require_goal(self, goal_id: str) -> Goal:
        goal = self.repository.get_goal(goal_id)
        if goal is None:
            raise NotFoundError(f"Goal not found: {goal_id}")
        return goal
