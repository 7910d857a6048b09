"""Controllers for goal, scheduler and escalation CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from goal_autopilot.config import Settings
from goal_autopilot.scheduler.backend import CommandExecutionEngine
from goal_autopilot.scheduler.budget import format_budget
from goal_autopilot.scheduler.core import SchedulerCore
from goal_autopilot.scheduler.escalation import EscalationHandler
from goal_autopilot.scheduler.metrics import render_snapshot
from goal_autopilot.scheduler.models import (
    Escalation,
    EscalationStatus,
    ResolutionAction,
    WorkItem,
)
from goal_autopilot.scheduler.repository import SqlSchedulerRepository
from goal_autopilot.scheduler.services import AddWorkItem, CreateGoal, GoalService


@dataclass(slots=True)
class GoalCreateCommand:
    """CLI input for goal creation."""

    db_path: Path | None
    title: str
    description: str
    priority: int
    success_criteria: tuple[str, ...]
    budget_tokens: int | None
    budget_time_seconds: float | None
    budget_cost_usd: float | None


@dataclass(slots=True)
class GoalAddItemCommand:
    """CLI input for attaching a work item."""

    db_path: Path | None
    goal_id: str
    title: str
    description: str
    item_type: str
    effort: str
    estimated_tokens: int | None
    estimated_cost_usd: float
    priority: int
    dependencies: tuple[str, ...]
    max_retries: int
    work_item_id: str | None = None


@dataclass(slots=True)
class GoalRefCommand:
    """CLI input for commands addressing one goal."""

    db_path: Path | None
    goal_id: str


@dataclass(slots=True)
class GoalListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class GoalCancelCommand:
    db_path: Path | None
    goal_id: str
    actor: str
    reason: str


@dataclass(slots=True)
class SchedulerRunCommand:
    """CLI input for running the scheduler loop."""

    db_path: Path | None
    max_ticks: int | None
    until_idle: bool
    command_template: str | None = None
    tick_interval_seconds: float | None = None


@dataclass(slots=True)
class EscalationListCommand:
    db_path: Path | None
    goal_id: str | None
    status: str | None
    pending_only: bool
    limit: int


@dataclass(slots=True)
class EscalationAckCommand:
    db_path: Path | None
    escalation_id: str
    actor: str


@dataclass(slots=True)
class EscalationResolveCommand:
    """CLI input for resolving an escalation with an action."""

    db_path: Path | None
    escalation_id: str
    action: str
    resolver: str
    data: tuple[str, ...]


@dataclass(slots=True)
class EscalationDismissCommand:
    db_path: Path | None
    escalation_id: str
    reason: str
    actor: str


@dataclass(slots=True)
class StatusCommand:
    db_path: Path | None


class GoalCliController:
    """Coordinates goal intake, scheduler runs and escalation handling for the CLI."""

    def create_goal(self, command: GoalCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            planned = _service(repository, settings).create_goal(
                CreateGoal(
                    title=command.title,
                    description=command.description,
                    priority=command.priority,
                    success_criteria=command.success_criteria,
                    budget_tokens=command.budget_tokens,
                    budget_time_seconds=command.budget_time_seconds,
                    budget_cost_usd=command.budget_cost_usd,
                ),
            )
        goal = planned.goal
        return [
            f"Goal created: goal_id={goal.goal_id} status={goal.status.value} "
            f"priority={goal.priority}",
            f"Planning model: {planned.planning.model} (tier={planned.planning.tier.value} "
            f"score={planned.planning.score})",
        ]

    def add_work_item(self, command: GoalAddItemCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            work_item = _service(repository, settings).add_work_item(
                AddWorkItem(
                    goal_id=command.goal_id,
                    title=command.title,
                    description=command.description,
                    item_type=command.item_type,
                    effort=command.effort,
                    estimated_tokens=command.estimated_tokens,
                    estimated_cost_usd=command.estimated_cost_usd,
                    priority=command.priority,
                    dependencies=command.dependencies,
                    max_retries=command.max_retries,
                    work_item_id=command.work_item_id,
                ),
            )
        return [
            f"Work item added: work_item_id={work_item.work_item_id} "
            f"goal_id={work_item.goal_id} type={work_item.item_type.value} "
            f"effort={work_item.estimated_effort.value} "
            f"estimated_tokens={work_item.estimated_tokens}",
        ]

    def submit_goal(self, command: GoalRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            goal = _service(repository, settings).submit_goal(command.goal_id)
        return [f"Goal submitted: goal_id={goal.goal_id} status={goal.status.value}"]

    def list_goals(self, command: GoalListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            goals = _service(repository, settings).list_goals(
                status=command.status,
                limit=command.limit,
            )
        lines = [f"Goals: {len(goals)}"]
        for goal in goals:
            lines.append(
                f"  {goal.goal_id} status={goal.status.value} priority={goal.priority} "
                f"spent_tokens={goal.spent_tokens} title={goal.title}",
            )
        return lines

    def show_goal(self, command: GoalRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            overview = _service(repository, settings).overview(command.goal_id)

        goal = overview.goal
        lines = [
            f"Goal: {goal.goal_id}",
            f"Title: {goal.title}",
            f"Status: {goal.status.value}",
            f"Priority: {goal.priority}",
            f"Budget ({overview.budget.warning_level.value}):",
            *format_budget(overview.budget.budget),
        ]
        if goal.success_criteria:
            lines.append("Success criteria:")
            lines.extend(
                f"  [{'x' if item.verified else ' '}] {item.description}"
                for item in goal.success_criteria
            )
        lines.append(f"Work items: {len(overview.work_items)}")
        for work_item in overview.work_items:
            runs = len(overview.runs[work_item.work_item_id])
            lines.append(_work_item_line(work_item, runs=runs))
        lines.append(f"Escalations: {len(overview.escalations)}")
        lines.extend(_escalation_line(escalation) for escalation in overview.escalations)
        return lines

    def cancel_goal(self, command: GoalCancelCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            goal = _service(repository, settings).cancel_goal(
                command.goal_id,
                actor=command.actor,
                reason=command.reason,
            )
        return [f"Goal cancelled: goal_id={goal.goal_id} status={goal.status.value}"]

    def run_scheduler(self, command: SchedulerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.command_template is not None:
            settings.execution.command_template = command.command_template
        if command.tick_interval_seconds is not None:
            settings.scheduler.tick_interval_seconds = command.tick_interval_seconds
        settings.validate()
        with _repository(settings) as repository:
            core = SchedulerCore(
                repository=repository,
                settings=settings,
                engine=CommandExecutionEngine(
                    settings.execution,
                    grace_seconds=settings.scheduler.abort_grace_seconds,
                ),
            )
            snapshot = core.run_loop(max_ticks=command.max_ticks, until_idle=command.until_idle)
            pending = EscalationHandler(repository).get_pending_escalations()

        lines = render_snapshot(snapshot)
        lines.append(f"Pending escalations: {len(pending)}")
        lines.extend(_escalation_line(escalation) for escalation in pending)
        return lines

    def list_escalations(self, command: EscalationListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            handler = EscalationHandler(repository)
            if command.pending_only:
                escalations = handler.get_pending_escalations(command.goal_id)[: command.limit]
            else:
                escalations = handler.list_escalations(
                    goal_id=command.goal_id,
                    statuses=(_parse_escalation_status(command.status),)
                    if command.status
                    else None,
                    limit=command.limit,
                )
        lines = [f"Escalations: {len(escalations)}"]
        lines.extend(_escalation_line(escalation) for escalation in escalations)
        return lines

    def acknowledge_escalation(self, command: EscalationAckCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            escalation = EscalationHandler(repository).acknowledge_escalation(
                command.escalation_id,
                command.actor,
            )
        return [
            f"Escalation acknowledged: {escalation.escalation_id} "
            f"by={escalation.acknowledged_by}",
        ]

    def resolve_escalation(self, command: EscalationResolveCommand) -> list[str]:
        try:
            action = ResolutionAction(command.action.strip().lower())
        except ValueError as error:
            raise ValueError(f"Unsupported resolution action: {command.action!r}") from error
        data = parse_resolution_data(command.data)
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            escalation = EscalationHandler(repository).resolve_escalation(
                command.escalation_id,
                action=action,
                resolver=command.resolver,
                data=data,
            )
        return [
            f"Escalation resolved: {escalation.escalation_id} action={action.value} "
            f"resolver={escalation.resolver}",
            "The resolution is applied on the next scheduler tick.",
        ]

    def dismiss_escalation(self, command: EscalationDismissCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            escalation = EscalationHandler(repository).dismiss_escalation(
                command.escalation_id,
                reason=command.reason,
                actor=command.actor,
            )
        return [f"Escalation dismissed: {escalation.escalation_id} reason={command.reason}"]

    def status(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            goal_counts, item_counts = _service(repository, settings).status_counts()
            stats = EscalationHandler(repository).stats()
        return [
            f"Database: {settings.db_path}",
            f"Goals: {_format_counts(goal_counts)}",
            f"Work items: {_format_counts(item_counts)}",
            f"Escalations: total={stats.total} blocking={stats.blocking} "
            f"{_format_counts(stats.by_status)}",
        ]


def parse_resolution_data(entries: tuple[str, ...]) -> dict[str, Any]:
    """Parse ``key=value`` pairs (values decoded as JSON when possible) or one JSON object."""

    if len(entries) == 1 and entries[0].lstrip().startswith("{"):
        try:
            parsed = json.loads(entries[0])
        except json.JSONDecodeError as error:
            raise ValueError(f"Invalid resolution data JSON: {error}") from error
        if not isinstance(parsed, dict):
            raise ValueError("Resolution data JSON must be an object.")
        return parsed
    data: dict[str, Any] = {}
    for entry in entries:
        key, separator, raw_value = entry.partition("=")
        if not separator or not key.strip():
            raise ValueError(f"Resolution data must look like key=value, got {entry!r}")
        try:
            data[key.strip()] = json.loads(raw_value)
        except json.JSONDecodeError:
            data[key.strip()] = raw_value
    return data


def _service(repository: SqlSchedulerRepository, settings: Settings) -> GoalService:
    return GoalService(repository=repository, settings=settings)


def _parse_escalation_status(value: str) -> EscalationStatus:
    return EscalationStatus(value.strip().lower())


def _work_item_line(work_item: WorkItem, *, runs: int) -> str:
    flags = " skipped" if work_item.skipped else ""
    dependencies = ",".join(work_item.dependencies) or "-"
    return (
        f"  {work_item.work_item_id} status={work_item.status.value}{flags} "
        f"priority={work_item.priority} retries={work_item.retry_count}/{work_item.max_retries} "
        f"runs={runs} deps={dependencies} "
        f"error={work_item.last_error or '-'} title={work_item.title}"
    )


def _escalation_line(escalation: Escalation) -> str:
    target = escalation.work_item_id or escalation.goal_id
    return (
        f"  {escalation.escalation_id} [{escalation.severity.value}] "
        f"{escalation.escalation_type.value} status={escalation.status.value} "
        f"target={target} title={escalation.title}"
    )


def _format_counts(counts: dict[str, int]) -> str:
    if not counts:
        return "none"
    return " ".join(f"{key}={value}" for key, value in sorted(counts.items()))


@contextmanager
def _repository(settings: Settings) -> Iterator[SqlSchedulerRepository]:
    repository = SqlSchedulerRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
