"""CLI entrypoint for goal-autopilot."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from goal_autopilot import __version__
from goal_autopilot.scheduler.controllers import (
    EscalationAckCommand,
    EscalationDismissCommand,
    EscalationListCommand,
    EscalationResolveCommand,
    GoalAddItemCommand,
    GoalCancelCommand,
    GoalCliController,
    GoalCreateCommand,
    GoalListCommand,
    GoalRefCommand,
    SchedulerRunCommand,
    StatusCommand,
)
from goal_autopilot.scheduler.escalation import EscalationNotFoundError, EscalationStateError
from goal_autopilot.scheduler.lifecycle import InvalidTransitionError
from goal_autopilot.scheduler.repository import NotFoundError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = GoalCliController()

CommandT = TypeVar("CommandT")

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path (defaults to GOAL_AUTOPILOT_DB_PATH).",
)


@click.group()
@click.version_option(version=__version__, prog_name="goal-autopilot")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def goal_autopilot(verbose: bool) -> None:
    """Autonomous goal orchestration with budgets, retries and escalations."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@goal_autopilot.group()
def goal() -> None:
    """Goal intake commands."""


@goal.command("create")
@_DB_PATH_OPTION
@click.option("--title", required=True, help="Goal title.")
@click.option("--description", default="", help="Goal description.")
@click.option(
    "--priority",
    type=click.IntRange(min=0, max=100),
    default=50,
    show_default=True,
    help="Scheduling priority; higher runs first.",
)
@click.option(
    "--criterion",
    "success_criteria",
    multiple=True,
    help="Success criterion. Can be repeated.",
)
@click.option("--budget-tokens", type=click.IntRange(min=0), default=None, help="Token budget.")
@click.option(
    "--budget-time",
    "budget_time_seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Wall-clock budget in seconds.",
)
@click.option(
    "--budget-cost",
    "budget_cost_usd",
    type=click.FloatRange(min=0),
    default=None,
    help="Cost budget in USD.",
)
def goal_create(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    description: str,
    priority: int,
    success_criteria: tuple[str, ...],
    budget_tokens: int | None,
    budget_time_seconds: float | None,
    budget_cost_usd: float | None,
) -> None:
    """Create a queued goal."""

    _emit(
        CONTROLLER.create_goal,
        GoalCreateCommand(
            db_path=db_path,
            title=title,
            description=description,
            priority=priority,
            success_criteria=success_criteria,
            budget_tokens=budget_tokens,
            budget_time_seconds=budget_time_seconds,
            budget_cost_usd=budget_cost_usd,
        ),
    )


@goal.command("add-item")
@_DB_PATH_OPTION
@click.option("--goal-id", required=True, help="Goal id.")
@click.option("--title", required=True, help="Work item title.")
@click.option("--description", default="", help="Work item description.")
@click.option(
    "--type",
    "item_type",
    type=click.Choice(["code", "test", "doc", "refactor", "analysis"], case_sensitive=False),
    default="code",
    show_default=True,
)
@click.option(
    "--effort",
    type=click.Choice(["S", "M", "L", "XL"], case_sensitive=False),
    default="M",
    show_default=True,
)
@click.option(
    "--estimated-tokens",
    type=click.IntRange(min=0),
    default=None,
    help="Token estimate; defaults from effort.",
)
@click.option(
    "--estimated-cost",
    "estimated_cost_usd",
    type=click.FloatRange(min=0),
    default=0.0,
    show_default=True,
)
@click.option("--priority", type=click.IntRange(min=0, max=100), default=50, show_default=True)
@click.option(
    "--depends-on",
    "dependencies",
    multiple=True,
    help="Work item id this item depends on. Can be repeated.",
)
@click.option("--max-retries", type=click.IntRange(min=0), default=3, show_default=True)
@click.option("--work-item-id", default=None, help="Explicit work item id.")
def goal_add_item(  # noqa: PLR0913
    db_path: Path | None,
    goal_id: str,
    title: str,
    description: str,
    item_type: str,
    effort: str,
    estimated_tokens: int | None,
    estimated_cost_usd: float,
    priority: int,
    dependencies: tuple[str, ...],
    max_retries: int,
    work_item_id: str | None,
) -> None:
    """Attach a work item to a goal."""

    _emit(
        CONTROLLER.add_work_item,
        GoalAddItemCommand(
            db_path=db_path,
            goal_id=goal_id,
            title=title,
            description=description,
            item_type=item_type,
            effort=effort,
            estimated_tokens=estimated_tokens,
            estimated_cost_usd=estimated_cost_usd,
            priority=priority,
            dependencies=dependencies,
            max_retries=max_retries,
            work_item_id=work_item_id,
        ),
    )


@goal.command("submit")
@_DB_PATH_OPTION
@click.option("--goal-id", required=True, help="Goal id.")
def goal_submit(db_path: Path | None, goal_id: str) -> None:
    """Activate a queued goal for scheduling."""

    _emit(CONTROLLER.submit_goal, GoalRefCommand(db_path=db_path, goal_id=goal_id))


@goal.command("list")
@_DB_PATH_OPTION
@click.option(
    "--status",
    type=click.Choice(
        ["queued", "active", "blocked", "completed", "cancelled"],
        case_sensitive=False,
    ),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max goals to print.",
)
def goal_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List goals, newest first."""

    _emit(CONTROLLER.list_goals, GoalListCommand(db_path=db_path, status=status, limit=limit))


@goal.command("show")
@_DB_PATH_OPTION
@click.option("--goal-id", required=True, help="Goal id.")
def goal_show(db_path: Path | None, goal_id: str) -> None:
    """Show one goal with budget, work items and escalations."""

    _emit(CONTROLLER.show_goal, GoalRefCommand(db_path=db_path, goal_id=goal_id))


@goal.command("cancel")
@_DB_PATH_OPTION
@click.option("--goal-id", required=True, help="Goal id.")
@click.option("--actor", default="human", show_default=True)
@click.option("--reason", default="cancelled", show_default=True)
def goal_cancel(db_path: Path | None, goal_id: str, actor: str, reason: str) -> None:
    """Cancel a goal; a running scheduler aborts its in-flight runs."""

    _emit(
        CONTROLLER.cancel_goal,
        GoalCancelCommand(db_path=db_path, goal_id=goal_id, actor=actor, reason=reason),
    )


@goal_autopilot.group()
def scheduler() -> None:
    """Scheduler loop commands."""


@scheduler.command("run")
@_DB_PATH_OPTION
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many ticks.",
)
@click.option(
    "--until-idle/--forever",
    default=False,
    show_default=True,
    help="Stop once nothing can progress without a human decision.",
)
@click.option(
    "--command-template",
    default=None,
    help="Agent command template with {model}, {prompt} and {work_item_id} placeholders.",
)
@click.option(
    "--tick-interval",
    "tick_interval_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds between ticks.",
)
def scheduler_run(
    db_path: Path | None,
    max_ticks: int | None,
    until_idle: bool,
    command_template: str | None,
    tick_interval_seconds: float | None,
) -> None:
    """Run the scheduler loop until stopped, idle or the tick cap."""

    _emit(
        CONTROLLER.run_scheduler,
        SchedulerRunCommand(
            db_path=db_path,
            max_ticks=max_ticks,
            until_idle=until_idle,
            command_template=command_template,
            tick_interval_seconds=tick_interval_seconds,
        ),
    )


@goal_autopilot.group()
def escalation() -> None:
    """Human escalation commands."""


@escalation.command("list")
@_DB_PATH_OPTION
@click.option("--goal-id", default=None, help="Optional goal filter.")
@click.option(
    "--status",
    type=click.Choice(["open", "acknowledged", "resolved", "dismissed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--pending/--all",
    "pending_only",
    default=True,
    show_default=True,
    help="Only open and acknowledged escalations, most severe first.",
)
@click.option("--limit", type=click.IntRange(min=1, max=500), default=50, show_default=True)
def escalation_list(
    db_path: Path | None,
    goal_id: str | None,
    status: str | None,
    pending_only: bool,
    limit: int,
) -> None:
    """List escalations."""

    _emit(
        CONTROLLER.list_escalations,
        EscalationListCommand(
            db_path=db_path,
            goal_id=goal_id,
            status=status,
            pending_only=pending_only and status is None,
            limit=limit,
        ),
    )


@escalation.command("ack")
@_DB_PATH_OPTION
@click.option("--escalation-id", required=True, help="Escalation id.")
@click.option("--actor", default="human", show_default=True)
def escalation_ack(db_path: Path | None, escalation_id: str, actor: str) -> None:
    """Acknowledge an escalation; it keeps blocking its goal."""

    _emit(
        CONTROLLER.acknowledge_escalation,
        EscalationAckCommand(db_path=db_path, escalation_id=escalation_id, actor=actor),
    )


@escalation.command("resolve")
@_DB_PATH_OPTION
@click.option("--escalation-id", required=True, help="Escalation id.")
@click.option(
    "--action",
    type=click.Choice(
        ["retry", "skip", "abort", "modify_and_retry", "alternative_approach"],
        case_sensitive=False,
    ),
    required=True,
)
@click.option("--resolver", default="human", show_default=True)
@click.option(
    "--data",
    multiple=True,
    help="Resolution data as key=value (repeatable) or a single JSON object.",
)
def escalation_resolve(
    db_path: Path | None,
    escalation_id: str,
    action: str,
    resolver: str,
    data: tuple[str, ...],
) -> None:
    """Resolve an escalation with an action applied on the next tick.

    Examples of data: `budget_tokens=50000`, `description="narrower scope"`,
    `strategy=model_upgrade`.
    """

    _emit(
        CONTROLLER.resolve_escalation,
        EscalationResolveCommand(
            db_path=db_path,
            escalation_id=escalation_id,
            action=action,
            resolver=resolver,
            data=data,
        ),
    )


@escalation.command("dismiss")
@_DB_PATH_OPTION
@click.option("--escalation-id", required=True, help="Escalation id.")
@click.option("--reason", required=True, help="Why the escalation needs no action.")
@click.option("--actor", default="human", show_default=True)
def escalation_dismiss(db_path: Path | None, escalation_id: str, reason: str, actor: str) -> None:
    """Dismiss an escalation without a resolution action."""

    _emit(
        CONTROLLER.dismiss_escalation,
        EscalationDismissCommand(
            db_path=db_path,
            escalation_id=escalation_id,
            reason=reason,
            actor=actor,
        ),
    )


@goal_autopilot.command("status")
@_DB_PATH_OPTION
def status(db_path: Path | None) -> None:
    """Show goal, work item and escalation counts."""

    _emit(CONTROLLER.status, StatusCommand(db_path=db_path))


def _emit(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except (
        NotFoundError,
        EscalationNotFoundError,
        EscalationStateError,
        InvalidTransitionError,
        ValueError,
    ) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    goal_autopilot()
