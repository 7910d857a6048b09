"""Budget gate and warning classification for goals."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from goal_autopilot.config import BudgetSettings
from goal_autopilot.scheduler.models import BudgetWarningLevel, EscalationSeverity, Goal

if TYPE_CHECKING:
    from goal_autopilot.scheduler.repository import SchedulerRepository

logger = logging.getLogger(__name__)

DIMENSIONS = ("tokens", "time_seconds", "cost_usd")


@dataclass(slots=True)
class DimensionBudget:
    limit: float | None
    spent: float
    remaining: float | None
    warning_level: BudgetWarningLevel


@dataclass(slots=True)
class BudgetInfo:
    tokens: DimensionBudget
    time_seconds: DimensionBudget
    cost_usd: DimensionBudget

    def dimensions(self) -> list[tuple[str, DimensionBudget]]:
        return [(name, getattr(self, name)) for name in DIMENSIONS]


@dataclass(slots=True)
class BudgetViolation:
    dimension: str
    limit: float
    spent: float


@dataclass(slots=True)
class BudgetCheckResult:
    within_budget: bool
    violations: list[BudgetViolation] = field(default_factory=list)


@dataclass(slots=True)
class BudgetStatus:
    """Point-in-time evaluation; never persisted."""

    goal_id: str
    budget: BudgetInfo
    warning_level: BudgetWarningLevel
    check_result: BudgetCheckResult


@dataclass(slots=True)
class BudgetProjection:
    """Outcome of adding an estimate to current spend."""

    will_exceed: bool
    overage_ratio: float
    allowed: bool
    requires_escalation: bool


class BudgetTracker:
    """Evaluates goal spend against declared limits and records run usage."""

    def __init__(self, *, settings: BudgetSettings, repository: SchedulerRepository) -> None:
        self.settings = settings
        self.repository = repository

    def get_warning_level(self, limit: float | None, spent: float) -> BudgetWarningLevel:
        """Classify spend against a limit; an undefined limit is unconstrained."""

        if limit is None:
            return BudgetWarningLevel.NONE
        if spent >= limit:
            return BudgetWarningLevel.EXCEEDED
        ratio = spent / limit
        if ratio >= self.settings.critical_threshold:
            return BudgetWarningLevel.CRITICAL
        if ratio >= self.settings.warning_threshold:
            return BudgetWarningLevel.WARNING
        return BudgetWarningLevel.NONE

    def get_remaining_budget(self, goal: Goal) -> BudgetInfo:
        return BudgetInfo(
            tokens=self._dimension(goal.budget_tokens, goal.spent_tokens),
            time_seconds=self._dimension(goal.budget_time_seconds, goal.spent_time_seconds),
            cost_usd=self._dimension(goal.budget_cost_usd, goal.spent_cost_usd),
        )

    def check_budget(self, goal: Goal) -> BudgetCheckResult:
        violations = [
            BudgetViolation(dimension=name, limit=dimension.limit, spent=dimension.spent)
            for name, dimension in self.get_remaining_budget(goal).dimensions()
            if dimension.limit is not None
            and dimension.warning_level == BudgetWarningLevel.EXCEEDED
        ]
        return BudgetCheckResult(within_budget=not violations, violations=violations)

    def get_budget_status(self, goal: Goal) -> BudgetStatus:
        budget = self.get_remaining_budget(goal)
        highest = BudgetWarningLevel.NONE
        for _, dimension in budget.dimensions():
            if dimension.warning_level.rank > highest.rank:
                highest = dimension.warning_level
        return BudgetStatus(
            goal_id=goal.goal_id,
            budget=budget,
            warning_level=highest,
            check_result=self.check_budget(goal),
        )

    def will_exceed_budget(
        self,
        goal: Goal,
        estimated_tokens: int,
        estimated_cost_usd: float,
    ) -> bool:
        return self.projected_overage(goal, estimated_tokens, estimated_cost_usd) > 0

    def projected_overage(
        self,
        goal: Goal,
        estimated_tokens: int,
        estimated_cost_usd: float,
    ) -> float:
        """Largest relative overrun of ``spent + estimate`` over a limit, 0 if none."""

        overage = 0.0
        for limit, projected in (
            (goal.budget_tokens, goal.spent_tokens + estimated_tokens),
            (goal.budget_cost_usd, goal.spent_cost_usd + estimated_cost_usd),
        ):
            if limit is None or projected <= limit:
                continue
            if limit <= 0:
                return math.inf
            overage = max(overage, (projected - limit) / limit)
        return overage

    def project(
        self,
        goal: Goal,
        estimated_tokens: int,
        estimated_cost_usd: float,
    ) -> BudgetProjection:
        """Decide whether an estimated dispatch may proceed.

        Continuing past the limit under ``allow_overage`` always requires an
        escalation alongside the dispatch.
        """

        overage = self.projected_overage(goal, estimated_tokens, estimated_cost_usd)
        if overage <= 0:
            return BudgetProjection(
                will_exceed=False,
                overage_ratio=0.0,
                allowed=True,
                requires_escalation=False,
            )
        allowed = self.settings.allow_overage and overage <= self.settings.max_overage_percent
        return BudgetProjection(
            will_exceed=True,
            overage_ratio=overage,
            allowed=allowed,
            requires_escalation=True,
        )

    def record_usage(
        self,
        *,
        goal_id: str,
        run_id: str,
        tokens: int,
        time_seconds: float,
        cost_usd: float,
    ) -> bool:
        """Append one run's usage to goal spend; False if the run was already recorded."""

        if tokens < 0 or time_seconds < 0 or cost_usd < 0:
            raise ValueError(
                "Usage values must be non-negative: "
                f"tokens={tokens} time_seconds={time_seconds} cost_usd={cost_usd}",
            )
        recorded = self.repository.record_usage(
            goal_id=goal_id,
            run_id=run_id,
            tokens=tokens,
            time_seconds=time_seconds,
            cost_usd=cost_usd,
        )
        if not recorded:
            logger.info("Usage for run %s already recorded; skipping", run_id)
        return recorded

    def usage_percentage(self, goal: Goal) -> dict[str, float | None]:
        percentages: dict[str, float | None] = {}
        for name, dimension in self.get_remaining_budget(goal).dimensions():
            if dimension.limit is None:
                percentages[name] = None
            elif dimension.limit <= 0:
                percentages[name] = 100.0
            else:
                percentages[name] = round(dimension.spent / dimension.limit * 100, 1)
        return percentages

    def _dimension(self, limit: float | None, spent: float) -> DimensionBudget:
        return DimensionBudget(
            limit=limit,
            spent=spent,
            remaining=None if limit is None else max(0.0, limit - spent),
            warning_level=self.get_warning_level(limit, spent),
        )


def overage_severity(overage_ratio: float) -> EscalationSeverity:
    """Scale escalation severity with the size of a budget overrun."""

    if overage_ratio <= 0.10:
        return EscalationSeverity.LOW
    if overage_ratio <= 0.25:
        return EscalationSeverity.MEDIUM
    if overage_ratio <= 0.50:
        return EscalationSeverity.HIGH
    return EscalationSeverity.CRITICAL


def format_budget(info: BudgetInfo) -> list[str]:
    lines = []
    for name, dimension in info.dimensions():
        if dimension.limit is None:
            lines.append(f"  {name}: spent={_fmt(dimension.spent)} limit=unlimited")
            continue
        lines.append(
            f"  {name}: spent={_fmt(dimension.spent)} limit={_fmt(dimension.limit)} "
            f"remaining={_fmt(dimension.remaining or 0)} level={dimension.warning_level.value}",
        )
    return lines


def _fmt(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.4f}"
