"""Complexity scoring and model tier selection for goals and work items."""

from __future__ import annotations

from dataclasses import dataclass

from goal_autopilot.config import ModelSettings, TierSettings
from goal_autopilot.scheduler.models import (
    EffortEstimate,
    Goal,
    ModelTier,
    RetryStrategy,
    WorkItem,
    WorkItemType,
)

SIMPLE_TIER_MAX_SCORE = 35
MEDIUM_TIER_MAX_SCORE = 65

_ITEM_TYPE_VALUES = {
    WorkItemType.DOC: 20,
    WorkItemType.TEST: 40,
    WorkItemType.REFACTOR: 50,
    WorkItemType.CODE: 60,
    WorkItemType.ANALYSIS: 70,
}
_EFFORT_VALUES = {
    EffortEstimate.S: 20,
    EffortEstimate.M: 50,
    EffortEstimate.L: 75,
    EffortEstimate.XL: 100,
}
_TIER_ORDER = (ModelTier.SIMPLE, ModelTier.MEDIUM, ModelTier.COMPLEX)


@dataclass(slots=True)
class ComplexityFactor:
    name: str
    weight: float
    value: int
    contribution: float


@dataclass(slots=True)
class ComplexityScore:
    score: int
    tier: ModelTier
    factors: list[ComplexityFactor]


@dataclass(slots=True)
class ModelSelection:
    """Resolved model choice with the factors that produced it."""

    model: str
    tier: ModelTier
    score: int
    factors: list[ComplexityFactor]
    fallback_chain: tuple[str, ...]
    temperature: float
    reasoning: str

    def to_metadata(self) -> dict[str, object]:
        return {
            "model": self.model,
            "tier": self.tier.value,
            "score": self.score,
            "fallback_chain": list(self.fallback_chain),
            "temperature": self.temperature,
            "factors": {factor.name: factor.value for factor in self.factors},
        }


@dataclass(slots=True)
class TierConfig:
    """Validated tier -> model mapping."""

    tiers: dict[ModelTier, TierSettings]

    @classmethod
    def from_settings(cls, settings: ModelSettings) -> TierConfig:
        tiers = {
            ModelTier.SIMPLE: settings.simple,
            ModelTier.MEDIUM: settings.medium,
            ModelTier.COMPLEX: settings.complex,
        }
        for tier, tier_settings in tiers.items():
            if not tier_settings.primary.strip():
                raise ValueError(f"Empty primary model id for tier={tier.value!r}")
            if any(not model.strip() for model in tier_settings.fallbacks):
                raise ValueError(f"Empty fallback model id for tier={tier.value!r}")
        return cls(tiers=tiers)


def score_goal(goal: Goal) -> ComplexityScore:
    description_length = len(goal.description)
    criteria_count = len(goal.success_criteria)
    budget_tokens = goal.budget_tokens or 0
    return _build_score(
        [
            _factor(
                "description_length",
                0.40,
                _length_band(description_length),
            ),
            _factor(
                "success_criteria",
                0.30,
                _band(criteria_count, ((1, 20), (3, 50), (5, 75)), 100, inclusive=True),
            ),
            _factor("priority", 0.20, _clamp_priority(goal.priority)),
            _factor(
                "budget_tokens",
                0.10,
                _band(budget_tokens, ((10_000, 20), (50_000, 50), (100_000, 75)), 100),
            ),
        ],
    )


def score_work_item(work_item: WorkItem) -> ComplexityScore:
    dependency_count = len(work_item.dependencies)
    if dependency_count == 0:
        dependency_value = 0
    else:
        dependency_value = _band(dependency_count, ((2, 30), (4, 60)), 100, inclusive=True)
    retry_value = {0: 0, 1: 50}.get(work_item.retry_count, 100)
    return _build_score(
        [
            _factor("item_type", 0.25, _ITEM_TYPE_VALUES[work_item.item_type]),
            _factor("estimated_effort", 0.30, _EFFORT_VALUES[work_item.estimated_effort]),
            _factor("dependencies", 0.15, dependency_value),
            _factor("description_length", 0.15, _length_band(len(work_item.description))),
            _factor("priority", 0.10, _clamp_priority(work_item.priority)),
            _factor("retry_count", 0.05, retry_value),
        ],
    )


def tier_for_score(score: float) -> ModelTier:
    if score <= SIMPLE_TIER_MAX_SCORE:
        return ModelTier.SIMPLE
    if score <= MEDIUM_TIER_MAX_SCORE:
        return ModelTier.MEDIUM
    return ModelTier.COMPLEX


def upgrade_tier(tier: ModelTier) -> ModelTier:
    """Next tier up; the complex tier stays where it is."""

    index = _TIER_ORDER.index(tier)
    return _TIER_ORDER[min(index + 1, len(_TIER_ORDER) - 1)]


class ModelSelector:
    """Maps complexity scores to configured models.

    Pure function of the input entity and the injected tier configuration.
    """

    def __init__(self, config: TierConfig) -> None:
        self.config = config

    def select_model(
        self,
        work_item: WorkItem,
        *,
        strategy: RetryStrategy | None = None,
    ) -> ModelSelection:
        """Pick a model for one work item run.

        ``model_upgrade`` moves to the next tier's primary model and
        ``alternative_tool`` switches to the first fallback of the scored tier.
        """

        complexity = score_work_item(work_item)
        tier = complexity.tier
        if strategy == RetryStrategy.MODEL_UPGRADE:
            tier = upgrade_tier(tier)
        selection = self._selection(work_item.title, complexity, tier)
        if strategy == RetryStrategy.ALTERNATIVE_TOOL and selection.fallback_chain:
            selection.model = selection.fallback_chain[0]
            selection.fallback_chain = selection.fallback_chain[1:]
        return selection

    def select_model_for_planning(self, goal: Goal) -> ModelSelection:
        complexity = score_goal(goal)
        return self._selection(goal.title, complexity, complexity.tier)

    def _selection(
        self,
        title: str,
        complexity: ComplexityScore,
        tier: ModelTier,
    ) -> ModelSelection:
        tier_settings = self.config.tiers[tier]
        return ModelSelection(
            model=tier_settings.primary,
            tier=tier,
            score=complexity.score,
            factors=complexity.factors,
            fallback_chain=tier_settings.fallbacks,
            temperature=tier_settings.temperature,
            reasoning=_build_reasoning(title, complexity, tier),
        )


def _build_score(factors: list[ComplexityFactor]) -> ComplexityScore:
    total = sum(factor.contribution for factor in factors)
    return ComplexityScore(score=round(total), tier=tier_for_score(total), factors=factors)


def _factor(name: str, weight: float, value: int) -> ComplexityFactor:
    return ComplexityFactor(name=name, weight=weight, value=value, contribution=value * weight)


def _length_band(length: int) -> int:
    return _band(length, ((100, 20), (500, 50), (1_000, 75)), 100)


def _band(
    value: int,
    bands: tuple[tuple[int, int], ...],
    top: int,
    *,
    inclusive: bool = False,
) -> int:
    for limit, band_value in bands:
        if value < limit or (inclusive and value == limit):
            return band_value
    return top


def _clamp_priority(priority: int) -> int:
    return min(100, max(0, priority))


def _build_reasoning(title: str, complexity: ComplexityScore, tier: ModelTier) -> str:
    top_factors = sorted(complexity.factors, key=lambda factor: factor.contribution, reverse=True)
    summary = ", ".join(f"{factor.name}={factor.value}" for factor in top_factors[:3])
    text = (
        f'"{title}" scored {complexity.score}/100 ({complexity.tier.value} tier). '
        f"Key factors: {summary}"
    )
    if tier != complexity.tier:
        text += f". Upgraded to {tier.value} tier for retry"
    return text
