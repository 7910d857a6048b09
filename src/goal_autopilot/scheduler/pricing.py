"""Run cost estimation from configured per-model pricing."""

from __future__ import annotations

import os
from dataclasses import dataclass

PRICING_ENV = "GOAL_AUTOPILOT_LLM_PRICING"


@dataclass(slots=True)
class ModelPricing:
    """USD per 1M input/output tokens."""

    input_per_1m: float
    output_per_1m: float


def estimate_cost_usd(
    *,
    agent: str,
    model: str,
    prompt_tokens: int | None,
    completion_tokens: int | None,
    total_tokens: int | None,
    raw_pricing: str | None = None,
) -> float:
    """Estimated cost; 0.0 when no pricing entry matches or usage is unknown."""

    mapping = parse_pricing(os.getenv(PRICING_ENV, "") if raw_pricing is None else raw_pricing)
    agent_key = agent.strip().lower()
    pricing = (
        mapping.get((agent_key, model.strip()))
        or mapping.get((agent_key, "*"))
        or mapping.get(("*", "*"))
    )
    if pricing is None:
        return 0.0
    if prompt_tokens is not None and completion_tokens is not None:
        return (
            prompt_tokens * pricing.input_per_1m + completion_tokens * pricing.output_per_1m
        ) / 1_000_000
    if total_tokens is not None:
        average = (pricing.input_per_1m + pricing.output_per_1m) / 2
        return total_tokens * average / 1_000_000
    return 0.0


def parse_pricing(raw: str) -> dict[tuple[str, str], ModelPricing]:
    """Parse ``agent:model:input_per_1m:output_per_1m`` entries separated by commas.

    ``*`` is accepted as agent or model wildcard; malformed entries are ignored.
    """

    parsed: dict[tuple[str, str], ModelPricing] = {}
    for entry in raw.split(","):
        parts = [part.strip() for part in entry.strip().split(":")]
        if len(parts) != 4:  # noqa: PLR2004
            continue
        agent, model, input_price, output_price = parts
        try:
            parsed[(agent.lower(), model)] = ModelPricing(
                input_per_1m=float(input_price),
                output_per_1m=float(output_price),
            )
        except ValueError:
            continue
    return parsed
