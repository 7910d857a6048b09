"""Runtime configuration for the scheduler and its decision subsystems."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_COMMAND_TEMPLATE = "claude -p --model {model} -- {prompt}"


@dataclass(slots=True)
class SchedulerSettings:
    """Tick loop and dispatch settings."""

    tick_interval_seconds: float = 1.0
    max_concurrent_goals: int = 5
    max_dispatch_workers: int = 8
    run_timeout_seconds: float = 1_800.0
    abort_grace_seconds: float = 5.0


@dataclass(slots=True)
class BudgetSettings:
    """Budget warning thresholds and overage policy."""

    warning_threshold: float = 0.7
    critical_threshold: float = 0.9
    allow_overage: bool = False
    max_overage_percent: float = 0.1


@dataclass(slots=True)
class RetrySettings:
    """Automatic retry limits and backoff."""

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    jitter_factor: float = 0.2


@dataclass(slots=True)
class TierSettings:
    """Model identifiers for one complexity tier."""

    primary: str
    fallbacks: tuple[str, ...] = ()
    temperature: float = 0.2


@dataclass(slots=True)
class ModelSettings:
    """Tier -> model mapping used by model selection."""

    simple: TierSettings = field(
        default_factory=lambda: TierSettings("claude-haiku-4-5", ("gpt-5.2",), 0.2),
    )
    medium: TierSettings = field(
        default_factory=lambda: TierSettings("claude-sonnet-4-5", ("gpt-5.2",), 0.2),
    )
    complex: TierSettings = field(
        default_factory=lambda: TierSettings("claude-opus-4-5", ("gpt-5.2",), 0.3),
    )


@dataclass(slots=True)
class ExecutionSettings:
    """Command execution engine settings."""

    agent: str = "claude"
    command_template: str = DEFAULT_COMMAND_TEMPLATE
    poll_interval_seconds: float = 0.1
    workdir_root: Path = Path(".goal_autopilot/runs")


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".goal_autopilot.db")
    sqlite_busy_timeout_ms: int = 5_000
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    budget: BudgetSettings = field(default_factory=BudgetSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    models: ModelSettings = field(default_factory=ModelSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        defaults = ModelSettings()
        return cls(
            db_path=db_path or Path(os.getenv("GOAL_AUTOPILOT_DB_PATH", ".goal_autopilot.db")),
            sqlite_busy_timeout_ms=int(os.getenv("GOAL_AUTOPILOT_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            scheduler=SchedulerSettings(
                tick_interval_seconds=float(
                    os.getenv("GOAL_AUTOPILOT_TICK_INTERVAL_SECONDS", "1.0"),
                ),
                max_concurrent_goals=int(os.getenv("GOAL_AUTOPILOT_MAX_CONCURRENT_GOALS", "5")),
                max_dispatch_workers=int(os.getenv("GOAL_AUTOPILOT_MAX_DISPATCH_WORKERS", "8")),
                run_timeout_seconds=float(
                    os.getenv("GOAL_AUTOPILOT_RUN_TIMEOUT_SECONDS", "1800"),
                ),
                abort_grace_seconds=float(os.getenv("GOAL_AUTOPILOT_ABORT_GRACE_SECONDS", "5")),
            ),
            budget=BudgetSettings(
                warning_threshold=float(
                    os.getenv("GOAL_AUTOPILOT_BUDGET_WARNING_THRESHOLD", "0.7"),
                ),
                critical_threshold=float(
                    os.getenv("GOAL_AUTOPILOT_BUDGET_CRITICAL_THRESHOLD", "0.9"),
                ),
                allow_overage=_env_bool("GOAL_AUTOPILOT_BUDGET_ALLOW_OVERAGE", default=False),
                max_overage_percent=float(
                    os.getenv("GOAL_AUTOPILOT_BUDGET_MAX_OVERAGE_PERCENT", "0.1"),
                ),
            ),
            retry=RetrySettings(
                max_retries=int(os.getenv("GOAL_AUTOPILOT_RETRY_MAX_RETRIES", "3")),
                base_delay_seconds=float(
                    os.getenv("GOAL_AUTOPILOT_RETRY_BASE_DELAY_SECONDS", "1.0"),
                ),
                max_delay_seconds=float(
                    os.getenv("GOAL_AUTOPILOT_RETRY_MAX_DELAY_SECONDS", "30.0"),
                ),
                jitter_factor=float(os.getenv("GOAL_AUTOPILOT_RETRY_JITTER_FACTOR", "0.2")),
            ),
            models=ModelSettings(
                simple=_tier_from_env("SIMPLE", defaults.simple),
                medium=_tier_from_env("MEDIUM", defaults.medium),
                complex=_tier_from_env("COMPLEX", defaults.complex),
            ),
            execution=ExecutionSettings(
                agent=os.getenv("GOAL_AUTOPILOT_AGENT", "claude"),
                command_template=os.getenv(
                    "GOAL_AUTOPILOT_COMMAND_TEMPLATE",
                    DEFAULT_COMMAND_TEMPLATE,
                ),
                workdir_root=Path(os.getenv("GOAL_AUTOPILOT_WORKDIR", ".goal_autopilot/runs")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the scheduler cannot run with."""

        if self.scheduler.tick_interval_seconds <= 0:
            raise ValueError("GOAL_AUTOPILOT_TICK_INTERVAL_SECONDS must be > 0.")
        if self.scheduler.max_concurrent_goals <= 0:
            raise ValueError("GOAL_AUTOPILOT_MAX_CONCURRENT_GOALS must be > 0.")
        if self.scheduler.max_dispatch_workers <= 0:
            raise ValueError("GOAL_AUTOPILOT_MAX_DISPATCH_WORKERS must be > 0.")
        if self.scheduler.run_timeout_seconds <= 0:
            raise ValueError("GOAL_AUTOPILOT_RUN_TIMEOUT_SECONDS must be > 0.")
        if not 0 < self.budget.warning_threshold < self.budget.critical_threshold <= 1:
            raise ValueError(
                "Budget thresholds must satisfy 0 < "
                "GOAL_AUTOPILOT_BUDGET_WARNING_THRESHOLD < "
                "GOAL_AUTOPILOT_BUDGET_CRITICAL_THRESHOLD <= 1.",
            )
        if self.budget.max_overage_percent < 0:
            raise ValueError("GOAL_AUTOPILOT_BUDGET_MAX_OVERAGE_PERCENT must be >= 0.")
        if self.retry.max_retries < 0:
            raise ValueError("GOAL_AUTOPILOT_RETRY_MAX_RETRIES must be >= 0.")
        if self.retry.base_delay_seconds < 0 or self.retry.max_delay_seconds < 0:
            raise ValueError("Retry delays must be >= 0.")
        if not 0 <= self.retry.jitter_factor <= 1:
            raise ValueError("GOAL_AUTOPILOT_RETRY_JITTER_FACTOR must be within [0, 1].")
        if "{prompt}" not in self.execution.command_template:
            raise ValueError("GOAL_AUTOPILOT_COMMAND_TEMPLATE must include {prompt}.")


def _tier_from_env(tier: str, default: TierSettings) -> TierSettings:
    primary = os.getenv(f"GOAL_AUTOPILOT_MODEL_{tier}", "").strip() or default.primary
    raw_fallbacks = os.getenv(f"GOAL_AUTOPILOT_MODEL_{tier}_FALLBACK")
    if raw_fallbacks is None:
        fallbacks = default.fallbacks
    else:
        fallbacks = tuple(part.strip() for part in raw_fallbacks.split(",") if part.strip())
    raw_temperature = os.getenv(f"GOAL_AUTOPILOT_MODEL_{tier}_TEMPERATURE")
    try:
        temperature = float(raw_temperature) if raw_temperature else default.temperature
    except ValueError as error:
        raise ValueError(
            f"Invalid GOAL_AUTOPILOT_MODEL_{tier}_TEMPERATURE value: {raw_temperature!r}",
        ) from error
    return TierSettings(primary=primary, fallbacks=fallbacks, temperature=temperature)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
