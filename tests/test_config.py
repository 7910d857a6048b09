from __future__ import annotations

from pathlib import Path

import allure
import pytest

from goal_autopilot.config import (
    DEFAULT_COMMAND_TEMPLATE,
    BudgetSettings,
    ExecutionSettings,
    RetrySettings,
    SchedulerSettings,
    Settings,
)

pytestmark = [
    allure.epic("Goal Scheduler"),
    allure.feature("Configuration"),
]


def test_from_env_defaults(monkeypatch) -> None:
    for name in (
        "GOAL_AUTOPILOT_DB_PATH",
        "GOAL_AUTOPILOT_TICK_INTERVAL_SECONDS",
        "GOAL_AUTOPILOT_BUDGET_ALLOW_OVERAGE",
        "GOAL_AUTOPILOT_MODEL_SIMPLE",
        "GOAL_AUTOPILOT_MODEL_SIMPLE_FALLBACK",
        "GOAL_AUTOPILOT_COMMAND_TEMPLATE",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".goal_autopilot.db")
    assert settings.scheduler.tick_interval_seconds == 1.0
    assert settings.budget.allow_overage is False
    assert settings.models.simple.primary == "claude-haiku-4-5"
    assert settings.models.simple.fallbacks == ("gpt-5.2",)
    assert settings.execution.command_template == DEFAULT_COMMAND_TEMPLATE
    settings.validate()


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("GOAL_AUTOPILOT_TICK_INTERVAL_SECONDS", "0.25")
    monkeypatch.setenv("GOAL_AUTOPILOT_MAX_CONCURRENT_GOALS", "2")
    monkeypatch.setenv("GOAL_AUTOPILOT_BUDGET_ALLOW_OVERAGE", "yes")
    monkeypatch.setenv("GOAL_AUTOPILOT_BUDGET_MAX_OVERAGE_PERCENT", "0.3")
    monkeypatch.setenv("GOAL_AUTOPILOT_RETRY_MAX_RETRIES", "5")
    monkeypatch.setenv("GOAL_AUTOPILOT_MODEL_COMPLEX", "gpt-5.2-pro")
    monkeypatch.setenv("GOAL_AUTOPILOT_MODEL_COMPLEX_FALLBACK", "claude-opus-4-5, ,gpt-5.2")
    monkeypatch.setenv("GOAL_AUTOPILOT_MODEL_COMPLEX_TEMPERATURE", "0.7")
    monkeypatch.setenv("GOAL_AUTOPILOT_COMMAND_TEMPLATE", "agent {prompt}")

    settings = Settings.from_env(db_path=tmp_path / "override.db")

    assert settings.db_path == tmp_path / "override.db"
    assert settings.scheduler.tick_interval_seconds == 0.25
    assert settings.scheduler.max_concurrent_goals == 2
    assert settings.budget.allow_overage is True
    assert settings.budget.max_overage_percent == 0.3
    assert settings.retry.max_retries == 5
    assert settings.models.complex.primary == "gpt-5.2-pro"
    assert settings.models.complex.fallbacks == ("claude-opus-4-5", "gpt-5.2")
    assert settings.models.complex.temperature == 0.7
    assert settings.execution.command_template == "agent {prompt}"


def test_from_env_rejects_invalid_boolean(monkeypatch) -> None:
    monkeypatch.setenv("GOAL_AUTOPILOT_BUDGET_ALLOW_OVERAGE", "sometimes")

    with pytest.raises(ValueError, match="Invalid boolean value"):
        Settings.from_env()


def test_from_env_rejects_invalid_temperature(monkeypatch) -> None:
    monkeypatch.setenv("GOAL_AUTOPILOT_MODEL_MEDIUM_TEMPERATURE", "warm")

    with pytest.raises(ValueError, match="GOAL_AUTOPILOT_MODEL_MEDIUM_TEMPERATURE"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(scheduler=SchedulerSettings(tick_interval_seconds=0)), "TICK_INTERVAL"),
        (Settings(scheduler=SchedulerSettings(max_dispatch_workers=0)), "DISPATCH_WORKERS"),
        (
            Settings(budget=BudgetSettings(warning_threshold=0.95, critical_threshold=0.9)),
            "Budget thresholds",
        ),
        (Settings(budget=BudgetSettings(max_overage_percent=-0.1)), "MAX_OVERAGE_PERCENT"),
        (Settings(retry=RetrySettings(max_retries=-1)), "RETRY_MAX_RETRIES"),
        (Settings(retry=RetrySettings(jitter_factor=1.5)), "JITTER_FACTOR"),
        (Settings(execution=ExecutionSettings(command_template="agent --model {model}")), "COMMAND"),
    ],
)
def test_validate_rejects_unusable_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()
