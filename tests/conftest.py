"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from goal_autopilot.config import (
    ExecutionSettings,
    RetrySettings,
    SchedulerSettings,
    Settings,
)
from goal_autopilot.scheduler.repository import SqlSchedulerRepository

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m goal_autopilot.scheduler.backend.echo_agent "
    "--model {model} -- {prompt}"
)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Fast, deterministic settings: no retry backoff, short loop intervals."""

    return Settings(
        db_path=tmp_path / "scheduler.db",
        scheduler=SchedulerSettings(
            tick_interval_seconds=0.01,
            max_concurrent_goals=5,
            max_dispatch_workers=4,
            run_timeout_seconds=30.0,
            abort_grace_seconds=2.0,
        ),
        retry=RetrySettings(
            max_retries=3,
            base_delay_seconds=0.0,
            max_delay_seconds=0.0,
            jitter_factor=0.0,
        ),
        execution=ExecutionSettings(
            command_template=ECHO_AGENT_COMMAND_TEMPLATE,
            poll_interval_seconds=0.02,
            workdir_root=tmp_path / "runs",
        ),
    )


@pytest.fixture()
def repository(settings: Settings) -> Iterator[SqlSchedulerRepository]:
    repo = SqlSchedulerRepository(settings.db_path)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Point CLI settings at temp paths and the local echo agent."""

    monkeypatch.setenv("GOAL_AUTOPILOT_WORKDIR", str(tmp_path / "runs"))
    monkeypatch.setenv("GOAL_AUTOPILOT_COMMAND_TEMPLATE", ECHO_AGENT_COMMAND_TEMPLATE)
    monkeypatch.setenv("GOAL_AUTOPILOT_RETRY_BASE_DELAY_SECONDS", "0")
    monkeypatch.setenv("GOAL_AUTOPILOT_RETRY_JITTER_FACTOR", "0")
    monkeypatch.delenv("GOAL_AUTOPILOT_LLM_PRICING", raising=False)
    return tmp_path
