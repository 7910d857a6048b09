from __future__ import annotations

import allure

from goal_autopilot.scheduler.usage import extract_usage

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Run Cost Accounting"),
]


def test_structured_usage_wins_over_text() -> None:
    stdout = 'Total tokens: 999\n{"input_tokens": 120, "output_tokens": 30, "total_tokens": 150}'

    usage = extract_usage(stdout=stdout, stderr="")

    assert usage.prompt_tokens == 120
    assert usage.completion_tokens == 30
    assert usage.total_tokens == 150
    assert usage.usage_status == "reported"
    assert usage.usage_source == "stdout"


def test_last_structured_report_wins() -> None:
    stdout = '{"total_tokens": 10}\n{"total_tokens": 25}'

    assert extract_usage(stdout=stdout, stderr="").tokens == 25


def test_textual_usage_from_stderr_with_thousands_separator() -> None:
    usage = extract_usage(stdout="done", stderr="tokens used: 1,234")

    assert usage.total_tokens == 1234
    assert usage.usage_source == "stderr"
    assert usage.usage_status == "reported"


def test_missing_total_is_estimated_from_parts() -> None:
    usage = extract_usage(stdout="input_tokens=40 output_tokens=2", stderr="")

    assert usage.total_tokens == 42
    assert usage.usage_status == "estimated"


def test_no_usage_reported() -> None:
    usage = extract_usage(stdout="hello", stderr="")

    assert usage.total_tokens is None
    assert usage.tokens == 0
    assert usage.usage_status == "unknown"
    assert usage.usage_source == "none"
