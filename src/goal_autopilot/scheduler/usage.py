"""Token usage extraction from execution engine output."""

from __future__ import annotations

import re
from dataclasses import dataclass

USAGE_PARSER_VERSION = "v1"

_STRUCTURED = {
    "prompt": re.compile(r'"(?:prompt|input)_tokens"\s*:\s*(\d+)', re.IGNORECASE),
    "completion": re.compile(r'"(?:completion|output)_tokens"\s*:\s*(\d+)', re.IGNORECASE),
    "total": re.compile(r'"total_tokens"\s*:\s*(\d+)', re.IGNORECASE),
}
_TEXTUAL = {
    "prompt": re.compile(r"input[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE),
    "completion": re.compile(r"(?:output|completion)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE),
    "total": re.compile(
        r"(?:total[_ ]tokens?\s*[:=]|tokens used[:\s]+)\s*([\d,]+)",
        re.IGNORECASE,
    ),
}


@dataclass(slots=True)
class UsageExtraction:
    """Best-effort usage parsed from one run's output."""

    prompt_tokens: int | None
    completion_tokens: int | None
    total_tokens: int | None
    usage_status: str
    usage_source: str
    parser_version: str = USAGE_PARSER_VERSION

    @property
    def tokens(self) -> int:
        return self.total_tokens or 0


def extract_usage(*, stdout: str, stderr: str) -> UsageExtraction:
    """Structured JSON counters win over textual ``key: value`` reports."""

    for patterns in (_STRUCTURED, _TEXTUAL):
        for source, text in (("stdout", stdout), ("stderr", stderr)):
            found = {name: _last_int(pattern, text) for name, pattern in patterns.items()}
            if all(value is None for value in found.values()):
                continue
            total = found["total"]
            status = "reported"
            if total is None:
                status = "estimated"
                total = (found["prompt"] or 0) + (found["completion"] or 0)
            return UsageExtraction(
                prompt_tokens=found["prompt"],
                completion_tokens=found["completion"],
                total_tokens=total,
                usage_status=status,
                usage_source=source,
            )
    return UsageExtraction(
        prompt_tokens=None,
        completion_tokens=None,
        total_tokens=None,
        usage_status="unknown",
        usage_source="none",
    )


def _last_int(pattern: re.Pattern[str], text: str) -> int | None:
    matches = pattern.findall(text)
    if not matches:
        return None
    raw = matches[-1].replace(",", "").strip()
    return int(raw) if raw.isdigit() else None
