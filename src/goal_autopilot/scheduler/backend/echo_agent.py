"""Deterministic local agent for command engine demos and integration tests.

Example template::

    python -m goal_autopilot.scheduler.backend.echo_agent --model {model} --tokens 500 -- {prompt}
"""

from __future__ import annotations

import argparse
import json
import os
import sys
import time


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--model", default=os.getenv("GOAL_AUTOPILOT_MODEL", "echo"))
    parser.add_argument("--tokens", type=int, default=100)
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--fail", default=None, help="error text to print before exiting 1")
    parser.add_argument("prompt", nargs="?", default="")
    args = parser.parse_args(argv)

    if args.sleep > 0:
        time.sleep(args.sleep)

    first_line = args.prompt.strip().splitlines()[0] if args.prompt.strip() else "no prompt"
    print(f"[{args.model}] {first_line}")
    print(json.dumps({"total_tokens": args.tokens}))
    if args.fail:
        print(args.fail, file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
