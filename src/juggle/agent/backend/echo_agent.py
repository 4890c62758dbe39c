"""Scripted stand-in agent for CLI runner integration tests.

Run as ``python -m juggle.agent.backend.echo_agent``. Replies come from
``--reply`` or, one per invocation, from a ``--script`` file whose replies
are separated by lines containing only ``---``.
"""

from __future__ import annotations

import argparse
import os
import sys
import time
from pathlib import Path

SCRIPT_SEPARATOR = "---"


def main(argv: list[str] | None = None) -> int:
    """Print a scripted reply and exit with the requested code."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--reply", action="append", default=[])
    parser.add_argument("--script")
    parser.add_argument("--sleep", type=float, default=0.0)
    parser.add_argument("--exit-code", type=int, default=0)
    parser.add_argument("--echo-prompt", action="store_true")
    parser.add_argument("--echo-env", action="append", default=[])
    parser.add_argument("--model")
    parser.add_argument("prompt", nargs="?")
    args = parser.parse_args(argv)

    prompt = args.prompt
    if prompt is None and not sys.stdin.isatty():
        prompt = sys.stdin.read()

    if args.echo_prompt and prompt:
        print(prompt.rstrip("\n"))
    if args.model:
        print(f"model={args.model}")
    for name in args.echo_env:
        print(f"{name}={os.getenv(name, '')}")
    sys.stdout.flush()

    if args.sleep > 0:
        time.sleep(args.sleep)

    for reply in args.reply:
        print(reply)
    if args.script:
        reply = _next_scripted_reply(Path(args.script))
        if reply:
            print(reply)
    return args.exit_code


def _next_scripted_reply(script_path: Path) -> str:
    replies = _split_replies(script_path.read_text("utf-8"))
    counter_path = script_path.with_name(f"{script_path.name}.count")
    calls = int(counter_path.read_text("utf-8")) if counter_path.exists() else 0
    counter_path.write_text(str(calls + 1), "utf-8")
    if not replies:
        return ""
    return replies[min(calls, len(replies) - 1)]


def _split_replies(text: str) -> list[str]:
    replies: list[str] = []
    current: list[str] = []
    for line in text.splitlines():
        if line.strip() == SCRIPT_SEPARATOR:
            replies.append("\n".join(current).strip())
            current = []
            continue
        current.append(line)
    replies.append("\n".join(current).strip())
    return replies


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
