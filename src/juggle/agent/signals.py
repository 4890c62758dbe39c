"""Deterministic parsing of agent output into loop signals."""

from __future__ import annotations

import re

from juggle.agent.models import AgentRunResult

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "429",
    "overloaded",
    "capacity",
    "usage limit",
    "try again",
    "throttl",
)

_COMPLETE_RE = re.compile(r"<promise>COMPLETE(?P<body>(?::[^<]*)?)</promise>")
_CONTINUE_RE = re.compile(r"<promise>CONTINUE(?P<body>(?::[^<]*)?)</promise>")
_BLOCKED_RE = re.compile(r"<promise>BLOCKED:(?P<body>[^<]*)</promise>")
_RETRY_AFTER_RE = re.compile(r"(?P<amount>\d{1,5})\s*(?P<unit>second|sec|minute|min|hour)s?\b")

_UNIT_SECONDS = {
    "second": 1,
    "sec": 1,
    "minute": 60,
    "min": 60,
    "hour": 3600,
}


def parse_agent_output(
    output: str,
    *,
    exit_code: int | None = 0,
    timed_out: bool = False,
) -> AgentRunResult:
    """Build an ``AgentRunResult`` from captured output and exit status.

    Promise markers are recognised anywhere in the output. Rate limiting is
    only inferred from a failed exit, since a healthy agent may well quote
    phrases like "try again" while working. A timed-out run carries no
    signals.
    """

    result = AgentRunResult(output=output, exit_code=exit_code, timed_out=timed_out)
    if timed_out:
        return result

    complete = _COMPLETE_RE.search(output)
    if complete is not None:
        result.complete = True
        result.commit_message = _signal_message(complete.group("body"))

    continue_ = _CONTINUE_RE.search(output)
    if continue_ is not None:
        result.continue_ = True
        message = _signal_message(continue_.group("body"))
        if message is not None:
            result.commit_message = message

    blocked = _BLOCKED_RE.search(output)
    if blocked is not None:
        result.blocked = True
        result.blocked_reason = blocked.group("body").strip() or None

    if exit_code not in (0, None) and detect_rate_limit(output) is not None:
        result.rate_limited = True
        result.retry_after_seconds = parse_retry_after(output)

    return result


def detect_rate_limit(output: str) -> str | None:
    """Return the first rate-limit pattern found in ``output``, if any."""

    return _first_match(output.lower(), _RATE_LIMIT_PATTERNS)


def parse_retry_after(output: str) -> float:
    """Extract "N seconds/minutes/hours" from a rate-limit message, 0 when absent."""

    for match in _RETRY_AFTER_RE.finditer(output.lower()):
        amount = int(match.group("amount"))
        if amount > 0:
            return float(amount * _UNIT_SECONDS[match.group("unit")])
    return 0.0


def _signal_message(body: str) -> str | None:
    if not body.startswith(":"):
        return None
    return body[1:].strip() or None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
