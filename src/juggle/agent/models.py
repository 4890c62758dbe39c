"""Typed inputs and outputs of agent invocations and the orchestration loop."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from juggle.items.models import ModelSize, SessionCounts
from juggle.storage.common import utc_now


class LoopOutcome(str, Enum):
    """Mutually exclusive ways an agent loop ends."""

    COMPLETE = "complete"
    BLOCKED = "blocked"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    MAX_ITERATIONS = "max_iterations"


class AgentRunStatus(str, Enum):
    """Persisted status of an agent run record."""

    RUNNING = "running"
    COMPLETE = "complete"
    BLOCKED = "blocked"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    MAX_ITERATIONS = "max_iterations"
    ERROR = "error"


@dataclass(slots=True)
class AgentRunResult:
    """Parsed outcome of one agent process invocation.

    Flags are not mutually exclusive; the loop applies a fixed priority
    (rate limit, timeout, complete, continue, blocked).
    """

    output: str = ""
    complete: bool = False
    continue_: bool = False
    blocked: bool = False
    blocked_reason: str | None = None
    rate_limited: bool = False
    retry_after_seconds: float = 0.0
    timed_out: bool = False
    exit_code: int | None = None
    commit_message: str | None = None


@dataclass(slots=True, frozen=True)
class AgentLoopConfig:
    """Caller-supplied, immutable parameters for one loop run."""

    session_id: str
    project_dir: Path
    max_iterations: int = 10
    trust: bool = False
    debug: bool = False
    iteration_delay_seconds: float = 2.0
    iteration_timeout_seconds: float = 0.0
    max_wait_seconds: float = 0.0
    iteration_delay_jitter_seconds: float = 0.0
    model_size: ModelSize | None = None

    def validate(self) -> None:
        if not self.session_id.strip():
            raise ValueError("session_id must be non-empty.")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1.")
        if self.iteration_delay_seconds < 0:
            raise ValueError("iteration_delay_seconds must be >= 0.")
        if self.iteration_delay_jitter_seconds < 0:
            raise ValueError("iteration_delay_jitter_seconds must be >= 0.")
        if self.iteration_timeout_seconds < 0:
            raise ValueError("iteration_timeout_seconds must be >= 0 (0 disables the timeout).")
        if self.max_wait_seconds < 0:
            raise ValueError("max_wait_seconds must be >= 0 (0 means unbounded).")


@dataclass(slots=True)
class AgentLoopResult:
    """Summary of one loop run, rendered by callers."""

    iterations: int = 0
    complete: bool = False
    blocked: bool = False
    timed_out: bool = False
    rate_limit_exceeded: bool = False
    blocked_reason: str | None = None
    timeout_message: str | None = None
    total_wait_seconds: float = 0.0
    items_complete: int = 0
    items_blocked: int = 0
    items_total: int = 0
    started_at: datetime = field(default_factory=utc_now)
    ended_at: datetime | None = None

    @property
    def outcome(self) -> LoopOutcome:
        if self.complete:
            return LoopOutcome.COMPLETE
        if self.blocked:
            return LoopOutcome.BLOCKED
        if self.timed_out:
            return LoopOutcome.TIMEOUT
        if self.rate_limit_exceeded:
            return LoopOutcome.RATE_LIMIT
        return LoopOutcome.MAX_ITERATIONS

    @property
    def elapsed_seconds(self) -> float:
        if self.ended_at is None:
            return 0.0
        return max(0.0, (self.ended_at - self.started_at).total_seconds())

    def record_counts(self, counts: SessionCounts) -> None:
        self.items_complete = counts.complete
        self.items_blocked = counts.blocked
        self.items_total = counts.total


@dataclass(slots=True)
class AgentRunRecord:
    """Persisted history entry for one agent run."""

    run_id: str
    session_id: str
    project_dir: str
    status: AgentRunStatus
    max_iterations: int
    iterations: int
    blocked_reason: str | None
    timeout_message: str | None
    error_message: str | None
    items_complete: int
    items_blocked: int
    items_total: int
    total_wait_seconds: float
    output_path: str | None
    started_at: datetime
    heartbeat_at: datetime | None
    ended_at: datetime | None
