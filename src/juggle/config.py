"""Runtime configuration for the item store and the agent loop."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_AGENTS = ("claude", "opencode")
SUPPORTED_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
DEFAULT_DB_FILE_NAME = "juggle.db"


@dataclass(slots=True)
class AgentSettings:
    """Agent CLI selection and loop defaults."""

    agent: str = "claude"
    command_templates: dict[str, str] = field(default_factory=dict)
    trust: bool = False
    max_iterations: int = 10
    iteration_delay_seconds: float = 2.0
    iteration_delay_jitter_seconds: float = 0.0
    iteration_timeout_seconds: float = 0.0
    max_wait_seconds: float = 0.0
    active_run_stale_after_seconds: int = 6 * 3_600

    def command_template(self) -> str | None:
        """Return the configured template override for the selected agent, if any."""

        return self.command_templates.get(self.agent) or None


@dataclass(slots=True)
class StoreSettings:
    """SQLite store settings."""

    sqlite_busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    project_dir: Path = Path()
    db_path: Path = Path(".juggle") / DEFAULT_DB_FILE_NAME
    agent: AgentSettings = field(default_factory=AgentSettings)
    store: StoreSettings = field(default_factory=StoreSettings)

    @classmethod
    def from_env(
        cls,
        project_dir: Path | None = None,
        db_path: Path | None = None,
    ) -> Settings:
        """Load settings from environment; the DB defaults to ``<project>/.juggle/juggle.db``."""

        resolved_project_dir = project_dir or Path(os.getenv("JUGGLE_PROJECT_DIR", "."))
        env_db_path = os.getenv("JUGGLE_DB_PATH", "").strip()
        resolved_db_path = db_path or (
            Path(env_db_path)
            if env_db_path
            else resolved_project_dir / ".juggle" / DEFAULT_DB_FILE_NAME
        )
        command_templates = {
            name: template
            for name, template in (
                ("claude", os.getenv("JUGGLE_CLAUDE_COMMAND_TEMPLATE", "").strip()),
                ("opencode", os.getenv("JUGGLE_OPENCODE_COMMAND_TEMPLATE", "").strip()),
            )
            if template
        }
        return cls(
            project_dir=resolved_project_dir,
            db_path=resolved_db_path,
            agent=AgentSettings(
                agent=os.getenv("JUGGLE_AGENT", "claude").strip().lower(),
                command_templates=command_templates,
                trust=_env_bool("JUGGLE_AGENT_TRUST", default=False),
                max_iterations=_env_int("JUGGLE_AGENT_MAX_ITERATIONS", 10),
                iteration_delay_seconds=_env_float("JUGGLE_AGENT_ITERATION_DELAY_SECONDS", 2.0),
                iteration_delay_jitter_seconds=_env_float(
                    "JUGGLE_AGENT_ITERATION_DELAY_JITTER_SECONDS",
                    0.0,
                ),
                iteration_timeout_seconds=_env_float(
                    "JUGGLE_AGENT_ITERATION_TIMEOUT_SECONDS",
                    0.0,
                ),
                max_wait_seconds=_env_float("JUGGLE_AGENT_MAX_WAIT_SECONDS", 0.0),
                active_run_stale_after_seconds=_env_int(
                    "JUGGLE_ACTIVE_RUN_STALE_AFTER_SECONDS",
                    6 * 3_600,
                ),
            ),
            store=StoreSettings(
                sqlite_busy_timeout_ms=_env_int("JUGGLE_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.agent.agent not in SUPPORTED_AGENTS:
            raise ValueError(
                f"JUGGLE_AGENT must be one of {', '.join(SUPPORTED_AGENTS)}, "
                f"got {self.agent.agent!r}.",
            )
        if self.agent.max_iterations < 1:
            raise ValueError("JUGGLE_AGENT_MAX_ITERATIONS must be >= 1.")
        if self.agent.iteration_delay_seconds < 0:
            raise ValueError("JUGGLE_AGENT_ITERATION_DELAY_SECONDS must be >= 0.")
        if self.agent.iteration_delay_jitter_seconds < 0:
            raise ValueError("JUGGLE_AGENT_ITERATION_DELAY_JITTER_SECONDS must be >= 0.")
        if self.agent.iteration_timeout_seconds < 0:
            raise ValueError("JUGGLE_AGENT_ITERATION_TIMEOUT_SECONDS must be >= 0.")
        if self.agent.max_wait_seconds < 0:
            raise ValueError("JUGGLE_AGENT_MAX_WAIT_SECONDS must be >= 0.")
        if self.agent.active_run_stale_after_seconds <= 0:
            raise ValueError("JUGGLE_ACTIVE_RUN_STALE_AFTER_SECONDS must be > 0.")
        if self.store.sqlite_busy_timeout_ms < 0:
            raise ValueError("JUGGLE_SQLITE_BUSY_TIMEOUT_MS must be >= 0.")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error


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
