"""Controllers for agent run and history CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import TypeVar

from juggle.agent.backend import build_cli_runner
from juggle.agent.loop import AgentLoop
from juggle.agent.models import AgentLoopConfig, AgentLoopResult, AgentRunRecord
from juggle.agent.prompt import SessionPromptProvider
from juggle.agent.workdir import SessionWorkdir
from juggle.config import Settings
from juggle.items.controllers import repository_from_settings
from juggle.items.models import ModelSize

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


@dataclass(slots=True)
class AgentRunCommand:
    """CLI input for one agent loop run; ``None`` falls back to settings."""

    db_path: Path | None
    project_dir: Path | None
    session_id: str
    iterations: int | None = None
    trust: bool = False
    debug: bool = False
    delay_seconds: float | None = None
    timeout_seconds: float | None = None
    max_wait_seconds: float | None = None
    agent: str | None = None
    model_size: ModelSize | None = None


@dataclass(slots=True)
class AgentHistoryCommand:
    db_path: Path | None
    session_id: str | None
    limit: int


class AgentCliController:
    """Runs the agent loop against a session and reports run history."""

    def __init__(self, echo: Callable[[str], None] | None = None) -> None:
        self.echo = echo

    def run(self, command: AgentRunCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir, db_path=command.db_path)
        if command.agent is not None:
            settings.agent.agent = command.agent
        settings.validate()

        project_dir = settings.project_dir.resolve()
        config = AgentLoopConfig(
            session_id=command.session_id,
            project_dir=project_dir,
            max_iterations=_pick(command.iterations, settings.agent.max_iterations),
            trust=command.trust or settings.agent.trust,
            debug=command.debug,
            iteration_delay_seconds=_pick(
                command.delay_seconds,
                settings.agent.iteration_delay_seconds,
            ),
            iteration_timeout_seconds=_pick(
                command.timeout_seconds,
                settings.agent.iteration_timeout_seconds,
            ),
            max_wait_seconds=_pick(command.max_wait_seconds, settings.agent.max_wait_seconds),
            iteration_delay_jitter_seconds=settings.agent.iteration_delay_jitter_seconds,
            model_size=command.model_size,
        )
        config.validate()
        output_path = SessionWorkdir(project_dir).last_output_path(command.session_id)

        with repository_from_settings(settings) as repository:
            repository.load_session(command.session_id)
            run = repository.start_agent_run(
                session_id=command.session_id,
                project_dir=project_dir,
                max_iterations=config.max_iterations,
                output_path=output_path,
                stale_after=timedelta(seconds=settings.agent.active_run_stale_after_seconds),
            )
            logger.info("Agent run started (run_id=%s session=%s)", run.run_id, run.session_id)
            runner = build_cli_runner(
                settings.agent.agent,
                working_dir=project_dir,
                command_template=settings.agent.command_template(),
                env={
                    "JUGGLE_SESSION_ID": command.session_id,
                    "JUGGLE_DB_PATH": str(settings.db_path.resolve()),
                    "JUGGLE_PROJECT_DIR": str(project_dir),
                },
                echo=self.echo,
            )
            prompt_provider = SessionPromptProvider(repository)
            loop = AgentLoop(
                store=repository,
                prompt_provider=prompt_provider,
                runner=runner,
                heartbeat=lambda: repository.touch_agent_run(run.run_id),
                on_event=self.echo,
                model_selector=prompt_provider.select_model,
            )
            try:
                result = loop.run(config)
            except KeyboardInterrupt:
                repository.finish_agent_run(
                    run.run_id,
                    result=None,
                    error_message="Interrupted by user.",
                )
                raise
            except Exception as error:
                repository.finish_agent_run(run.run_id, result=None, error_message=str(error))
                raise
            record = repository.finish_agent_run(run.run_id, result=result)

        return _render_run_summary(record=record, result=result)

    def history(self, command: AgentHistoryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with repository_from_settings(settings) as repository:
            runs = repository.list_agent_runs(session_id=command.session_id, limit=command.limit)
        if not runs:
            return ["No agent runs."]
        return [_history_line(run) for run in runs]


def _pick(value: _T | None, default: _T) -> _T:
    return default if value is None else value


def _render_run_summary(*, record: AgentRunRecord, result: AgentLoopResult) -> list[str]:
    lines = [
        "Agent run finished: "
        f"run_id={record.run_id} session={record.session_id} outcome={result.outcome.value}",
        f"Iterations: {result.iterations}/{record.max_iterations}",
        "Items: "
        f"complete={result.items_complete} blocked={result.items_blocked} "
        f"total={result.items_total}",
        f"Elapsed: {result.elapsed_seconds:.1f}s rate_limit_wait={result.total_wait_seconds:.0f}s",
    ]
    if result.blocked_reason:
        lines.append(f"Blocked reason: {result.blocked_reason}")
    if result.timeout_message:
        lines.append(f"Timeout: {result.timeout_message}")
    if record.output_path:
        lines.append(f"Last output: {record.output_path}")
    return lines


def _history_line(run: AgentRunRecord) -> str:
    line = (
        f"{run.run_id} session={run.session_id} status={run.status.value} "
        f"iterations={run.iterations}/{run.max_iterations} "
        f"items={run.items_complete}/{run.items_total} blocked={run.items_blocked} "
        f"started={run.started_at.isoformat()}"
    )
    if run.ended_at is not None:
        line += f" ended={run.ended_at.isoformat()}"
    detail = run.blocked_reason or run.timeout_message or run.error_message
    if detail:
        line += f" | {detail}"
    return line
