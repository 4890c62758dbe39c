"""Subprocess-based runner for CLI coding agents."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from juggle.agent.backend.base import EchoSink
from juggle.agent.models import AgentRunResult
from juggle.agent.signals import parse_agent_output
from juggle.errors import AgentInvocationError
from juggle.items.models import ModelSize

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124

AUTONOMOUS_SYSTEM_PROMPT = (
    "CRITICAL: You are an autonomous agent. DO NOT ask questions. DO NOT summarize. "
    "DO NOT wait for confirmation. START WORKING IMMEDIATELY. "
    "Execute the workflow in the prompt without any preamble."
)


@dataclass(slots=True, frozen=True)
class AgentPreset:
    """Command template and permission arguments for one agent CLI."""

    command_template: str
    trusted_args: str = ""
    untrusted_args: str = ""
    models: dict[str, str] = field(default_factory=dict)


AGENT_PRESETS: dict[str, AgentPreset] = {
    "claude": AgentPreset(
        command_template=(
            "claude --disable-slash-commands --append-system-prompt {system_prompt} "
            "{permission} {model} -p -"
        ),
        trusted_args="--dangerously-skip-permissions",
        untrusted_args="--permission-mode acceptEdits",
        models={"small": "haiku", "medium": "sonnet", "large": "opus"},
    ),
    "opencode": AgentPreset(
        command_template="opencode run --agent build {model} {prompt}",
        models={
            "small": "anthropic/claude-3-5-haiku-latest",
            "medium": "anthropic/claude-sonnet-4-5",
            "large": "anthropic/claude-opus-4-5",
        },
    ),
}


class CliAgentRunner:
    """Run one agent process per call from a shell-style command template.

    Supported placeholders are ``{permission}``, ``{model}``, ``{system_prompt}``
    and ``{prompt}``. ``{model}`` renders as ``--model <name>`` when a model size
    is requested and as nothing otherwise; sizes missing from ``models`` are
    passed through by name. Without a ``{prompt}`` placeholder the prompt is
    written to the process stdin. Stdout and stderr are captured together.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        command_template: str,
        working_dir: Path,
        trusted_args: str = "",
        untrusted_args: str = "",
        models: dict[str, str] | None = None,
        system_prompt: str = AUTONOMOUS_SYSTEM_PROMPT,
        env: dict[str, str] | None = None,
        echo: EchoSink | None = None,
    ) -> None:
        self.command_template = command_template
        self.working_dir = working_dir
        self.trusted_args = trusted_args
        self.untrusted_args = untrusted_args
        self.models = dict(models or {})
        self.system_prompt = system_prompt
        self.env = dict(env or {})
        self.echo = echo

    def run(
        self,
        prompt: str,
        *,
        trust: bool,
        timeout_seconds: float,
        model_size: ModelSize | None = None,
    ) -> AgentRunResult:
        if not prompt.strip():
            raise ValueError("Agent prompt must be non-empty.")
        if timeout_seconds < 0:
            raise ValueError("timeout_seconds must be >= 0 (0 disables the timeout).")

        run_args, stdin_prompt = _build_run_args(
            command_template=self.command_template,
            permission=self.trusted_args if trust else self.untrusted_args,
            model=self._model_name(model_size),
            system_prompt=self.system_prompt,
            prompt=prompt,
        )
        env = os.environ.copy()
        env.update(self.env)
        logger.debug("Starting agent process: %s (cwd=%s)", run_args[0], self.working_dir)

        try:
            process = subprocess.Popen(  # noqa: S603
                run_args,
                cwd=self.working_dir,
                env=env,
                stdin=subprocess.PIPE if stdin_prompt else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as error:
            raise AgentInvocationError(f"Agent command not found: {run_args[0]}") from error
        except OSError as error:
            raise AgentInvocationError(f"Agent process failed to start: {error}") from error

        return self._collect(
            process,
            stdin_text=prompt if stdin_prompt else None,
            timeout_seconds=timeout_seconds,
        )

    def _model_name(self, model_size: ModelSize | None) -> str | None:
        if model_size is None:
            return None
        return self.models.get(model_size.value, model_size.value)

    def _collect(
        self,
        process: subprocess.Popen[str],
        *,
        stdin_text: str | None,
        timeout_seconds: float,
    ) -> AgentRunResult:
        chunks: list[str] = []
        reader = threading.Thread(
            target=_pump_output,
            args=(process, chunks, self.echo),
            name="juggle-agent-stdout",
            daemon=True,
        )
        reader.start()
        writer: threading.Thread | None = None
        if stdin_text is not None:
            writer = threading.Thread(
                target=_feed_stdin,
                args=(process, stdin_text),
                name="juggle-agent-stdin",
                daemon=True,
            )
            writer.start()

        timed_out = _wait_with_timeout(process, timeout_seconds=timeout_seconds)
        if writer is not None:
            writer.join(timeout=2)
        reader.join(timeout=2)
        if reader.is_alive():
            # A background child of the agent still holds the output pipe.
            logger.warning(
                "Agent output pipe still open after the agent %s; using output read so far.",
                "timed out" if timed_out else "exited",
            )

        exit_code = TIMEOUT_EXIT_CODE if timed_out else process.returncode
        output = "".join(list(chunks))
        logger.debug(
            "Agent process finished (exit_code=%s timed_out=%s output_chars=%d)",
            exit_code,
            timed_out,
            len(output),
        )
        return parse_agent_output(output, exit_code=exit_code, timed_out=timed_out)


def build_cli_runner(  # noqa: PLR0913
    agent: str,
    *,
    working_dir: Path,
    command_template: str | None = None,
    env: dict[str, str] | None = None,
    echo: EchoSink | None = None,
) -> CliAgentRunner:
    """Create a runner for a named agent preset, optionally overriding its template."""

    try:
        preset = AGENT_PRESETS[agent]
    except KeyError as error:
        allowed = ", ".join(sorted(AGENT_PRESETS))
        raise ValueError(f"Unknown agent {agent!r} (expected one of: {allowed})") from error
    return CliAgentRunner(
        command_template=command_template or preset.command_template,
        working_dir=working_dir,
        trusted_args=preset.trusted_args,
        untrusted_args=preset.untrusted_args,
        models=preset.models,
        env=env,
        echo=echo,
    )


def _build_run_args(
    *,
    command_template: str,
    permission: str,
    system_prompt: str,
    prompt: str,
    model: str | None = None,
) -> tuple[list[str], bool]:
    stripped = command_template.strip()
    if not stripped:
        raise AgentInvocationError("Agent command template is empty.")

    stdin_prompt = "{prompt}" not in stripped
    try:
        rendered = stripped.format(
            permission=permission,
            model=f"--model {shlex.quote(model)}" if model else "",
            system_prompt=shlex.quote(system_prompt),
            prompt=shlex.quote(prompt),
        )
    except (KeyError, IndexError) as error:
        raise AgentInvocationError(
            f"Unsupported command template placeholder: {error}",
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise AgentInvocationError("Agent command template rendered empty command.")
    return argv, stdin_prompt


def _pump_output(
    process: subprocess.Popen[str],
    chunks: list[str],
    echo: EchoSink | None,
) -> None:
    stream = process.stdout
    if stream is None:
        return
    for line in stream:
        chunks.append(line)
        if echo is not None:
            echo(line.rstrip("\n"))
    stream.close()


def _feed_stdin(process: subprocess.Popen[str], text: str) -> None:
    stream = process.stdin
    if stream is None:
        return
    try:
        stream.write(text)
        stream.close()
    except (BrokenPipeError, OSError) as error:
        # The agent may exit before reading its whole prompt.
        logger.debug("Agent stdin closed early: %s", error)


def _wait_with_timeout(process: subprocess.Popen[str], *, timeout_seconds: float) -> bool:
    start_monotonic = time.monotonic()
    while process.poll() is None:
        if timeout_seconds > 0 and time.monotonic() - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return True
        time.sleep(0.1)
    return False


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
