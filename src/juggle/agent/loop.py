"""Agent orchestration loop: invoke, interpret signals, back off, and stop."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Protocol

from juggle.agent.backend.base import AgentRunner
from juggle.agent.models import AgentLoopConfig, AgentLoopResult, AgentRunResult
from juggle.agent.workdir import SessionWorkdir
from juggle.errors import AgentLoopSetupError, SessionNotFoundError
from juggle.items.models import ModelSize, SessionCounts, WorkSession
from juggle.storage.common import utc_now

logger = logging.getLogger(__name__)

RATE_LIMIT_BUFFER_SECONDS = 5.0
RATE_LIMIT_BASE_SECONDS = 30.0
RATE_LIMIT_MAX_SECONDS = 16 * 60.0
COUNTDOWN_TICK_SECONDS = 1.0
COUNTDOWN_ANNOUNCE_EVERY_SECONDS = 10


class LoopStore(Protocol):
    """Item store operations the loop depends on."""

    def load_session(self, session_id: str) -> WorkSession: ...

    def session_counts(self, session_id: str) -> SessionCounts:
        """Must never raise; storage errors yield all zeros."""

    def append_progress_line(self, session_id: str, text: str) -> object: ...


class PromptProvider(Protocol):
    def generate(self, project_dir: Path, session_id: str, debug: bool) -> str: ...


ModelSelector = Callable[[str, ModelSize | None], ModelSize | None]


def rate_limit_wait_seconds(retry_after_seconds: float, consecutive_retries: int) -> float:
    """Wait before retrying a rate-limited invocation.

    An explicit retry-after gets a fixed buffer on top; otherwise the wait
    doubles from 30 s per consecutive retry and is capped at 16 minutes.
    """

    if retry_after_seconds > 0:
        return retry_after_seconds + RATE_LIMIT_BUFFER_SECONDS
    return min(
        RATE_LIMIT_MAX_SECONDS,
        RATE_LIMIT_BASE_SECONDS * (2 ** max(consecutive_retries, 0)),
    )


class AgentLoop:
    """Drive an agent through repeated iterations until its session settles."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: LoopStore,
        prompt_provider: PromptProvider,
        runner: AgentRunner,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
        heartbeat: Callable[[], None] | None = None,
        on_event: Callable[[str], None] | None = None,
        rng: random.Random | None = None,
        model_selector: ModelSelector | None = None,
    ) -> None:
        self.store = store
        self.prompt_provider = prompt_provider
        self.runner = runner
        self.sleep = sleep
        self.clock = clock
        self.heartbeat = heartbeat
        self.on_event = on_event
        self._random = rng or random.Random()  # noqa: S311
        self.model_selector = model_selector

    def run(self, config: AgentLoopConfig) -> AgentLoopResult:
        """Run up to ``config.max_iterations`` agent invocations.

        Raises ``AgentLoopSetupError`` when the session is missing or a prompt
        cannot be built, and lets ``AgentInvocationError`` propagate.
        """

        config.validate()
        try:
            self.store.load_session(config.session_id)
        except SessionNotFoundError as error:
            raise AgentLoopSetupError(f"Cannot run agent: {error}") from error

        workdir = SessionWorkdir(config.project_dir)
        result = AgentLoopResult(started_at=self.clock())
        iteration = 0
        consecutive_retries = 0
        announce = True

        try:
            while iteration < config.max_iterations:
                attempt = iteration + 1
                self._best_effort_heartbeat()
                if announce:
                    self._emit(f"=== Iteration {attempt}/{config.max_iterations} ===")
                announce = True

                prompt = self._build_prompt(config)
                run_result = self.runner.run(
                    prompt,
                    trust=config.trust,
                    timeout_seconds=config.iteration_timeout_seconds,
                    model_size=self._select_model(config),
                )

                if run_result.rate_limited:
                    wait_seconds = rate_limit_wait_seconds(
                        run_result.retry_after_seconds,
                        consecutive_retries,
                    )
                    if (
                        config.max_wait_seconds > 0
                        and result.total_wait_seconds + wait_seconds > config.max_wait_seconds
                    ):
                        result.rate_limit_exceeded = True
                        message = (
                            f"[RATE_LIMIT] Rate limit wait budget exhausted on iteration "
                            f"{attempt}: waited {result.total_wait_seconds:.0f}s, next wait "
                            f"{wait_seconds:.0f}s exceeds max {config.max_wait_seconds:.0f}s"
                        )
                        logger.warning("%s (session=%s)", message, config.session_id)
                        self._best_effort_progress(config.session_id, message)
                        self._emit(message)
                        break

                    message = (
                        f"[RATE_LIMIT] Rate limited on iteration {attempt}, "
                        f"waiting {wait_seconds:.0f}s before retrying"
                    )
                    logger.info("%s (session=%s)", message, config.session_id)
                    self._best_effort_progress(config.session_id, message)
                    self._emit(message)
                    self._countdown(wait_seconds)
                    result.total_wait_seconds += wait_seconds
                    consecutive_retries += 1
                    announce = False
                    continue

                consecutive_retries = 0
                iteration = attempt
                result.iterations = iteration
                self._best_effort_write_output(workdir, config.session_id, run_result.output)

                if self._settle(config, result, run_result, iteration=iteration):
                    break

                if iteration < config.max_iterations:
                    self._inter_iteration_delay(config)
        finally:
            result.record_counts(self.store.session_counts(config.session_id))
            result.ended_at = self.clock()

        return result

    def _settle(
        self,
        config: AgentLoopConfig,
        result: AgentLoopResult,
        run_result: AgentRunResult,
        *,
        iteration: int,
    ) -> bool:
        """Apply one non-rate-limited result; True when the loop must stop."""

        if run_result.timed_out:
            result.timed_out = True
            result.timeout_message = (
                f"Iteration {iteration} timed out after {config.iteration_timeout_seconds:g}s"
            )
            self._best_effort_progress(
                config.session_id,
                f"[TIMEOUT] {result.timeout_message}",
            )
            self._emit(result.timeout_message)
            return True

        if run_result.complete:
            counts = self._record_counts(config, result)
            if counts.all_terminal:
                result.complete = True
                self._emit("Agent reported COMPLETE and all items are terminal.")
                return True
            message = (
                f"[PREMATURE_COMPLETE] Agent reported COMPLETE on iteration {iteration} "
                f"but only {counts.terminal}/{counts.total} items are terminal"
            )
            logger.warning("%s (session=%s)", message, config.session_id)
            self._best_effort_progress(config.session_id, message)
            self._emit(message)
            return False

        if run_result.continue_:
            counts = self._record_counts(config, result)
            self._emit(
                f"Progress: {counts.complete}/{counts.total} items complete"
                + (f", {counts.blocked} blocked" if counts.blocked else ""),
            )
            if counts.all_terminal:
                result.complete = True
                return True
            return False

        if run_result.blocked:
            result.blocked = True
            result.blocked_reason = run_result.blocked_reason
            self._emit(f"Agent reported BLOCKED: {run_result.blocked_reason or '(no reason)'}")
            return True

        counts = self._record_counts(config, result)
        if counts.all_terminal:
            result.complete = True
            self._emit("All items are terminal.")
            return True
        return False

    def _build_prompt(self, config: AgentLoopConfig) -> str:
        try:
            prompt = self.prompt_provider.generate(
                config.project_dir,
                config.session_id,
                config.debug,
            )
        except Exception as error:  # noqa: BLE001
            raise AgentLoopSetupError(f"Failed to generate agent prompt: {error}") from error
        if not prompt.strip():
            raise AgentLoopSetupError("Prompt provider returned an empty prompt.")
        return prompt

    def _select_model(self, config: AgentLoopConfig) -> ModelSize | None:
        if self.model_selector is None:
            return config.model_size
        try:
            model_size = self.model_selector(config.session_id, config.model_size)
        except Exception as error:  # noqa: BLE001
            logger.warning("Model selection failed for session %s: %s", config.session_id, error)
            return config.model_size
        logger.debug("Selected model size %s (session=%s)", model_size, config.session_id)
        return model_size

    def _record_counts(self, config: AgentLoopConfig, result: AgentLoopResult) -> SessionCounts:
        counts = self.store.session_counts(config.session_id)
        result.record_counts(counts)
        return counts

    def _inter_iteration_delay(self, config: AgentLoopConfig) -> None:
        delay = config.iteration_delay_seconds
        if config.iteration_delay_jitter_seconds > 0:
            delay += self._random.uniform(0, config.iteration_delay_jitter_seconds)
        if delay > 0:
            self.sleep(delay)

    def _countdown(self, seconds: float) -> None:
        remaining = seconds
        while remaining > 0:
            tick = min(COUNTDOWN_TICK_SECONDS, remaining)
            whole = int(remaining)
            if whole >= 1 and whole % COUNTDOWN_ANNOUNCE_EVERY_SECONDS == 0:
                self._emit(f"Waiting {remaining:.0f}s...")
            self.sleep(tick)
            remaining -= tick

    def _emit(self, message: str) -> None:
        if self.on_event is not None:
            self.on_event(message)

    def _best_effort_heartbeat(self) -> None:
        if self.heartbeat is None:
            return
        try:
            self.heartbeat()
        except Exception as error:  # noqa: BLE001
            logger.debug("Agent run heartbeat failed: %s", error)

    def _best_effort_progress(self, session_id: str, text: str) -> None:
        try:
            self.store.append_progress_line(session_id, text)
        except Exception as error:  # noqa: BLE001
            logger.warning("Failed to append progress for session %s: %s", session_id, error)

    def _best_effort_write_output(
        self,
        workdir: SessionWorkdir,
        session_id: str,
        output: str,
    ) -> None:
        try:
            workdir.write_last_output(session_id, output)
        except OSError as error:
            logger.warning(
                "Failed to write agent output to %s: %s",
                workdir.last_output_path(session_id),
                error,
            )
