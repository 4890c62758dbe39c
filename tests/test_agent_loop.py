from __future__ import annotations

import random
from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from juggle.agent.loop import AgentLoop, rate_limit_wait_seconds
from juggle.agent.models import AgentLoopConfig, AgentRunResult, LoopOutcome
from juggle.agent.workdir import SessionWorkdir
from juggle.errors import AgentInvocationError, AgentLoopSetupError, SessionNotFoundError
from juggle.items.models import ItemState, ModelSize, SessionCounts, WorkSession

pytestmark = [
    allure.epic("Agent Loop"),
    allure.feature("Orchestration"),
]


class FakeStore:
    def __init__(self, states: list[ItemState], *, session_id: str = "auth") -> None:
        self.session_id = session_id
        self.states = list(states)
        self.progress: list[str] = []
        self.fail_progress = False

    def load_session(self, session_id: str) -> WorkSession:
        if session_id != self.session_id:
            raise SessionNotFoundError(session_id)
        return WorkSession(session_id=session_id)

    def session_counts(self, session_id: str) -> SessionCounts:
        return SessionCounts.from_states(self.states)

    def append_progress_line(self, session_id: str, text: str) -> None:
        if self.fail_progress:
            raise RuntimeError("database is locked")
        self.progress.append(text)

    def settle_next(self, state: ItemState = ItemState.COMPLETE) -> None:
        index = next(i for i, value in enumerate(self.states) if value not in (state,))
        self.states[index] = state


class FakePromptProvider:
    def __init__(self, prompt: str = "do the work") -> None:
        self.prompt = prompt
        self.calls: list[tuple[Path, str, bool]] = []

    def generate(self, project_dir: Path, session_id: str, debug: bool) -> str:
        self.calls.append((project_dir, session_id, debug))
        return self.prompt


class FakeRunner:
    """Returns scripted results; the last one repeats. Hooks run before returning."""

    def __init__(self, *results: AgentRunResult, hook: Callable[[int], None] | None = None):
        self.results = list(results)
        self.hook = hook
        self.calls: list[dict[str, object]] = []

    def run(
        self,
        prompt: str,
        *,
        trust: bool,
        timeout_seconds: float,
        model_size: ModelSize | None = None,
    ) -> AgentRunResult:
        self.calls.append(
            {
                "prompt": prompt,
                "trust": trust,
                "timeout_seconds": timeout_seconds,
                "model_size": model_size,
            },
        )
        if self.hook is not None:
            self.hook(len(self.calls))
        return self.results[min(len(self.calls), len(self.results)) - 1]


class FakeSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)

    @property
    def total(self) -> float:
        return sum(self.calls)


def _config(tmp_path: Path, **overrides) -> AgentLoopConfig:
    values: dict[str, object] = {
        "session_id": "auth",
        "project_dir": tmp_path,
        "max_iterations": 5,
        "iteration_delay_seconds": 0.0,
    }
    values.update(overrides)
    return AgentLoopConfig(**values)


def _loop(store: FakeStore, runner: FakeRunner, sleep: FakeSleep, **kwargs) -> AgentLoop:
    return AgentLoop(
        store=store,
        prompt_provider=kwargs.pop("prompt_provider", FakePromptProvider()),
        runner=runner,
        sleep=sleep,
        **kwargs,
    )


def test_continue_signals_until_all_items_complete(tmp_path: Path) -> None:
    store = FakeStore([ItemState.PENDING, ItemState.PENDING])
    runner = FakeRunner(
        AgentRunResult(output="done one", continue_=True),
        hook=lambda _: store.settle_next(),
    )

    result = _loop(store, runner, FakeSleep()).run(_config(tmp_path))

    assert result.iterations == 2
    assert result.complete
    assert result.items_complete == 2
    assert result.items_total == 2
    assert result.outcome == LoopOutcome.COMPLETE


def test_rate_limit_with_retry_after_waits_and_retries_same_iteration(tmp_path: Path) -> None:
    store = FakeStore([ItemState.PENDING])
    sleep = FakeSleep()

    def hook(call: int) -> None:
        if call == 2:
            store.settle_next()

    runner = FakeRunner(
        AgentRunResult(rate_limited=True, retry_after_seconds=2.0, exit_code=1),
        AgentRunResult(output="<promise>COMPLETE</promise>", complete=True),
        hook=hook,
    )

    result = _loop(store, runner, sleep).run(_config(tmp_path))

    assert result.iterations == 1
    assert result.complete
    assert not result.rate_limit_exceeded
    assert result.total_wait_seconds == pytest.approx(7.0)
    assert sleep.total == pytest.approx(7.0)
    assert len(runner.calls) == 2
    assert store.progress == [
        "[RATE_LIMIT] Rate limited on iteration 1, waiting 7s before retrying",
    ]


def test_no_signal_runs_exactly_max_iterations(tmp_path: Path) -> None:
    store = FakeStore([ItemState.PENDING])
    sleep = FakeSleep()
    runner = FakeRunner(AgentRunResult(output="thinking"))

    result = _loop(store, runner, sleep).run(
        _config(tmp_path, max_iterations=3, iteration_delay_seconds=2.0),
    )

    assert result.iterations == 3
    assert len(runner.calls) == 3
    assert not (result.complete or result.blocked or result.timed_out)
    assert not result.rate_limit_exceeded
    assert result.outcome == LoopOutcome.MAX_ITERATIONS
    assert sleep.calls == [2.0, 2.0]


def test_rate_limit_beyond_wait_budget_stops_without_sleeping(tmp_path: Path) -> None:
    store = FakeStore([ItemState.PENDING])
    sleep = FakeSleep()
    runner = FakeRunner(AgentRunResult(rate_limited=True, exit_code=1))

    result = _loop(store, runner, sleep).run(_config(tmp_path, max_wait_seconds=10))

    assert result.rate_limit_exceeded
    assert result.total_wait_seconds == 0
    assert result.iterations == 0
    assert sleep.calls == []
    assert result.outcome == LoopOutcome.RATE_LIMIT
    assert store.progress[0].startswith("[RATE_LIMIT] Rate limit wait budget exhausted")


def test_consecutive_rate_limits_back_off_exponentially(tmp_path: Path) -> None:
    store = FakeStore([ItemState.PENDING])
    events: list[str] = []

    def hook(call: int) -> None:
        if call == 3:
            store.settle_next()

    runner = FakeRunner(
        AgentRunResult(rate_limited=True, exit_code=1),
        AgentRunResult(rate_limited=True, exit_code=1),
        AgentRunResult(continue_=True),
        hook=hook,
    )

    result = _loop(store, runner, FakeSleep(), on_event=events.append).run(
        _config(tmp_path, max_iterations=1),
    )

    assert result.total_wait_seconds == pytest.approx(90.0)
    assert result.iterations == 1
    assert result.complete
    assert events.count("=== Iteration 1/1 ===") == 1
    assert "Waiting 30s..." in events
    assert "Waiting 60s..." in events


def test_rate_limit_wait_seconds_buffers_hint_and_caps_backoff() -> None:
    assert rate_limit_wait_seconds(2.0, 3) == 7.0
    assert rate_limit_wait_seconds(0.0, 0) == 30.0
    assert rate_limit_wait_seconds(0.0, 1) == 60.0
    assert rate_limit_wait_seconds(0.0, 5) == 960.0
    assert rate_limit_wait_seconds(0.0, 12) == 960.0


def test_retry_counter_resets_after_a_result_that_is_not_rate_limited(tmp_path: Path) -> None:
    store = FakeStore([ItemState.PENDING, ItemState.PENDING])
    sleep = FakeSleep()
    runner = FakeRunner(
        AgentRunResult(rate_limited=True, exit_code=1),
        AgentRunResult(continue_=True),
        AgentRunResult(rate_limited=True, exit_code=1),
        AgentRunResult(continue_=True),
    )

    result = _loop(store, runner, sleep).run(_config(tmp_path, max_iterations=2))

    assert result.iterations == 2
    assert len(runner.calls) == 4
    assert result.total_wait_seconds == pytest.approx(60.0)
    assert sleep.total == pytest.approx(60.0)
    assert store.progress == [
        "[RATE_LIMIT] Rate limited on iteration 1, waiting 30s before retrying",
        "[RATE_LIMIT] Rate limited on iteration 2, waiting 30s before retrying",
    ]


def test_wait_budget_takes_waits_that_fit_and_stops_at_the_first_that_does_not(
    tmp_path: Path,
) -> None:
    store = FakeStore([ItemState.PENDING])
    sleep = FakeSleep()
    runner = FakeRunner(AgentRunResult(rate_limited=True, exit_code=1))

    result = _loop(store, runner, sleep).run(_config(tmp_path, max_wait_seconds=60))

    assert result.rate_limit_exceeded
    assert result.outcome == LoopOutcome.RATE_LIMIT
    assert result.total_wait_seconds == pytest.approx(30.0)
    assert sleep.total == pytest.approx(30.0)
    assert result.iterations == 0
    assert len(runner.calls) == 2
    assert store.progress[-1] == (
        "[RATE_LIMIT] Rate limit wait budget exhausted on iteration 1: "
        "waited 30s, next wait 60s exceeds max 60s"
    )


def test_premature_complete_is_logged_and_loop_continues(tmp_path: Path) -> None:
    store = FakeStore([ItemState.COMPLETE, ItemState.PENDING])
    runner = FakeRunner(AgentRunResult(complete=True))

    result = _loop(store, runner, FakeSleep()).run(_config(tmp_path, max_iterations=2))

    assert not result.complete
    assert result.iterations == 2
    assert result.outcome == LoopOutcome.MAX_ITERATIONS
    assert len(store.progress) == 2
    assert store.progress[0].startswith("[PREMATURE_COMPLETE] Agent reported COMPLETE")
    assert "1/2 items are terminal" in store.progress[0]


def test_blocked_signal_stops_with_reason(tmp_path: Path) -> None:
    store = FakeStore([ItemState.PENDING])
    runner = FakeRunner(AgentRunResult(blocked=True, blocked_reason="needs API key"))

    result = _loop(store, runner, FakeSleep()).run(_config(tmp_path))

    assert result.blocked
    assert result.blocked_reason == "needs API key"
    assert result.iterations == 1
    assert result.outcome == LoopOutcome.BLOCKED


def test_complete_and_continue_together_prefer_complete(tmp_path: Path) -> None:
    store = FakeStore([ItemState.COMPLETE])
    runner = FakeRunner(AgentRunResult(complete=True, continue_=True, blocked=True))

    result = _loop(store, runner, FakeSleep()).run(_config(tmp_path))

    assert result.complete
    assert not result.blocked


def test_timeout_stops_loop_and_records_progress(tmp_path: Path) -> None:
    store = FakeStore([ItemState.PENDING])
    runner = FakeRunner(AgentRunResult(timed_out=True, exit_code=124))

    result = _loop(store, runner, FakeSleep()).run(
        _config(tmp_path, iteration_timeout_seconds=5),
    )

    assert result.timed_out
    assert result.timeout_message == "Iteration 1 timed out after 5s"
    assert store.progress == ["[TIMEOUT] Iteration 1 timed out after 5s"]
    assert runner.calls[0]["timeout_seconds"] == 5
    assert result.outcome == LoopOutcome.TIMEOUT


def test_items_settling_without_signal_ends_complete(tmp_path: Path) -> None:
    store = FakeStore([ItemState.PENDING])
    runner = FakeRunner(AgentRunResult(), hook=lambda _: store.settle_next(ItemState.BLOCKED))

    result = _loop(store, runner, FakeSleep()).run(_config(tmp_path))

    assert result.complete
    assert result.items_blocked == 1
    assert result.items_complete == 0


def test_run_passes_trust_and_debug_and_writes_last_output(tmp_path: Path) -> None:
    store = FakeStore([ItemState.PENDING])
    provider = FakePromptProvider()
    runner = FakeRunner(AgentRunResult(output="first"), AgentRunResult(output="second"))

    _loop(store, runner, FakeSleep(), prompt_provider=provider).run(
        _config(tmp_path, max_iterations=2, trust=True, debug=True),
    )

    assert provider.calls == [(tmp_path, "auth", True), (tmp_path, "auth", True)]
    assert all(call["trust"] is True for call in runner.calls)
    last_output = SessionWorkdir(tmp_path).last_output_path("auth")
    assert last_output.read_text("utf-8") == "second"


def test_heartbeat_and_events_fire_each_iteration(tmp_path: Path) -> None:
    store = FakeStore([ItemState.PENDING])
    beats: list[int] = []
    events: list[str] = []

    def heartbeat() -> None:
        beats.append(1)
        raise RuntimeError("heartbeat storage unavailable")

    _loop(
        store,
        FakeRunner(AgentRunResult()),
        FakeSleep(),
        heartbeat=heartbeat,
        on_event=events.append,
    ).run(_config(tmp_path, max_iterations=2))

    assert len(beats) == 2
    assert events[0] == "=== Iteration 1/2 ==="
    assert "=== Iteration 2/2 ===" in events


def test_progress_failures_do_not_abort_the_loop(tmp_path: Path) -> None:
    store = FakeStore([ItemState.PENDING])
    store.fail_progress = True
    runner = FakeRunner(AgentRunResult(timed_out=True))

    result = _loop(store, runner, FakeSleep()).run(_config(tmp_path))

    assert result.timed_out


def test_delay_jitter_is_added_to_base_delay(tmp_path: Path) -> None:
    class FixedRandom(random.Random):
        def uniform(self, a: float, b: float) -> float:
            return b / 2

    store = FakeStore([ItemState.PENDING])
    sleep = FakeSleep()

    _loop(store, FakeRunner(AgentRunResult()), sleep, rng=FixedRandom()).run(
        _config(
            tmp_path,
            max_iterations=2,
            iteration_delay_seconds=1.0,
            iteration_delay_jitter_seconds=3.0,
        ),
    )

    assert sleep.calls == [2.5]


def test_missing_session_is_setup_error(tmp_path: Path) -> None:
    runner = FakeRunner(AgentRunResult())

    with pytest.raises(AgentLoopSetupError, match="Session not found"):
        _loop(FakeStore([]), runner, FakeSleep()).run(_config(tmp_path, session_id="other"))

    assert runner.calls == []


@pytest.mark.parametrize("prompt", ["", "   \n"])
def test_empty_prompt_is_setup_error(tmp_path: Path, prompt: str) -> None:
    loop = _loop(
        FakeStore([ItemState.PENDING]),
        FakeRunner(AgentRunResult()),
        FakeSleep(),
        prompt_provider=FakePromptProvider(prompt),
    )

    with pytest.raises(AgentLoopSetupError, match="empty prompt"):
        loop.run(_config(tmp_path))


def test_prompt_provider_failure_is_setup_error(tmp_path: Path) -> None:
    class BrokenProvider:
        def generate(self, project_dir: Path, session_id: str, debug: bool) -> str:
            raise OSError("disk gone")

    loop = _loop(
        FakeStore([ItemState.PENDING]),
        FakeRunner(AgentRunResult()),
        FakeSleep(),
        prompt_provider=BrokenProvider(),
    )

    with pytest.raises(AgentLoopSetupError, match="disk gone"):
        loop.run(_config(tmp_path))


def test_invocation_error_propagates(tmp_path: Path) -> None:
    class FailingRunner:
        def run(self, prompt: str, **kwargs: object) -> AgentRunResult:
            raise AgentInvocationError("Agent command not found: claude")

    loop = AgentLoop(
        store=FakeStore([ItemState.PENDING]),
        prompt_provider=FakePromptProvider(),
        runner=FailingRunner(),
        sleep=FakeSleep(),
    )

    with pytest.raises(AgentInvocationError):
        loop.run(_config(tmp_path))


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_iterations": 0},
        {"session_id": " "},
        {"iteration_delay_seconds": -1.0},
        {"iteration_timeout_seconds": -1.0},
        {"max_wait_seconds": -5.0},
    ],
)
def test_invalid_config_is_rejected(tmp_path: Path, overrides: dict[str, object]) -> None:
    loop = _loop(FakeStore([]), FakeRunner(AgentRunResult()), FakeSleep())

    with pytest.raises(ValueError):
        loop.run(_config(tmp_path, **overrides))


def test_always_continue_without_progress_runs_all_iterations(tmp_path: Path) -> None:
    store = FakeStore([ItemState.PENDING, ItemState.IN_PROGRESS])
    runner = FakeRunner(AgentRunResult(continue_=True))

    result = _loop(store, runner, FakeSleep()).run(_config(tmp_path, max_iterations=4))

    assert result.iterations == 4
    assert result.outcome == LoopOutcome.MAX_ITERATIONS
    assert result.items_total == 2


def test_empty_session_never_completes_through_counts(tmp_path: Path) -> None:
    store = FakeStore([])
    runner = FakeRunner(AgentRunResult(complete=True))

    result = _loop(store, runner, FakeSleep()).run(_config(tmp_path, max_iterations=2))

    assert not result.complete
    assert result.iterations == 2
    assert result.items_total == 0


def test_model_size_is_selected_before_every_invocation(tmp_path: Path) -> None:
    store = FakeStore([ItemState.PENDING])
    sizes = iter([ModelSize.SMALL, ModelSize.LARGE])
    selections: list[tuple[str, ModelSize | None]] = []

    def selector(session_id: str, explicit: ModelSize | None) -> ModelSize | None:
        selections.append((session_id, explicit))
        return next(sizes)

    runner = FakeRunner(AgentRunResult(output="thinking"))

    _loop(store, runner, FakeSleep(), model_selector=selector).run(
        _config(tmp_path, max_iterations=2, model_size=ModelSize.MEDIUM),
    )

    assert selections == [("auth", ModelSize.MEDIUM), ("auth", ModelSize.MEDIUM)]
    assert [call["model_size"] for call in runner.calls] == [ModelSize.SMALL, ModelSize.LARGE]


def test_model_size_falls_back_to_config_without_or_on_failing_selector(tmp_path: Path) -> None:
    def selector(session_id: str, explicit: ModelSize | None) -> ModelSize | None:
        raise RuntimeError("database is locked")

    plain = FakeRunner(AgentRunResult(output="thinking"))
    _loop(FakeStore([ItemState.PENDING]), plain, FakeSleep()).run(
        _config(tmp_path, max_iterations=1, model_size=ModelSize.SMALL),
    )
    failing = FakeRunner(AgentRunResult(output="thinking"))
    _loop(FakeStore([ItemState.PENDING]), failing, FakeSleep(), model_selector=selector).run(
        _config(tmp_path, max_iterations=1),
    )

    assert plain.calls[0]["model_size"] == ModelSize.SMALL
    assert failing.calls[0]["model_size"] is None
