"""Runner interface for agent invocations."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from juggle.agent.models import AgentRunResult
from juggle.items.models import ModelSize

EchoSink = Callable[[str], None]


class AgentRunner(Protocol):
    """Protocol implemented by agent runners."""

    def run(
        self,
        prompt: str,
        *,
        trust: bool,
        timeout_seconds: float,
        model_size: ModelSize | None = None,
    ) -> AgentRunResult:
        """Invoke the agent once and return its parsed result.

        ``model_size`` picks one of the agent's sized models; ``None`` leaves
        the agent's own default in place.

        Raises ``AgentInvocationError`` only when the agent cannot be invoked.
        Rate limits, timeouts and promise signals are reported in the result.
        """
