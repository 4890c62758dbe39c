"""Agent runner implementations."""

from juggle.agent.backend.base import AgentRunner, EchoSink
from juggle.agent.backend.cli_backend import (
    AGENT_PRESETS,
    AUTONOMOUS_SYSTEM_PROMPT,
    AgentPreset,
    CliAgentRunner,
    build_cli_runner,
)

__all__ = [
    "AGENT_PRESETS",
    "AUTONOMOUS_SYSTEM_PROMPT",
    "AgentPreset",
    "AgentRunner",
    "CliAgentRunner",
    "EchoSink",
    "build_cli_runner",
]
