"""Exception hierarchy shared by the store, the agent runner, and the loop."""

from __future__ import annotations


class JuggleError(RuntimeError):
    """Base class for expected, user-reportable failures."""


class SessionNotFoundError(JuggleError):
    """Raised when a session id does not exist in the store."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class ItemNotFoundError(JuggleError):
    """Raised when an item id (full or short) cannot be resolved."""

    def __init__(self, item_id: str, *, ambiguous: bool = False) -> None:
        reason = "ambiguous item id" if ambiguous else "item not found"
        super().__init__(f"{reason.capitalize()}: {item_id}")
        self.item_id = item_id
        self.ambiguous = ambiguous


class AgentLoopSetupError(JuggleError):
    """Loop could not start or could not build a prompt for an iteration."""


class AgentInvocationError(JuggleError):
    """Agent process could not be spawned or its output could not be captured."""


class AgentRunInProgressError(JuggleError):
    """Another agent run already holds the session."""

    def __init__(self, session_id: str, *, run_id: str, heartbeat_at: str) -> None:
        super().__init__(
            "Another agent run is already active for this session "
            f"(session={session_id}, run_id={run_id}, heartbeat_at={heartbeat_at}).",
        )
        self.session_id = session_id
        self.run_id = run_id


class InvalidTransitionError(ValueError):
    """Requested lifecycle transition is not allowed from the current state."""
