"""Domain models for work items, sessions, and the item lifecycle."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from uuid import uuid4

from juggle.errors import InvalidTransitionError
from juggle.storage.common import utc_now


class Priority(str, Enum):
    """Ordered item priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def weight(self) -> int:
        return _PRIORITY_WEIGHTS[self]


_PRIORITY_WEIGHTS = {
    Priority.LOW: 1,
    Priority.MEDIUM: 2,
    Priority.HIGH: 3,
    Priority.URGENT: 4,
}


class ItemState(str, Enum):
    """Item lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETE = "complete"

    @classmethod
    def parse(cls, value: str) -> ItemState:
        """Parse a state name, accepting the legacy ready/juggling/dropped vocabulary."""

        normalized = value.strip().lower().replace("-", "_")
        normalized = _LEGACY_STATE_ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError as error:
            allowed = ", ".join(state.value for state in cls)
            raise ValueError(
                f"Unknown item state {value!r} (expected one of: {allowed})",
            ) from error


_LEGACY_STATE_ALIASES = {
    "ready": "pending",
    "juggling": "in_progress",
    "dropped": "blocked",
}

TERMINAL_STATES = frozenset({ItemState.COMPLETE, ItemState.BLOCKED})


class ModelSize(str, Enum):
    """Preferred agent model size."""

    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


_MODEL_SIZE_RANK = {
    ModelSize.SMALL: 1,
    ModelSize.MEDIUM: 2,
    ModelSize.LARGE: 3,
}


@dataclass(slots=True)
class Todo:
    """Ordered checklist entry on an item."""

    text: str
    done: bool = False
    description: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"text": self.text, "done": self.done}
        if self.description:
            payload["description"] = self.description
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, object]) -> Todo:
        description = payload.get("description")
        return cls(
            text=str(payload.get("text", "")),
            done=bool(payload.get("done", False)),
            description=str(description) if description else None,
        )


@dataclass(slots=True)
class WorkItem:
    """A trackable unit of work.

    State changes go through ``start``/``block``/``unblock``/``complete`` so
    that ``blocked_reason`` is set only while Blocked and ``completion_note``
    and ``completed_at`` only while Complete.
    """

    item_id: str
    title: str
    priority: Priority = Priority.MEDIUM
    state: ItemState = ItemState.PENDING
    tags: list[str] = field(default_factory=list)
    todos: list[Todo] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    blocked_reason: str | None = None
    completion_note: str | None = None
    model_size: ModelSize | None = None
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    last_activity_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None
    update_count: int = 0

    @property
    def short_id(self) -> str:
        _, _, suffix = self.item_id.rpartition("-")
        return suffix or self.item_id

    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags

    def start(self, *, now: datetime | None = None) -> None:
        self._require_state("start", ItemState.PENDING)
        moment = now or utc_now()
        self.state = ItemState.IN_PROGRESS
        self.started_at = moment
        self._touch(moment)

    def block(self, reason: str, *, now: datetime | None = None) -> None:
        self._require_state("block", ItemState.PENDING, ItemState.IN_PROGRESS)
        if not reason.strip():
            raise InvalidTransitionError("A blocked item needs a reason.")
        self.state = ItemState.BLOCKED
        self.blocked_reason = reason.strip()
        self._touch(now or utc_now())

    def unblock(self, *, now: datetime | None = None) -> None:
        self._require_state("unblock", ItemState.BLOCKED)
        moment = now or utc_now()
        self.state = ItemState.IN_PROGRESS
        self.blocked_reason = None
        if self.started_at is None:
            self.started_at = moment
        self._touch(moment)

    def complete(self, note: str, *, now: datetime | None = None) -> None:
        self._require_state(
            "complete",
            ItemState.PENDING,
            ItemState.IN_PROGRESS,
            ItemState.BLOCKED,
        )
        if not note.strip():
            raise InvalidTransitionError("Completing an item needs a completion note.")
        moment = now or utc_now()
        self.state = ItemState.COMPLETE
        self.blocked_reason = None
        self.completion_note = note.strip()
        self.completed_at = moment
        self._touch(moment)

    def add_tag(self, tag: str) -> bool:
        normalized = tag.strip()
        if not normalized or normalized in self.tags:
            return False
        self.tags.append(normalized)
        self._touch(utc_now())
        return True

    def remove_tag(self, tag: str) -> bool:
        if tag not in self.tags:
            return False
        self.tags.remove(tag)
        self._touch(utc_now())
        return True

    def add_todo(self, text: str, *, description: str | None = None) -> Todo:
        todo = Todo(text=text.strip(), description=description)
        self.todos.append(todo)
        self._touch(utc_now())
        return todo

    def toggle_todo(self, index: int) -> Todo:
        """Flip the done flag of a todo by 1-based index."""

        if index < 1 or index > len(self.todos):
            raise IndexError(f"Invalid todo index: {index} (have {len(self.todos)} todos)")
        todo = self.todos[index - 1]
        todo.done = not todo.done
        self._touch(utc_now())
        return todo

    def add_acceptance_criterion(self, criterion: str) -> None:
        self.acceptance_criteria.append(criterion.strip())
        self._touch(utc_now())

    def _require_state(self, action: str, *allowed: ItemState) -> None:
        if self.state not in allowed:
            raise InvalidTransitionError(
                f"Cannot {action} item {self.item_id} in state {self.state.value}.",
            )

    def _touch(self, moment: datetime) -> None:
        self.last_activity_at = moment
        self.update_count += 1


@dataclass(slots=True)
class WorkSession:
    """Tag-identified group of items sharing context and acceptance criteria."""

    session_id: str
    description: str = ""
    context: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    default_model: ModelSize | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def links(self, item: WorkItem) -> bool:
        return item.has_tag(self.session_id)


@dataclass(slots=True, frozen=True)
class SessionCounts:
    """Terminal/complete/blocked/total counters for one session."""

    terminal: int = 0
    complete: int = 0
    blocked: int = 0
    total: int = 0

    @property
    def all_terminal(self) -> bool:
        """True when the session has items and none can make further progress."""

        return self.total > 0 and self.terminal == self.total

    @classmethod
    def from_states(cls, states: list[ItemState]) -> SessionCounts:
        complete = sum(1 for state in states if state == ItemState.COMPLETE)
        blocked = sum(1 for state in states if state == ItemState.BLOCKED)
        return cls(
            terminal=complete + blocked,
            complete=complete,
            blocked=blocked,
            total=len(states),
        )


def select_model_size(
    work_session: WorkSession | None,
    items: Iterable[WorkItem],
    explicit: ModelSize | None = None,
) -> ModelSize:
    """Pick the model size for the next agent iteration.

    An explicit choice wins, then the session default, then the size most
    open items prefer. Complete items do not vote and ties go to the larger
    model; with no preference at all the large model is used.
    """

    if explicit is not None:
        return explicit
    if work_session is not None and work_session.default_model is not None:
        return work_session.default_model

    votes = Counter(
        item.model_size
        for item in items
        if item.state != ItemState.COMPLETE and item.model_size is not None
    )
    if not votes:
        return ModelSize.LARGE
    return max(votes, key=lambda size: (votes[size], _MODEL_SIZE_RANK[size]))


def new_item_id(project_dir: Path) -> str:
    """Build ``<project-dir-name>-<8 hex>`` item identifiers."""

    base = project_dir.resolve().name or "item"
    return f"{base}-{uuid4().hex[:8]}"


@dataclass(slots=True)
class ProgressEntry:
    """One appended line of a session's progress log."""

    session_id: str
    text: str
    created_at: datetime

    def render(self) -> str:
        return f"[{self.created_at.strftime('%Y-%m-%d %H:%M:%S')}] {self.text}"
