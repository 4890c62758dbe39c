"""Controllers for session, item, and progress CLI commands."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from juggle.config import Settings
from juggle.items.models import (
    ItemState,
    ModelSize,
    Priority,
    WorkItem,
    new_item_id,
)
from juggle.items.repository import ItemRepository


@dataclass(slots=True)
class SessionCreateCommand:
    """CLI input for session creation."""

    db_path: Path | None
    session_id: str
    description: str
    context: str
    acceptance_criteria: tuple[str, ...]
    default_model: str | None


@dataclass(slots=True)
class SessionShowCommand:
    db_path: Path | None
    session_id: str


@dataclass(slots=True)
class SessionListCommand:
    db_path: Path | None


@dataclass(slots=True)
class ItemAddCommand:
    """CLI input for item creation."""

    db_path: Path | None
    project_dir: Path | None
    title: str
    priority: str
    sessions: tuple[str, ...]
    tags: tuple[str, ...]
    acceptance_criteria: tuple[str, ...]
    model_size: str | None


@dataclass(slots=True)
class ItemShowCommand:
    db_path: Path | None
    item_id: str


@dataclass(slots=True)
class ItemListCommand:
    """CLI input for item listing."""

    db_path: Path | None
    session_id: str | None
    states: tuple[str, ...]


@dataclass(slots=True)
class ItemTransitionCommand:
    """CLI input for start/block/unblock/complete; ``text`` is the reason or note."""

    db_path: Path | None
    item_id: str
    text: str | None = None


@dataclass(slots=True)
class ItemTagCommand:
    db_path: Path | None
    item_id: str
    add: tuple[str, ...]
    remove: tuple[str, ...]


@dataclass(slots=True)
class ItemTodoCommand:
    db_path: Path | None
    item_id: str
    add: tuple[str, ...]
    toggle: tuple[int, ...]


@dataclass(slots=True)
class ProgressAppendCommand:
    db_path: Path | None
    session_id: str
    text: str


@dataclass(slots=True)
class ProgressShowCommand:
    db_path: Path | None
    session_id: str
    limit: int | None


class ItemsCliController:
    """Coordinates session, item, and progress CLI operations."""

    def create_session(self, command: SessionCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with repository_from_settings(settings) as repository:
            work_session = repository.create_session(
                command.session_id,
                description=command.description,
                context=command.context,
                acceptance_criteria=command.acceptance_criteria,
                default_model=_parse_model_size(command.default_model),
            )
        return [f"Session created: {work_session.session_id}"]

    def show_session(self, command: SessionShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with repository_from_settings(settings) as repository:
            work_session = repository.load_session(command.session_id)
            items = repository.list_items(session_id=command.session_id)
            counts = repository.session_counts(command.session_id)

        lines = [f"Session: {work_session.session_id}"]
        if work_session.description:
            lines.append(f"Description: {work_session.description}")
        if work_session.default_model is not None:
            lines.append(f"Default model: {work_session.default_model.value}")
        if work_session.context:
            lines.append("Context:")
            lines.extend(f"  {line}" for line in work_session.context.splitlines())
        if work_session.acceptance_criteria:
            lines.append("Acceptance criteria:")
            lines.extend(
                f"  {index}. {criterion}"
                for index, criterion in enumerate(work_session.acceptance_criteria, start=1)
            )
        lines.append(
            f"Items: complete={counts.complete} blocked={counts.blocked} total={counts.total}",
        )
        lines.extend(_item_summary_line(item) for item in items)
        return lines

    def list_sessions(self, command: SessionListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with repository_from_settings(settings) as repository:
            sessions = repository.list_sessions()
            rows = [
                (work_session, repository.session_counts(work_session.session_id))
                for work_session in sessions
            ]
        if not rows:
            return ["No sessions."]
        return [
            f"{work_session.session_id}: complete={counts.complete} blocked={counts.blocked} "
            f"total={counts.total}"
            + (f" | {work_session.description}" if work_session.description else "")
            for work_session, counts in rows
        ]

    def add_item(self, command: ItemAddCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir, db_path=command.db_path)
        title = command.title.strip()
        if not title:
            raise ValueError("Item title must be non-empty.")
        with repository_from_settings(settings) as repository:
            for session_id in command.sessions:
                repository.load_session(session_id)
            tags = [tag.strip() for tag in (*command.sessions, *command.tags) if tag.strip()]
            item = WorkItem(
                item_id=new_item_id(settings.project_dir),
                title=title,
                priority=_parse_priority(command.priority),
                tags=list(dict.fromkeys(tags)),
                acceptance_criteria=[
                    criterion.strip()
                    for criterion in command.acceptance_criteria
                    if criterion.strip()
                ],
                model_size=_parse_model_size(command.model_size),
            )
            stored = repository.add_item(item)
        return [f"Item added: {stored.item_id} ({stored.short_id})"]

    def show_item(self, command: ItemShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with repository_from_settings(settings) as repository:
            item = repository.get_item(command.item_id)

        lines = [
            f"Item: {item.item_id}",
            f"Title: {item.title}",
            f"State: {item.state.value}",
            f"Priority: {item.priority.value}",
        ]
        if item.model_size is not None:
            lines.append(f"Model size: {item.model_size.value}")
        if item.tags:
            lines.append(f"Tags: {', '.join(item.tags)}")
        if item.blocked_reason:
            lines.append(f"Blocked: {item.blocked_reason}")
        if item.completion_note:
            lines.append(f"Completion note: {item.completion_note}")
        if item.acceptance_criteria:
            lines.append("Acceptance criteria:")
            lines.extend(
                f"  {index}. {criterion}"
                for index, criterion in enumerate(item.acceptance_criteria, start=1)
            )
        if item.todos:
            lines.append("Todos:")
            lines.extend(
                f"  {index}. [{'x' if todo.done else ' '}] {todo.text}"
                for index, todo in enumerate(item.todos, start=1)
            )
        lines.append(f"Created: {item.created_at.isoformat()}")
        if item.started_at is not None:
            lines.append(f"Started: {item.started_at.isoformat()}")
        if item.completed_at is not None:
            lines.append(f"Completed: {item.completed_at.isoformat()}")
        lines.append(f"Updates: {item.update_count}")
        return lines

    def list_items(self, command: ItemListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        states = [ItemState.parse(value) for value in command.states] or None
        with repository_from_settings(settings) as repository:
            items = repository.list_items(session_id=command.session_id, states=states)
        if not items:
            return ["No items."]
        return [_item_summary_line(item) for item in items]

    def start_item(self, command: ItemTransitionCommand) -> list[str]:
        return self._transition(command, lambda item: item.start(), verb="started")

    def block_item(self, command: ItemTransitionCommand) -> list[str]:
        return self._transition(
            command,
            lambda item: item.block(command.text or ""),
            verb="blocked",
        )

    def unblock_item(self, command: ItemTransitionCommand) -> list[str]:
        return self._transition(command, lambda item: item.unblock(), verb="unblocked")

    def complete_item(self, command: ItemTransitionCommand) -> list[str]:
        return self._transition(
            command,
            lambda item: item.complete(command.text or ""),
            verb="completed",
        )

    def tag_item(self, command: ItemTagCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with repository_from_settings(settings) as repository:
            item = repository.get_item(command.item_id)
            for tag in command.add:
                item.add_tag(tag)
            for tag in command.remove:
                item.remove_tag(tag)
            stored = repository.update_item(item)
        return [f"Item {stored.item_id} tags: {', '.join(stored.tags) or '(none)'}"]

    def todo_item(self, command: ItemTodoCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with repository_from_settings(settings) as repository:
            item = repository.get_item(command.item_id)
            for text in command.add:
                if not text.strip():
                    raise ValueError("Todo text must be non-empty.")
                item.add_todo(text)
            for index in command.toggle:
                try:
                    item.toggle_todo(index)
                except IndexError as error:
                    raise ValueError(str(error)) from error
            stored = repository.update_item(item)

        lines = [f"Item {stored.item_id} todos:"]
        lines.extend(
            f"  {index}. [{'x' if todo.done else ' '}] {todo.text}"
            for index, todo in enumerate(stored.todos, start=1)
        )
        return lines

    def append_progress(self, command: ProgressAppendCommand) -> list[str]:
        text = command.text.strip()
        if not text:
            raise ValueError("Progress text must be non-empty.")
        settings = Settings.from_env(db_path=command.db_path)
        with repository_from_settings(settings) as repository:
            repository.load_session(command.session_id)
            entry = repository.append_progress_line(command.session_id, text)
        return [f"Progress appended to {entry.session_id}: {entry.render()}"]

    def show_progress(self, command: ProgressShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with repository_from_settings(settings) as repository:
            repository.load_session(command.session_id)
            entries = repository.list_progress(command.session_id, limit=command.limit)
        if not entries:
            return [f"No progress recorded for {command.session_id}."]
        return [entry.render() for entry in entries]

    def _transition(
        self,
        command: ItemTransitionCommand,
        apply: Callable[[WorkItem], None],
        *,
        verb: str,
    ) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with repository_from_settings(settings) as repository:
            item = repository.get_item(command.item_id)
            apply(item)
            stored = repository.update_item(item)
        return [f"Item {verb}: {stored.item_id} [{stored.state.value}]"]


@contextmanager
def repository_from_settings(settings: Settings) -> Iterator[ItemRepository]:
    repository = ItemRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.store.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


def _item_summary_line(item: WorkItem) -> str:
    line = f"{item.short_id} [{item.state.value}] ({item.priority.value}) {item.title}"
    if item.blocked_reason:
        line += f" | blocked: {item.blocked_reason}"
    return line


def _parse_priority(value: str) -> Priority:
    try:
        return Priority(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(priority.value for priority in Priority)
        raise ValueError(f"Unknown priority {value!r} (expected one of: {allowed})") from error


def _parse_model_size(value: str | None) -> ModelSize | None:
    if value is None or not value.strip():
        return None
    try:
        return ModelSize(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(size.value for size in ModelSize)
        raise ValueError(f"Unknown model size {value!r} (expected one of: {allowed})") from error

