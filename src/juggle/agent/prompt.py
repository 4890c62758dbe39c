"""Render a session and its open items into an agent prompt."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from juggle.items.models import (
    ItemState,
    ModelSize,
    ProgressEntry,
    WorkItem,
    WorkSession,
    select_model_size,
)

PROGRESS_TAIL_LINES = 50

_STATE_ORDER = {
    ItemState.IN_PROGRESS: 0,
    ItemState.PENDING: 1,
    ItemState.BLOCKED: 2,
    ItemState.COMPLETE: 3,
}

_WORKFLOW_INSTRUCTIONS = """\
Work through the items above, one at a time, starting with the first one.

Workflow:
1. Pick the first item that is not blocked and run `juggle item start <id>` if it is pending.
2. Implement it until every acceptance criterion is met and the checks pass.
3. Run `juggle item complete <id> --note "<what changed>"`.
4. Record what you did with `juggle progress append "<summary>"`.
5. If an item cannot proceed, run `juggle item block <id> --reason "<why>"`.

Finish your reply with exactly one signal:
- `<promise>CONTINUE: <summary></promise>` when you finished an item and others remain.
- `<promise>COMPLETE: <summary></promise>` when every item is complete.
- `<promise>BLOCKED: <reason></promise>` when no remaining item can make progress.
"""

_DEBUG_INSTRUCTIONS = """
## DEBUG MODE

Before outputting your signal, explain WHY you chose it with
`juggle progress append "[DEBUG] <reasoning>"`.
"""


class PromptStore(Protocol):
    def load_session(self, session_id: str) -> WorkSession: ...

    def list_items(
        self,
        *,
        session_id: str | None = None,
        states: Iterable[ItemState] | None = None,
    ) -> list[WorkItem]: ...

    def list_progress(
        self,
        session_id: str,
        *,
        limit: int | None = None,
    ) -> list[ProgressEntry]: ...


class SessionPromptProvider:
    """Prompt provider reading current session state from the item store on every call."""

    def __init__(self, store: PromptStore) -> None:
        self.store = store

    def generate(self, project_dir: Path, session_id: str, debug: bool) -> str:
        work_session = self.store.load_session(session_id)
        items = self.store.list_items(session_id=session_id)
        progress = self.store.list_progress(session_id, limit=PROGRESS_TAIL_LINES)
        return render_prompt(
            project_dir=project_dir,
            work_session=work_session,
            items=items,
            progress=progress,
            debug=debug,
        )

    def select_model(self, session_id: str, explicit: ModelSize | None = None) -> ModelSize:
        """Model size for the next iteration, from the session and its open items."""

        return select_model_size(
            self.store.load_session(session_id),
            self.store.list_items(session_id=session_id),
            explicit,
        )


def render_prompt(
    *,
    project_dir: Path,
    work_session: WorkSession,
    items: list[WorkItem],
    progress: list[ProgressEntry],
    debug: bool = False,
) -> str:
    """Build the plain-text prompt; complete items are summarised, not listed."""

    open_items = sorted(
        (item for item in items if item.state != ItemState.COMPLETE),
        key=lambda item: (_STATE_ORDER[item.state], -item.priority.weight, item.created_at),
    )
    completed = len(items) - len(open_items)

    parts: list[str] = ["<context>"]
    if work_session.description:
        parts.append(f"# {work_session.description}\n")
    if work_session.context:
        parts.append(work_session.context.rstrip("\n"))
    parts.append(f"Project directory: {project_dir}")
    parts.append("</context>\n")

    parts.extend(["<session>", work_session.session_id, "</session>\n"])

    parts.append("<progress>")
    parts.extend(entry.render() for entry in progress)
    parts.append("</progress>\n")

    if work_session.acceptance_criteria:
        parts.append("<global-acceptance-criteria>")
        parts.append("These criteria apply to ALL items in this session:")
        parts.extend(
            f"  {index}. {criterion}"
            for index, criterion in enumerate(work_session.acceptance_criteria, start=1)
        )
        parts.append("</global-acceptance-criteria>\n")

    parts.append("<items>")
    parts.append(f"{completed} of {len(items)} items complete.")
    for item in open_items:
        parts.append("")
        parts.extend(_render_item(item))
    parts.append("</items>\n")

    instructions = _WORKFLOW_INSTRUCTIONS
    if debug:
        instructions += _DEBUG_INSTRUCTIONS
    parts.extend(["<instructions>", instructions.rstrip("\n"), "</instructions>"])
    return "\n".join(parts) + "\n"


def _render_item(item: WorkItem) -> list[str]:
    header = f"## {item.item_id} [{item.state.value}] (priority: {item.priority.value})"
    if item.model_size is not None:
        header += f" (model: {item.model_size.value})"
    lines = [header, f"Title: {item.title}"]
    if item.acceptance_criteria:
        lines.append("Acceptance Criteria:")
        lines.extend(
            f"  {index}. {criterion}"
            for index, criterion in enumerate(item.acceptance_criteria, start=1)
        )
    if item.todos:
        lines.append("Todos:")
        for index, todo in enumerate(item.todos, start=1):
            mark = "x" if todo.done else " "
            lines.append(f"  {index}. [{mark}] {todo.text}")
    if item.state == ItemState.BLOCKED and item.blocked_reason:
        lines.append(f"Blocked: {item.blocked_reason}")
    if item.tags:
        lines.append(f"Tags: {', '.join(item.tags)}")
    return lines
