"""CLI entrypoint for juggle."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from juggle import __version__
from juggle.agent.controllers import AgentCliController, AgentHistoryCommand, AgentRunCommand
from juggle.config import SUPPORTED_AGENTS, SUPPORTED_LOG_LEVELS
from juggle.errors import JuggleError
from juggle.items.controllers import (
    ItemAddCommand,
    ItemListCommand,
    ItemsCliController,
    ItemShowCommand,
    ItemTagCommand,
    ItemTodoCommand,
    ItemTransitionCommand,
    ProgressAppendCommand,
    ProgressShowCommand,
    SessionCreateCommand,
    SessionListCommand,
    SessionShowCommand,
)
from juggle.items.models import ModelSize, Priority

click.rich_click.USE_MARKDOWN = True
ITEMS_CONTROLLER = ItemsCliController()
AGENT_CONTROLLER = AgentCliController(echo=click.echo)

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path (defaults to JUGGLE_DB_PATH or <project>/.juggle/juggle.db).",
)
session_option = click.option(
    "--session",
    "session_id",
    envvar="JUGGLE_SESSION_ID",
    required=True,
    help="Session id (defaults to JUGGLE_SESSION_ID).",
)
MODEL_SIZES = [size.value for size in ModelSize]


@click.group()
@click.version_option(version=__version__, prog_name="juggle")
@click.option(
    "--log-level",
    envvar="JUGGLE_LOG_LEVEL",
    type=click.Choice(SUPPORTED_LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def juggle(log_level: str) -> None:
    """Track work items in sessions and drive coding agents through them."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@juggle.group()
def session() -> None:
    """Session commands."""


@session.command("create")
@db_path_option
@click.argument("session_id")
@click.option("--description", "-d", default="", help="Short session description.")
@click.option("--context", "context_text", default="", help="Free-text context for agents.")
@click.option(
    "--ac",
    "acceptance_criteria",
    multiple=True,
    help="Session-level acceptance criterion. Can be repeated.",
)
@click.option(
    "--default-model",
    type=click.Choice(MODEL_SIZES),
    default=None,
    help="Preferred model size for the session.",
)
def session_create(  # noqa: PLR0913
    db_path: Path | None,
    session_id: str,
    description: str,
    context_text: str,
    acceptance_criteria: tuple[str, ...],
    default_model: str | None,
) -> None:
    """Create a session; items join it by carrying its id as a tag."""

    _run(
        lambda: ITEMS_CONTROLLER.create_session(
            SessionCreateCommand(
                db_path=db_path,
                session_id=session_id,
                description=description,
                context=context_text,
                acceptance_criteria=acceptance_criteria,
                default_model=default_model,
            ),
        ),
    )


@session.command("show")
@db_path_option
@click.argument("session_id")
def session_show(db_path: Path | None, session_id: str) -> None:
    """Show a session with its linked items."""

    _run(
        lambda: ITEMS_CONTROLLER.show_session(
            SessionShowCommand(db_path=db_path, session_id=session_id),
        ),
    )


@session.command("list")
@db_path_option
def session_list(db_path: Path | None) -> None:
    """List sessions with item counts."""

    _run(lambda: ITEMS_CONTROLLER.list_sessions(SessionListCommand(db_path=db_path)))


@juggle.group()
def item() -> None:
    """Work item commands."""


@item.command("add")
@db_path_option
@click.argument("title")
@click.option(
    "--project-dir",
    type=click.Path(path_type=Path, file_okay=False),
    envvar="JUGGLE_PROJECT_DIR",
    default=None,
    help="Project directory used for the item id prefix.",
)
@click.option(
    "--priority",
    "-p",
    type=click.Choice([priority.value for priority in Priority]),
    default=Priority.MEDIUM.value,
    show_default=True,
)
@click.option(
    "--session",
    "sessions",
    multiple=True,
    help="Session to link the item to. Can be repeated.",
)
@click.option("--tag", "tags", multiple=True, help="Extra tag. Can be repeated.")
@click.option(
    "--ac",
    "acceptance_criteria",
    multiple=True,
    help="Acceptance criterion. Can be repeated.",
)
@click.option("--model-size", type=click.Choice(MODEL_SIZES), default=None)
def item_add(  # noqa: PLR0913
    db_path: Path | None,
    title: str,
    project_dir: Path | None,
    priority: str,
    sessions: tuple[str, ...],
    tags: tuple[str, ...],
    acceptance_criteria: tuple[str, ...],
    model_size: str | None,
) -> None:
    """Add a pending work item."""

    _run(
        lambda: ITEMS_CONTROLLER.add_item(
            ItemAddCommand(
                db_path=db_path,
                project_dir=project_dir,
                title=title,
                priority=priority,
                sessions=sessions,
                tags=tags,
                acceptance_criteria=acceptance_criteria,
                model_size=model_size,
            ),
        ),
    )


@item.command("show")
@db_path_option
@click.argument("item_id")
def item_show(db_path: Path | None, item_id: str) -> None:
    """Show one item by full id or short id."""

    _run(lambda: ITEMS_CONTROLLER.show_item(ItemShowCommand(db_path=db_path, item_id=item_id)))


@item.command("list")
@db_path_option
@click.option("--session", "session_id", default=None, help="Only items linked to this session.")
@click.option(
    "--state",
    "states",
    multiple=True,
    help="Filter by state (pending, in_progress, blocked, complete). Can be repeated.",
)
def item_list(db_path: Path | None, session_id: str | None, states: tuple[str, ...]) -> None:
    """List items, highest priority first."""

    _run(
        lambda: ITEMS_CONTROLLER.list_items(
            ItemListCommand(db_path=db_path, session_id=session_id, states=states),
        ),
    )


@item.command("start")
@db_path_option
@click.argument("item_id")
def item_start(db_path: Path | None, item_id: str) -> None:
    """Move a pending item to in_progress."""

    _run(
        lambda: ITEMS_CONTROLLER.start_item(
            ItemTransitionCommand(db_path=db_path, item_id=item_id),
        ),
    )


@item.command("block")
@db_path_option
@click.argument("item_id")
@click.option("--reason", required=True, help="Why the item cannot proceed.")
def item_block(db_path: Path | None, item_id: str, reason: str) -> None:
    """Mark an item blocked."""

    _run(
        lambda: ITEMS_CONTROLLER.block_item(
            ItemTransitionCommand(db_path=db_path, item_id=item_id, text=reason),
        ),
    )


@item.command("unblock")
@db_path_option
@click.argument("item_id")
def item_unblock(db_path: Path | None, item_id: str) -> None:
    """Move a blocked item back to in_progress."""

    _run(
        lambda: ITEMS_CONTROLLER.unblock_item(
            ItemTransitionCommand(db_path=db_path, item_id=item_id),
        ),
    )


@item.command("complete")
@db_path_option
@click.argument("item_id")
@click.option("--note", required=True, help="What was done.")
def item_complete(db_path: Path | None, item_id: str, note: str) -> None:
    """Mark an item complete."""

    _run(
        lambda: ITEMS_CONTROLLER.complete_item(
            ItemTransitionCommand(db_path=db_path, item_id=item_id, text=note),
        ),
    )


@item.command("tag")
@db_path_option
@click.argument("item_id")
@click.option("--add", "add_tags", multiple=True, help="Tag to add. Can be repeated.")
@click.option("--remove", "remove_tags", multiple=True, help="Tag to remove. Can be repeated.")
def item_tag(
    db_path: Path | None,
    item_id: str,
    add_tags: tuple[str, ...],
    remove_tags: tuple[str, ...],
) -> None:
    """Add or remove item tags (a session id tag links the item to that session)."""

    _run(
        lambda: ITEMS_CONTROLLER.tag_item(
            ItemTagCommand(db_path=db_path, item_id=item_id, add=add_tags, remove=remove_tags),
        ),
    )


@item.command("todo")
@db_path_option
@click.argument("item_id")
@click.option("--add", "add_todos", multiple=True, help="Todo text to append. Can be repeated.")
@click.option(
    "--toggle",
    "toggle_indexes",
    type=click.IntRange(min=1),
    multiple=True,
    help="1-based todo index to toggle. Can be repeated.",
)
def item_todo(
    db_path: Path | None,
    item_id: str,
    add_todos: tuple[str, ...],
    toggle_indexes: tuple[int, ...],
) -> None:
    """Add or toggle item todos."""

    _run(
        lambda: ITEMS_CONTROLLER.todo_item(
            ItemTodoCommand(
                db_path=db_path,
                item_id=item_id,
                add=add_todos,
                toggle=toggle_indexes,
            ),
        ),
    )


@juggle.group()
def progress() -> None:
    """Session progress log commands."""


@progress.command("append")
@db_path_option
@session_option
@click.argument("text")
def progress_append(db_path: Path | None, session_id: str, text: str) -> None:
    """Append a line to a session progress log."""

    _run(
        lambda: ITEMS_CONTROLLER.append_progress(
            ProgressAppendCommand(db_path=db_path, session_id=session_id, text=text),
        ),
    )


@progress.command("show")
@db_path_option
@session_option
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=None,
    help="Only show the last N lines.",
)
def progress_show(db_path: Path | None, session_id: str, limit: int | None) -> None:
    """Show a session progress log."""

    _run(
        lambda: ITEMS_CONTROLLER.show_progress(
            ProgressShowCommand(db_path=db_path, session_id=session_id, limit=limit),
        ),
    )


@juggle.group()
def agent() -> None:
    """Agent loop commands."""


@agent.command("run")
@db_path_option
@click.argument("session_id")
@click.option(
    "--project-dir",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Project directory the agent works in (defaults to JUGGLE_PROJECT_DIR or cwd).",
)
@click.option(
    "--iterations",
    "-n",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum agent iterations.",
)
@click.option(
    "--trust",
    is_flag=True,
    default=False,
    help="Run the agent without permission prompts.",
)
@click.option("--debug", is_flag=True, default=False, help="Ask the agent to explain its signals.")
@click.option(
    "--delay",
    type=click.FloatRange(min=0),
    default=None,
    help="Seconds to wait between iterations.",
)
@click.option(
    "--timeout",
    type=click.FloatRange(min=0),
    default=None,
    help="Per-iteration timeout in seconds (0 disables).",
)
@click.option(
    "--max-wait",
    type=click.FloatRange(min=0),
    default=None,
    help="Total rate-limit wait budget in seconds (0 is unbounded).",
)
@click.option(
    "--agent",
    "agent_name",
    type=click.Choice(SUPPORTED_AGENTS),
    default=None,
    help="Agent CLI to drive (defaults to JUGGLE_AGENT).",
)
@click.option(
    "--model",
    "model_size",
    type=click.Choice(MODEL_SIZES),
    default=None,
    help="Model size for every iteration (defaults to session, then item preferences).",
)
def agent_run(  # noqa: PLR0913
    db_path: Path | None,
    session_id: str,
    project_dir: Path | None,
    iterations: int | None,
    trust: bool,
    debug: bool,
    delay: float | None,
    timeout: float | None,
    max_wait: float | None,
    agent_name: str | None,
    model_size: str | None,
) -> None:
    """Run the agent loop on a session until its items settle."""

    _run(
        lambda: AGENT_CONTROLLER.run(
            AgentRunCommand(
                db_path=db_path,
                project_dir=project_dir,
                session_id=session_id,
                iterations=iterations,
                trust=trust,
                debug=debug,
                delay_seconds=delay,
                timeout_seconds=timeout,
                max_wait_seconds=max_wait,
                agent=agent_name,
                model_size=ModelSize(model_size) if model_size else None,
            ),
        ),
    )


@agent.command("history")
@db_path_option
@click.argument("session_id", required=False)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="How many recent runs to show.",
)
def agent_history(db_path: Path | None, session_id: str | None, limit: int) -> None:
    """Show recent agent runs, optionally for one session."""

    _run(
        lambda: AGENT_CONTROLLER.history(
            AgentHistoryCommand(db_path=db_path, session_id=session_id, limit=limit),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (JuggleError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    juggle()
