from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from juggle.errors import InvalidTransitionError
from juggle.items.models import (
    ItemState,
    ModelSize,
    Priority,
    SessionCounts,
    Todo,
    WorkItem,
    WorkSession,
    new_item_id,
    select_model_size,
)

pytestmark = [
    allure.epic("Work Items"),
    allure.feature("Item Lifecycle"),
]


def _item(**overrides) -> WorkItem:
    values = {"item_id": "proj-0a1b2c3d", "title": "Write parser"}
    values.update(overrides)
    return WorkItem(**values)


def test_start_moves_pending_item_in_progress_and_stamps_started_at() -> None:
    item = _item()
    moment = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)

    item.start(now=moment)

    assert item.state == ItemState.IN_PROGRESS
    assert item.started_at == moment
    assert item.last_activity_at == moment
    assert item.update_count == 1


def test_start_rejects_non_pending_item() -> None:
    item = _item(state=ItemState.IN_PROGRESS)

    with pytest.raises(InvalidTransitionError, match="Cannot start"):
        item.start()


def test_block_requires_reason_and_unblock_clears_it() -> None:
    item = _item()
    with pytest.raises(InvalidTransitionError, match="needs a reason"):
        item.block("   ")

    item.block("waiting on API keys")
    assert item.state == ItemState.BLOCKED
    assert item.blocked_reason == "waiting on API keys"
    assert item.is_terminal()

    item.unblock()
    assert item.state == ItemState.IN_PROGRESS
    assert item.blocked_reason is None
    assert item.started_at is not None
    assert not item.is_terminal()


def test_complete_requires_note_and_clears_blocked_reason() -> None:
    item = _item()
    item.block("flaky CI")
    with pytest.raises(InvalidTransitionError, match="completion note"):
        item.complete("")

    item.complete("fixed the flaky test")

    assert item.state == ItemState.COMPLETE
    assert item.completion_note == "fixed the flaky test"
    assert item.completed_at is not None
    assert item.blocked_reason is None


def test_complete_item_allows_no_further_transitions() -> None:
    item = _item()
    item.complete("done")

    for action in (item.start, item.unblock, lambda: item.block("x"), lambda: item.complete("y")):
        with pytest.raises(InvalidTransitionError):
            action()


def test_invalid_transition_error_is_value_error() -> None:
    assert issubclass(InvalidTransitionError, ValueError)


def test_state_parse_accepts_legacy_vocabulary() -> None:
    assert ItemState.parse("ready") == ItemState.PENDING
    assert ItemState.parse("juggling") == ItemState.IN_PROGRESS
    assert ItemState.parse("dropped") == ItemState.BLOCKED
    assert ItemState.parse("complete") == ItemState.COMPLETE
    assert ItemState.parse("In-Progress") == ItemState.IN_PROGRESS

    with pytest.raises(ValueError, match="Unknown item state"):
        ItemState.parse("archived")


def test_priority_weights_are_ordered() -> None:
    weights = [priority.weight for priority in (Priority.LOW, Priority.MEDIUM, Priority.HIGH)]
    assert weights == sorted(weights)
    assert Priority.URGENT.weight > Priority.HIGH.weight


def test_tags_are_deduplicated_and_link_sessions() -> None:
    item = _item()
    assert item.add_tag("alpha")
    assert not item.add_tag("alpha")
    assert item.add_tag("beta")
    assert item.tags == ["alpha", "beta"]

    assert WorkSession(session_id="alpha").links(item)
    assert item.remove_tag("alpha")
    assert not item.remove_tag("alpha")
    assert not WorkSession(session_id="alpha").links(item)


def test_toggle_todo_uses_one_based_index() -> None:
    item = _item()
    item.add_todo("write tests")
    item.add_todo("ship it")

    toggled = item.toggle_todo(2)

    assert toggled.done
    assert not item.todos[0].done
    with pytest.raises(IndexError, match="Invalid todo index"):
        item.toggle_todo(3)


def test_todo_dict_round_trip_keeps_description() -> None:
    todo = Todo(text="check logs", done=True, description="look for 429s")

    assert Todo.from_dict(todo.to_dict()) == todo
    assert "description" not in Todo(text="plain").to_dict()


def test_session_counts_blocked_items_are_terminal_but_not_complete() -> None:
    counts = SessionCounts.from_states(
        [ItemState.COMPLETE, ItemState.BLOCKED, ItemState.PENDING],
    )

    assert counts == SessionCounts(terminal=2, complete=1, blocked=1, total=3)
    assert not counts.all_terminal
    assert SessionCounts.from_states([ItemState.COMPLETE, ItemState.BLOCKED]).all_terminal


def test_empty_session_is_never_all_terminal() -> None:
    assert not SessionCounts().all_terminal


def test_new_item_id_uses_project_dir_name(tmp_path: Path) -> None:
    project_dir = tmp_path / "my-project"
    project_dir.mkdir()

    item_id = new_item_id(project_dir)

    prefix, _, suffix = item_id.rpartition("-")
    assert prefix == "my-project"
    assert len(suffix) == 8
    assert _item(item_id=item_id).short_id == suffix


def _sized(size: ModelSize | None, state: ItemState = ItemState.PENDING) -> WorkItem:
    return _item(model_size=size, state=state)


def test_select_model_size_prefers_explicit_then_session_default() -> None:
    work_session = WorkSession(session_id="auth", default_model=ModelSize.MEDIUM)
    items = [_sized(ModelSize.SMALL), _sized(ModelSize.SMALL)]

    assert select_model_size(work_session, items, ModelSize.LARGE) == ModelSize.LARGE
    assert select_model_size(work_session, items) == ModelSize.MEDIUM


@pytest.mark.parametrize(
    ("items", "expected"),
    [
        (
            [_sized(ModelSize.SMALL), _sized(ModelSize.SMALL), _sized(ModelSize.LARGE)],
            ModelSize.SMALL,
        ),
        ([_sized(ModelSize.SMALL), _sized(ModelSize.LARGE)], ModelSize.LARGE),
        ([_sized(ModelSize.MEDIUM), _sized(ModelSize.SMALL)], ModelSize.MEDIUM),
        (
            [_sized(ModelSize.LARGE, ItemState.COMPLETE), _sized(ModelSize.SMALL)],
            ModelSize.SMALL,
        ),
        ([_sized(None), _sized(None, ItemState.IN_PROGRESS)], ModelSize.LARGE),
        ([_sized(ModelSize.SMALL, ItemState.COMPLETE)], ModelSize.LARGE),
        ([], ModelSize.LARGE),
    ],
)
def test_select_model_size_takes_majority_of_open_items(
    items: list[WorkItem],
    expected: ModelSize,
) -> None:
    assert select_model_size(WorkSession(session_id="auth"), items) == expected
    assert select_model_size(None, items) == expected
