from pathlib import Path

import allure
from sqlalchemy import text

from juggle.items.repository import ItemRepository

pytestmark = [
    allure.epic("Work Items"),
    allure.feature("Item Store"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = ItemRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table'
                  AND name IN ('work_sessions', 'work_items', 'work_item_tags',
                               'progress_entries', 'agent_runs')
                ORDER BY name
                """,
            ),
        ).scalars().all()
        partial_index = connection.execute(
            text(
                "SELECT sql FROM sqlite_master "
                "WHERE type = 'index' AND name = 'uq_agent_runs_session_running'",
            ),
        ).scalar_one()
    repository.close()

    assert version == "20261018_0002"
    assert tables == [
        "agent_runs",
        "progress_entries",
        "work_item_tags",
        "work_items",
        "work_sessions",
    ]
    assert "status = 'running'" in partial_index


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "nested" / "juggle.db"
    for _ in range(2):
        repository = ItemRepository(db_path)
        repository.init_schema()
        repository.close()

    assert db_path.exists()
