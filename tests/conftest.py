"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from juggle.items.repository import ItemRepository

ECHO_AGENT_MODULE = "juggle.agent.backend.echo_agent"


def echo_agent_template(*args: str) -> str:
    """Command template running the scripted echo agent with the current interpreter."""

    parts = [shlex.quote(sys.executable), "-m", ECHO_AGENT_MODULE]
    parts.extend(shlex.quote(arg) for arg in args)
    return " ".join(parts)


@pytest.fixture(autouse=True)
def _isolated_juggle_env(monkeypatch) -> None:
    """Keep host JUGGLE_* variables out of tests."""

    for name in list(os.environ):
        if name.startswith("JUGGLE_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[ItemRepository]:
    repo = ItemRepository(tmp_path / "juggle.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def echo_template():
    """Factory for echo agent command templates."""

    return echo_agent_template
