"""SQLModel ORM tables for the item/session store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel


class WorkSessionRow(SQLModel, table=True):
    __tablename__ = "work_sessions"  # type: ignore[bad-override]

    session_id: str = Field(primary_key=True)
    description: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    context: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    acceptance_criteria_json: str = Field(
        default="[]",
        sa_column=Column(Text, nullable=False, server_default="[]"),
    )
    default_model: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkItemRow(SQLModel, table=True):
    __tablename__ = "work_items"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_work_items_state", "state"),)

    item_id: str = Field(primary_key=True)
    title: str = Field(sa_column=Column(Text, nullable=False))
    priority: str = "medium"
    state: str = "pending"
    blocked_reason: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    completion_note: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    model_size: str | None = None
    todos_json: str = Field(
        default="[]",
        sa_column=Column(Text, nullable=False, server_default="[]"),
    )
    acceptance_criteria_json: str = Field(
        default="[]",
        sa_column=Column(Text, nullable=False, server_default="[]"),
    )
    update_count: int = 0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_activity_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class WorkItemTagRow(SQLModel, table=True):
    __tablename__ = "work_item_tags"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_work_item_tags_tag", "tag"),)

    item_id: str = Field(
        sa_column=Column(
            Text,
            ForeignKey("work_items.item_id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    tag: str = Field(primary_key=True)
    position: int = 0


class ProgressEntryRow(SQLModel, table=True):
    __tablename__ = "progress_entries"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_progress_entries_session_time", "session_id", "created_at"),)

    entry_id: int | None = Field(default=None, primary_key=True)
    session_id: str
    text: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentRunRow(SQLModel, table=True):
    __tablename__ = "agent_runs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_agent_runs_session_time", "session_id", "started_at"),
        Index(
            "uq_agent_runs_session_running",
            "session_id",
            unique=True,
            sqlite_where=text("status = 'running'"),
        ),
    )

    run_id: str = Field(primary_key=True)
    session_id: str
    project_dir: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    max_iterations: int
    iterations: int = 0
    blocked_reason: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    timeout_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    items_complete: int = 0
    items_blocked: int = 0
    items_total: int = 0
    total_wait_seconds: float = 0.0
    output_path: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    heartbeat_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    ended_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
