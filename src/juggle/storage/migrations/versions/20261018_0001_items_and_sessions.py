"""Create work sessions, work items, item tags and progress log tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "work_sessions",
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("context", sa.Text(), nullable=False, server_default=""),
        sa.Column("acceptance_criteria_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("default_model", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("session_id"),
    )

    op.create_table(
        "work_items",
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("priority", sa.String(), nullable=False, server_default="medium"),
        sa.Column("state", sa.String(), nullable=False, server_default="pending"),
        sa.Column("blocked_reason", sa.Text(), nullable=True),
        sa.Column("completion_note", sa.Text(), nullable=True),
        sa.Column("model_size", sa.String(), nullable=True),
        sa.Column("todos_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("acceptance_criteria_json", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("update_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("item_id"),
    )
    op.create_index("idx_work_items_state", "work_items", ["state"], unique=False)

    op.create_table(
        "work_item_tags",
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column("tag", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["item_id"], ["work_items.item_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("item_id", "tag"),
    )
    op.create_index("idx_work_item_tags_tag", "work_item_tags", ["tag"], unique=False)

    op.create_table(
        "progress_entries",
        sa.Column("entry_id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("entry_id"),
    )
    op.create_index(
        "idx_progress_entries_session_time",
        "progress_entries",
        ["session_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_progress_entries_session_time", table_name="progress_entries")
    op.drop_table("progress_entries")
    op.drop_index("idx_work_item_tags_tag", table_name="work_item_tags")
    op.drop_table("work_item_tags")
    op.drop_index("idx_work_items_state", table_name="work_items")
    op.drop_table("work_items")
    op.drop_table("work_sessions")
