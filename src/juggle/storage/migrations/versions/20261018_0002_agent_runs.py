"""Add agent run history with a single active run per session."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "agent_runs",
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("project_dir", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("max_iterations", sa.Integer(), nullable=False),
        sa.Column("iterations", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("blocked_reason", sa.Text(), nullable=True),
        sa.Column("timeout_message", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("items_complete", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("items_blocked", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("items_total", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_wait_seconds", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("output_path", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("heartbeat_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index(
        "idx_agent_runs_session_time",
        "agent_runs",
        ["session_id", "started_at"],
        unique=False,
    )
    op.execute(
        sa.text(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS uq_agent_runs_session_running
            ON agent_runs (session_id)
            WHERE status = 'running'
            """,
        ),
    )


def downgrade() -> None:
    op.execute(sa.text("DROP INDEX IF EXISTS uq_agent_runs_session_running"))
    op.drop_index("idx_agent_runs_session_time", table_name="agent_runs")
    op.drop_table("agent_runs")
