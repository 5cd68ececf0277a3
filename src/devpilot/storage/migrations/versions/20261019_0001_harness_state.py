"""Initial harness state schema: checkpoints, history, execution log, job journal."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "harness_checkpoints",
        sa.Column("project_dir", sa.String(), nullable=False),
        sa.Column("mode", sa.String(), nullable=False),
        sa.Column("schema_version", sa.Integer(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("current_step_id", sa.String(), nullable=True),
        sa.Column("current_provider_id", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("project_dir", "mode"),
    )
    op.create_index(
        "ix_harness_checkpoints_state",
        "harness_checkpoints",
        ["state"],
        unique=False,
    )

    op.create_table(
        "checkpoint_history",
        sa.Column("history_id", sa.Integer(), nullable=False),
        sa.Column("project_dir", sa.String(), nullable=False),
        sa.Column("mode", sa.String(), nullable=False),
        sa.Column("schema_version", sa.Integer(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("current_step_id", sa.String(), nullable=True),
        sa.Column("current_provider_id", sa.String(), nullable=True),
        sa.Column("completed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("history_id"),
    )
    op.create_index(
        "ix_checkpoint_history_scope",
        "checkpoint_history",
        ["project_dir", "mode", "history_id"],
        unique=False,
    )

    op.create_table(
        "execution_log_entries",
        sa.Column("entry_id", sa.Integer(), nullable=False),
        sa.Column("project_dir", sa.String(), nullable=False),
        sa.Column("mode", sa.String(), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("level", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("logged_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("entry_id"),
        sa.UniqueConstraint("project_dir", "mode", "seq", name="uq_execution_log_scope_seq"),
    )
    op.create_index(
        "ix_execution_log_entries_project_dir",
        "execution_log_entries",
        ["project_dir"],
        unique=False,
    )

    op.create_table(
        "harness_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("project_dir", sa.String(), nullable=False),
        sa.Column("mode", sa.String(), nullable=False),
        sa.Column("step_id", sa.String(), nullable=False),
        sa.Column("provider_id", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result_preview", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("logs_json", sa.Text(), nullable=True),
        sa.Column("stop_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_harness_jobs_project_dir", "harness_jobs", ["project_dir"], unique=False)
    op.create_index("ix_harness_jobs_status", "harness_jobs", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_harness_jobs_status", table_name="harness_jobs")
    op.drop_index("ix_harness_jobs_project_dir", table_name="harness_jobs")
    op.drop_table("harness_jobs")
    op.drop_index("ix_execution_log_entries_project_dir", table_name="execution_log_entries")
    op.drop_table("execution_log_entries")
    op.drop_index("ix_checkpoint_history_scope", table_name="checkpoint_history")
    op.drop_table("checkpoint_history")
    op.drop_index("ix_harness_checkpoints_state", table_name="harness_checkpoints")
    op.drop_table("harness_checkpoints")
