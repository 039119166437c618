"""Job queue, agent threads and stitch log (baseline)."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_by", sa.String(), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("context", sa.Text(), nullable=False, server_default=""),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("dead_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index(
        "idx_jobs_claim_order",
        "jobs",
        ["locked_by", "run_at", "priority", "created_at"],
        unique=False,
    )
    op.create_index("idx_jobs_name", "jobs", ["name"], unique=False)

    op.create_table(
        "threads",
        sa.Column("thread_id", sa.String(), nullable=False),
        sa.Column("branching_stitch_id", sa.String(), nullable=True),
        sa.Column("goal", sa.Text(), nullable=False),
        sa.Column("tasks", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("pending_child_results", sa.Text(), nullable=False, server_default="[]"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("thread_id"),
    )
    op.create_index(
        "ix_threads_branching_stitch_id",
        "threads",
        ["branching_stitch_id"],
        unique=False,
    )
    op.create_index("ix_threads_status", "threads", ["status"], unique=False)
    op.create_index(
        "idx_threads_status_created",
        "threads",
        ["status", "created_at"],
        unique=False,
    )

    op.create_table(
        "stitches",
        sa.Column("stitch_id", sa.String(), nullable=False),
        sa.Column("thread_id", sa.String(), nullable=False),
        sa.Column("previous_stitch_id", sa.String(), nullable=True),
        sa.Column("stitch_type", sa.String(), nullable=False),
        sa.Column("llm_request", sa.Text(), nullable=True),
        sa.Column("llm_response", sa.Text(), nullable=True),
        sa.Column("tool_name", sa.String(), nullable=True),
        sa.Column("tool_input", sa.Text(), nullable=True),
        sa.Column("tool_output", sa.Text(), nullable=True),
        sa.Column("child_thread_id", sa.String(), nullable=True),
        sa.Column("thread_result_summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["thread_id"], ["threads.thread_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["previous_stitch_id"], ["stitches.stitch_id"]),
        sa.PrimaryKeyConstraint("stitch_id"),
    )
    op.create_index("ix_stitches_thread_id", "stitches", ["thread_id"], unique=False)
    op.create_index(
        "uq_stitches_thread_previous",
        "stitches",
        ["thread_id", "previous_stitch_id"],
        unique=True,
    )
    op.create_index(
        "uq_stitches_thread_root",
        "stitches",
        ["thread_id"],
        unique=True,
        sqlite_where=sa.text("previous_stitch_id IS NULL"),
    )


def downgrade() -> None:
    op.drop_index("uq_stitches_thread_root", table_name="stitches")
    op.drop_index("uq_stitches_thread_previous", table_name="stitches")
    op.drop_index("ix_stitches_thread_id", table_name="stitches")
    op.drop_table("stitches")
    op.drop_index("idx_threads_status_created", table_name="threads")
    op.drop_index("ix_threads_status", table_name="threads")
    op.drop_index("ix_threads_branching_stitch_id", table_name="threads")
    op.drop_table("threads")
    op.drop_index("idx_jobs_name", table_name="jobs")
    op.drop_index("idx_jobs_claim_order", table_name="jobs")
    op.drop_table("jobs")
