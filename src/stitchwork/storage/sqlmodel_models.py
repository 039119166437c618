"""SQLModel ORM tables for the job queue, recurring jobs and the agent thread log."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, text
from sqlmodel import Field, SQLModel


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "idx_jobs_claim_order",
            "locked_by",
            "run_at",
            "priority",
            "created_at",
        ),
        Index("idx_jobs_name", "name"),
    )

    job_id: str = Field(primary_key=True)
    name: str
    payload: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = 0
    run_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    locked_by: str | None = None
    locked_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    context: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    attempts: int = 0
    last_error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    dead_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class Cron(SQLModel, table=True):
    __tablename__ = "crons"  # type: ignore[bad-override]

    cron_id: str = Field(primary_key=True)
    name: str = Field(unique=True)
    last_run_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentThread(SQLModel, table=True):
    __tablename__ = "threads"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_threads_status_created", "status", "created_at"),
    )

    thread_id: str = Field(primary_key=True)
    # Not a foreign key: stitches reference threads, so the cycle is kept one-way.
    branching_stitch_id: str | None = Field(default=None, index=True)
    goal: str = Field(sa_column=Column(Text, nullable=False))
    tasks: str = Field(default="[]", sa_column=Column(Text, nullable=False, server_default="[]"))
    status: str = Field(index=True)
    result: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    pending_child_results: str = Field(
        default="[]",
        sa_column=Column(Text, nullable=False, server_default="[]"),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Stitch(SQLModel, table=True):
    __tablename__ = "stitches"  # type: ignore[bad-override]
    __table_args__ = (
        Index(
            "uq_stitches_thread_previous",
            "thread_id",
            "previous_stitch_id",
            unique=True,
        ),
        Index(
            "uq_stitches_thread_root",
            "thread_id",
            unique=True,
            sqlite_where=text("previous_stitch_id IS NULL"),
        ),
    )

    stitch_id: str = Field(primary_key=True)
    thread_id: str = Field(
        sa_column=Column(
            ForeignKey("threads.thread_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    previous_stitch_id: str | None = Field(
        default=None,
        sa_column=Column(ForeignKey("stitches.stitch_id"), nullable=True),
    )
    stitch_type: str
    llm_request: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    llm_response: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    tool_name: str | None = None
    tool_input: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    tool_output: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    child_thread_id: str | None = None
    thread_result_summary: str | None = Field(
        default=None,
        sa_column=Column(Text, nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
