"""SQLModel ORM tables for harness state."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class HarnessCheckpoint(SQLModel, table=True):
    __tablename__ = "harness_checkpoints"  # type: ignore[bad-override]

    project_dir: str = Field(primary_key=True)
    mode: str = Field(primary_key=True)
    schema_version: int
    state: str = Field(index=True)
    current_step_id: str | None = None
    current_provider_id: str | None = None
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class CheckpointHistoryEntry(SQLModel, table=True):
    __tablename__ = "checkpoint_history"  # type: ignore[bad-override]
    __table_args__ = (
        Index("ix_checkpoint_history_scope", "project_dir", "mode", "history_id"),
    )

    history_id: int | None = Field(default=None, primary_key=True)
    project_dir: str
    mode: str
    schema_version: int
    state: str
    current_step_id: str | None = None
    current_provider_id: str | None = None
    completed_count: int = 0
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    recorded_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ExecutionLogRow(SQLModel, table=True):
    __tablename__ = "execution_log_entries"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("project_dir", "mode", "seq", name="uq_execution_log_scope_seq"),
    )

    entry_id: int | None = Field(default=None, primary_key=True)
    project_dir: str = Field(index=True)
    mode: str
    seq: int
    level: str
    message: str = Field(sa_column=Column(Text, nullable=False))
    logged_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class HarnessJobRow(SQLModel, table=True):
    __tablename__ = "harness_jobs"  # type: ignore[bad-override]

    job_id: str = Field(primary_key=True)
    project_dir: str = Field(index=True)
    mode: str
    step_id: str
    provider_id: str
    attempt: int = 1
    status: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    result_preview: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    logs_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    stop_requested: bool = False
