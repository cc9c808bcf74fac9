"""SQLModel ORM tables for job orchestration storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_owner_created", "owner_id", "created_at"),
        Index("idx_jobs_scope_created", "scope_id", "created_at"),
    )

    job_id: str = Field(primary_key=True)
    owner_id: str
    scope_id: str
    session_id: str | None = None
    kind: str
    command: str = Field(sa_column=Column(Text, nullable=False))
    options_json: str | None = Field(default=None, sa_column=Column(Text))
    working_dir: str | None = None
    status: str = Field(index=True)
    process_id: int | None = None
    exit_code: int | None = None
    output: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    accumulated_response: str | None = Field(default=None, sa_column=Column(Text))
    tool_session_id: str | None = None
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobLog(SQLModel, table=True):
    __tablename__ = "job_logs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_logs_job_time", "job_id", "timestamp"),)

    log_id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    level: str
    message: str = Field(sa_column=Column(Text, nullable=False))
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    timestamp: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ScopeSnapshot(SQLModel, table=True):
    __tablename__ = "scope_snapshots"  # type: ignore[bad-override]

    owner_id: str = Field(primary_key=True)
    scope_id: str = Field(primary_key=True)
    object_path: str | None = None
    last_job_id: str | None = None
    last_sync_status: str | None = None
    last_sync_error: str | None = Field(default=None, sa_column=Column(Text))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
