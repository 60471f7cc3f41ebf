"""SQLModel ORM tables for job orchestration storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_jobs_status_queued", "status", "priority", "queued_at"),)

    job_id: str = Field(primary_key=True)
    user_id: str = Field(index=True)
    organization_id: str = Field(index=True)
    repository: str = Field(index=True)
    status: str = Field(index=True)
    priority: str = Field(default="normal", index=True)
    operation: str = Field(default="standard")
    estimated_cost: int = Field(default=1)
    config_json: str = Field(sa_column=Column(Text, nullable=False))
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    parent_job_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    failure_class: str | None = Field(default=None, index=True)
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    blocking_files_json: str | None = Field(default=None, sa_column=Column(Text))
    worker_id: str | None = Field(default=None, index=True)
    retry_after: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    queued_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    canceled_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None)
    status_to: str | None = Field(default=None)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ResolutionAttemptRecord(SQLModel, table=True):
    __tablename__ = "resolution_attempts"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_resolution_attempts_job_file", "job_id", "file_path"),)

    id: int | None = Field(default=None, primary_key=True)
    attempt_id: str = Field(unique=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    file_path: str = Field(index=True)
    conflict_index: int
    start_line: int
    language: str
    binary: bool = Field(default=False)
    method: str = Field(index=True)
    success: bool
    syntax_check: str
    security_check: str
    semantic_check: str
    tests_check: str
    rationale: str = Field(sa_column=Column(Text, nullable=False))
    candidate_text: str | None = Field(default=None, sa_column=Column(Text))
    ours_text: str = Field(sa_column=Column(Text, nullable=False))
    theirs_text: str = Field(sa_column=Column(Text, nullable=False))
    target_branch: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UsageCounterRow(SQLModel, table=True):
    __tablename__ = "usage_counters"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "scope",
            "scope_id",
            "window_start",
            name="uq_usage_counters_scope_window",
        ),
    )

    id: int | None = Field(default=None, primary_key=True)
    scope: str = Field(index=True)
    scope_id: str = Field(index=True)
    window_start: int = Field(index=True)
    used: int = Field(default=0)
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class RepositoryLease(SQLModel, table=True):
    __tablename__ = "repository_leases"  # type: ignore[bad-override]

    repository_id: str = Field(primary_key=True)
    lease_id: str = Field(index=True)
    holder: str
    acquired_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
