"""Job orchestration schema: jobs, events, resolution audit, usage, leases."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("organization_id", sa.String(), nullable=False),
        sa.Column("repository", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.String(), nullable=False, server_default="normal"),
        sa.Column("operation", sa.String(), nullable=False, server_default="standard"),
        sa.Column("estimated_cost", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("config_json", sa.Text(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("parent_job_id", sa.String(), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("blocking_files_json", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("retry_after", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["parent_job_id"], ["jobs.job_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_jobs_user_id", "jobs", ["user_id"], unique=False)
    op.create_index("ix_jobs_organization_id", "jobs", ["organization_id"], unique=False)
    op.create_index("ix_jobs_repository", "jobs", ["repository"], unique=False)
    op.create_index("ix_jobs_status", "jobs", ["status"], unique=False)
    op.create_index("ix_jobs_priority", "jobs", ["priority"], unique=False)
    op.create_index("ix_jobs_parent_job_id", "jobs", ["parent_job_id"], unique=False)
    op.create_index("ix_jobs_failure_class", "jobs", ["failure_class"], unique=False)
    op.create_index("ix_jobs_worker_id", "jobs", ["worker_id"], unique=False)
    op.create_index(
        "idx_jobs_status_queued",
        "jobs",
        ["status", "priority", "queued_at"],
        unique=False,
    )

    op.create_table(
        "job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_job_events_job_id", "job_events", ["job_id"], unique=False)
    op.create_index("ix_job_events_event_type", "job_events", ["event_type"], unique=False)
    op.create_index(
        "idx_job_events_job_time",
        "job_events",
        ["job_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "resolution_attempts",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("attempt_id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("file_path", sa.String(), nullable=False),
        sa.Column("conflict_index", sa.Integer(), nullable=False),
        sa.Column("start_line", sa.Integer(), nullable=False),
        sa.Column("language", sa.String(), nullable=False),
        sa.Column("binary", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("method", sa.String(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("syntax_check", sa.String(), nullable=False),
        sa.Column("security_check", sa.String(), nullable=False),
        sa.Column("semantic_check", sa.String(), nullable=False),
        sa.Column("tests_check", sa.String(), nullable=False),
        sa.Column("rationale", sa.Text(), nullable=False),
        sa.Column("candidate_text", sa.Text(), nullable=True),
        sa.Column("ours_text", sa.Text(), nullable=False),
        sa.Column("theirs_text", sa.Text(), nullable=False),
        sa.Column("target_branch", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("attempt_id"),
    )
    op.create_index("ix_resolution_attempts_job_id", "resolution_attempts", ["job_id"])
    op.create_index("ix_resolution_attempts_file_path", "resolution_attempts", ["file_path"])
    op.create_index("ix_resolution_attempts_method", "resolution_attempts", ["method"])
    op.create_index(
        "idx_resolution_attempts_job_file",
        "resolution_attempts",
        ["job_id", "file_path"],
        unique=False,
    )

    op.create_table(
        "usage_counters",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("scope", sa.String(), nullable=False),
        sa.Column("scope_id", sa.String(), nullable=False),
        sa.Column("window_start", sa.Integer(), nullable=False),
        sa.Column("used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "scope",
            "scope_id",
            "window_start",
            name="uq_usage_counters_scope_window",
        ),
    )
    op.create_index("ix_usage_counters_scope", "usage_counters", ["scope"])
    op.create_index("ix_usage_counters_scope_id", "usage_counters", ["scope_id"])
    op.create_index("ix_usage_counters_window_start", "usage_counters", ["window_start"])

    op.create_table(
        "repository_leases",
        sa.Column("repository_id", sa.String(), nullable=False),
        sa.Column("lease_id", sa.String(), nullable=False),
        sa.Column("holder", sa.String(), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("repository_id"),
    )
    op.create_index("ix_repository_leases_lease_id", "repository_leases", ["lease_id"])


def downgrade() -> None:
    op.drop_index("ix_repository_leases_lease_id", table_name="repository_leases")
    op.drop_table("repository_leases")
    op.drop_index("ix_usage_counters_window_start", table_name="usage_counters")
    op.drop_index("ix_usage_counters_scope_id", table_name="usage_counters")
    op.drop_index("ix_usage_counters_scope", table_name="usage_counters")
    op.drop_table("usage_counters")
    op.drop_index("idx_resolution_attempts_job_file", table_name="resolution_attempts")
    op.drop_index("ix_resolution_attempts_method", table_name="resolution_attempts")
    op.drop_index("ix_resolution_attempts_file_path", table_name="resolution_attempts")
    op.drop_index("ix_resolution_attempts_job_id", table_name="resolution_attempts")
    op.drop_table("resolution_attempts")
    op.drop_index("idx_job_events_job_time", table_name="job_events")
    op.drop_index("ix_job_events_event_type", table_name="job_events")
    op.drop_index("ix_job_events_job_id", table_name="job_events")
    op.drop_table("job_events")
    op.drop_index("idx_jobs_status_queued", table_name="jobs")
    op.drop_index("ix_jobs_worker_id", table_name="jobs")
    op.drop_index("ix_jobs_failure_class", table_name="jobs")
    op.drop_index("ix_jobs_parent_job_id", table_name="jobs")
    op.drop_index("ix_jobs_priority", table_name="jobs")
    op.drop_index("ix_jobs_status", table_name="jobs")
    op.drop_index("ix_jobs_repository", table_name="jobs")
    op.drop_index("ix_jobs_organization_id", table_name="jobs")
    op.drop_index("ix_jobs_user_id", table_name="jobs")
    op.drop_table("jobs")
