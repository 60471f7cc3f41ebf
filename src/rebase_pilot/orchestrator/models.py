"""Domain models for job orchestration."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobPriority(str, Enum):
    """Ordered priority tiers; lower rank is dequeued first."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANKS[self]


_PRIORITY_RANKS = {
    JobPriority.HIGH: 0,
    JobPriority.NORMAL: 1,
    JobPriority.LOW: 2,
}


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    RETRYABLE_TRANSIENT = "retryable_transient"
    TIMEOUT = "timeout"
    LOCK_CONTENTION = "lock_contention"
    UNRESOLVABLE_CONFLICT = "unresolvable_conflict"
    GIT_NON_RETRYABLE = "git_non_retryable"
    GENERATOR_NON_RETRYABLE = "generator_non_retryable"
    INTERNAL_ERROR = "internal_error"


RETRYABLE_FAILURE_CLASSES = frozenset(
    {
        FailureClass.RETRYABLE_TRANSIENT,
        FailureClass.TIMEOUT,
        FailureClass.LOCK_CONTENTION,
    },
)


@dataclass(slots=True)
class JobConfig:
    """Opaque job configuration carried through to the worker."""

    branch: str
    target_branch: str
    task: str = ""
    environment: dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "branch": self.branch,
            "target_branch": self.target_branch,
            "task": self.task,
            "environment": dict(self.environment),
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> JobConfig:
        environment = payload.get("environment") or {}
        return cls(
            branch=str(payload.get("branch", "")),
            target_branch=str(payload.get("target_branch", "")),
            task=str(payload.get("task", "")),
            environment={str(key): str(value) for key, value in environment.items()},
        )


@dataclass(slots=True)
class JobSubmission:
    """Input payload for submitting a job."""

    user_id: str
    organization_id: str
    repository: str
    config: JobConfig
    priority: JobPriority = JobPriority.NORMAL
    max_retries: int = 3
    operation: str = "standard"
    estimated_cost: int = 1
    parent_job_id: str | None = None
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for manager, worker and CLI logic."""

    job_id: str
    user_id: str
    organization_id: str
    repository: str
    status: JobStatus
    priority: JobPriority
    operation: str
    estimated_cost: int
    config: JobConfig
    retry_count: int
    max_retries: int
    parent_job_id: str | None
    failure_class: FailureClass | None
    error_message: str | None
    blocking_files: tuple[str, ...]
    worker_id: str | None
    retry_after: datetime | None
    created_at: datetime
    queued_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    canceled_at: datetime | None
    updated_at: datetime

    @property
    def retries_left(self) -> int:
        return max(self.max_retries - self.retry_count, 0)

    @property
    def retry_chain_length(self) -> int:
        """Depth of this job in its retry chain, without walking parent links."""

        return self.retry_count

    @property
    def finished_at(self) -> datetime | None:
        return self.canceled_at or self.completed_at


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobStatusSnapshot:
    """Job with event stream and per-method resolution attempt counts."""

    job: JobView
    events: list[JobEventView]
    attempt_counts: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class JobOutcome:
    """Terminal report produced by a worker run for one job."""

    job_id: str
    status: JobStatus
    failure_class: FailureClass | None = None
    error_message: str | None = None
    blocking_files: tuple[str, ...] = ()
    retried: bool = False
