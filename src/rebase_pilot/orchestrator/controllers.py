"""Controllers for job, worker and resolution CLI commands."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from rebase_pilot.config import Settings
from rebase_pilot.orchestrator.errors import BudgetExceeded
from rebase_pilot.orchestrator.models import JobConfig, JobPriority, JobStatus, JobSubmission
from rebase_pilot.orchestrator.services import Orchestrator, build_orchestrator, build_pipeline
from rebase_pilot.resolution.audit import AuditStream, InMemoryAuditLog
from rebase_pilot.resolution.parser import ConflictParser

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobSubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    user_id: str
    organization_id: str
    repository: str
    branch: str
    target_branch: str
    task: str = ""
    environment: tuple[str, ...] = ()
    priority: str = JobPriority.NORMAL.value
    max_retries: int | None = None
    operation: str = "standard"
    estimated_cost: int = 1


@dataclass(slots=True)
class JobInspectCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobListCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class JobMutateCommand:
    """CLI input for cancel/resubmit/admit operations."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    workers: int | None = None
    max_jobs: int | None = None
    idle_timeout_seconds: float | None = None


@dataclass(slots=True)
class ResolveCheckCommand:
    """CLI input for a dry-run resolution of one conflicted file."""

    file_path: Path
    fallback_policy: str | None = None


class OrchestratorCliController:
    """Coordinates job, worker and inspection CLI operations."""

    def submit(self, command: JobSubmitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        submission = JobSubmission(
            user_id=command.user_id,
            organization_id=command.organization_id,
            repository=command.repository,
            config=JobConfig(
                branch=command.branch,
                target_branch=command.target_branch,
                task=command.task,
                environment=_parse_environment(command.environment),
            ),
            priority=JobPriority(command.priority),
            max_retries=(
                command.max_retries
                if command.max_retries is not None
                else settings.worker.default_max_retries
            ),
            operation=command.operation,
            estimated_cost=command.estimated_cost,
        )
        with _orchestrator(settings) as orchestrator:
            job_id = orchestrator.manager.submit_job(submission)
            job = orchestrator.repository.require_job(job_id=job_id)
        return [
            f"Job submitted: job_id={job.job_id} status={job.status.value} "
            f"priority={job.priority.value}",
        ]

    def status(self, command: JobInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            snapshot = orchestrator.manager.get_job_status(command.job_id)

        job = snapshot.job
        lines = [
            f"Job: {job.job_id}",
            f"Repository: {job.repository} ({job.config.branch} -> {job.config.target_branch})",
            f"Status: {job.status.value}",
            f"Priority: {job.priority.value}",
            f"Retries: {job.retry_count}/{job.max_retries}",
            f"Parent: {job.parent_job_id or '-'}",
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Error: {job.error_message or '-'}",
            f"Blocking files: {', '.join(job.blocking_files) or '-'}",
            f"Retry after: {job.retry_after.isoformat() if job.retry_after else '-'}",
            f"Finished: {job.finished_at.isoformat() if job.finished_at else '-'}",
            "Attempts: "
            + (
                " ".join(f"{method}={count}" for method, count in sorted(snapshot.attempt_counts.items()))
                or "-"
            ),
            f"Events: {len(snapshot.events)}",
        ]
        for event in snapshot.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _orchestrator(settings) as orchestrator:
            jobs = orchestrator.repository.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} repo={job.repository} status={job.status.value} "
                f"priority={job.priority.value} retries={job.retry_count}/{job.max_retries} "
                f"created_at={job.created_at.isoformat()}",
            )
        return lines

    def cancel(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            job = orchestrator.manager.cancel_job(command.job_id)
        if job.status == JobStatus.RUNNING:
            return [f"Cancellation requested: {job.job_id} (running, stops at next checkpoint)"]
        return [f"Job cancelled: {job.job_id} status={job.status.value}"]

    def resubmit(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            job_id = orchestrator.manager.resubmit_job(command.job_id)
            job = orchestrator.repository.require_job(job_id=job_id)
        return [
            f"Job resubmitted: job_id={job.job_id} parent={job.parent_job_id} "
            f"retries={job.retry_count}/{job.max_retries} status={job.status.value}",
        ]

    def admit(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            job = orchestrator.manager.admit_pending(command.job_id)
        return [f"Job admitted: {job.job_id} status={job.status.value}"]

    def attempts(self, command: JobInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _orchestrator(settings) as orchestrator:
            orchestrator.repository.require_job(job_id=command.job_id)
            records = orchestrator.repository.list_resolution_attempts(job_id=command.job_id)

        lines = [f"Resolution attempts: {len(records)}"]
        for record in records:
            lines.append(
                f"  {record.created_at.isoformat()} {record.file_path}:{record.start_line} "
                f"#{record.conflict_index} {record.method.value} "
                f"success={'yes' if record.success else 'no'} "
                f"syntax={record.syntax.value} security={record.security.value} "
                f"semantic={record.semantic.value} tests={record.tests.value} "
                f"rationale={record.rationale}",
            )
        return lines

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.workers:
            settings.worker.worker_count = command.workers
        with _orchestrator(settings) as orchestrator:
            restored = orchestrator.manager.restore_queue()
            logger.info("Worker pool starting with %d restored jobs", restored)
            pool = orchestrator.build_workers(command.workers)
            summary = pool.run(
                max_jobs=command.max_jobs,
                max_idle_polls=_idle_polls(
                    command.idle_timeout_seconds,
                    poll_interval_seconds=settings.worker.poll_interval_seconds,
                ),
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"cancelled={summary.cancelled} idle_polls={summary.idle_polls}",
        ]

    def resolve_check(self, command: ResolveCheckCommand) -> list[str]:
        """Dry-run the fallback ladder on one conflicted file; nothing is written."""

        settings = Settings.from_env()
        if command.fallback_policy is not None:
            settings.pipeline.fallback_policy = command.fallback_policy
        settings.validate()
        document = ConflictParser(context_lines=settings.pipeline.context_lines).parse(
            command.file_path.as_posix(),
            command.file_path.read_bytes(),
        )
        if not document.conflicts:
            return [f"No conflicts in {command.file_path}"]

        log = InMemoryAuditLog()
        pipeline = build_pipeline(settings, generator=None, audit=AuditStream([log]))
        try:
            result = pipeline.resolve(list(document.conflicts), target_branch="(dry-run)")
        finally:
            pipeline.close()

        lines = [f"Conflicts: {len(document.conflicts)} in {command.file_path}"]
        for attempt in log.records():
            lines.append(
                f"  line {attempt.start_line} #{attempt.conflict_index} {attempt.method.value} "
                f"success={'yes' if attempt.success else 'no'} syntax={attempt.syntax.value} "
                f"rationale={attempt.rationale}",
            )
        if result.resolved:
            lines.append("Resolved: yes")
        else:
            lines.append("Resolved: no")
            for path, reason in result.blocking.items():
                lines.append(f"  blocked {path} {reason}")
        return lines


def budget_exceeded_lines(error: BudgetExceeded) -> list[str]:
    return [
        f"Admission denied: {error.scope}={error.scope_id} used {error.current}/{error.limit} "
        f"remaining={error.remaining}",
        f"Job kept pending: {error.job_id or '-'}",
    ]


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    try:
        return JobStatus(value)
    except ValueError as error:
        allowed = ", ".join(status.value for status in JobStatus)
        raise ValueError(f"Unsupported status {value!r}. Allowed: {allowed}") from error


def _parse_environment(items: tuple[str, ...]) -> dict[str, str]:
    environment: dict[str, str] = {}
    for item in items:
        key, separator, value = item.partition("=")
        if not separator or not key.strip():
            raise ValueError(f"Invalid --env entry {item!r}. Expected KEY=VALUE.")
        environment[key.strip()] = value
    return environment


def _idle_polls(idle_timeout_seconds: float | None, *, poll_interval_seconds: float) -> int | None:
    if idle_timeout_seconds is None:
        return None
    return max(1, math.ceil(idle_timeout_seconds / max(poll_interval_seconds, 0.001)))


@contextmanager
def _orchestrator(settings: Settings) -> Iterator[Orchestrator]:
    orchestrator = build_orchestrator(settings)
    try:
        yield orchestrator
    finally:
        orchestrator.close()
