"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from rebase_pilot.orchestrator.errors import InvalidTransition, JobNotFound
from rebase_pilot.orchestrator.models import (
    FailureClass,
    JobConfig,
    JobEventView,
    JobPriority,
    JobStatus,
    JobStatusSnapshot,
    JobSubmission,
    JobView,
)
from rebase_pilot.orchestrator.state_machine import check_transition
from rebase_pilot.resolution.models import CheckOutcome, ResolutionAttempt, ResolutionMethod
from rebase_pilot.storage.alembic_runner import upgrade_head
from rebase_pilot.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from rebase_pilot.storage.sqlmodel_models import Job, JobEvent, ResolutionAttemptRecord

logger = logging.getLogger(__name__)


class JobRepository:
    """Job persistence facade.

    Every status change is a compare-and-set ``UPDATE ... WHERE status = :expected``
    guarded by the lifecycle rules in ``state_machine``; a lost race surfaces as
    ``InvalidTransition`` instead of silently overwriting a concurrent change.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_job(self, payload: JobSubmission, *, retry_count: int = 0) -> JobView:
        """Create a job in ``pending``."""

        if retry_count > payload.max_retries:
            raise ValueError(
                f"retry_count={retry_count} exceeds max_retries={payload.max_retries}",
            )
        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = Job(
                job_id=job_id,
                user_id=payload.user_id,
                organization_id=payload.organization_id,
                repository=payload.repository,
                status=JobStatus.PENDING.value,
                priority=payload.priority.value,
                operation=payload.operation,
                estimated_cost=payload.estimated_cost,
                config_json=json.dumps(
                    payload.config.to_payload(),
                    ensure_ascii=False,
                    sort_keys=True,
                ),
                retry_count=retry_count,
                max_retries=payload.max_retries,
                parent_job_id=payload.parent_job_id,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="created",
                status_from=None,
                status_to=JobStatus.PENDING,
                details={
                    "priority": payload.priority.value,
                    "operation": payload.operation,
                    "estimated_cost": payload.estimated_cost,
                    "max_retries": payload.max_retries,
                    "parent_job_id": payload.parent_job_id,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def record_admission_denied(self, *, job_id: str, error_message: str, details: dict) -> None:
        """Keep a denied job in ``pending`` with the rejection reason."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.PENDING.value,
                )
                .values(error_message=error_message, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                raise self._concurrent_change(session, job_id, JobStatus.PENDING)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="admission_denied",
                status_from=JobStatus.PENDING,
                status_to=JobStatus.PENDING,
                details=details,
            )
            session.commit()

    def mark_queued(self, *, job_id: str, details: dict | None = None) -> JobView:
        """Move an admitted job from ``pending`` to ``queued``."""

        now = utc_now()
        return self._transition(
            job_id=job_id,
            target=JobStatus.QUEUED,
            event_type="admitted",
            values={
                "queued_at": to_db_datetime(now),
                "error_message": None,
            },
            details=details or {},
        )

    def requeue_retry(self, *, job_id: str) -> JobView:
        """Take the ``failed -> queued`` retry edge and bump ``retry_count``."""

        with Session(self.engine) as session:
            current = self._get_row(session=session, job_id=job_id)
        now = utc_now()
        return self._transition(
            job_id=job_id,
            target=JobStatus.QUEUED,
            event_type="retry_queued",
            values={
                "retry_count": current.retry_count + 1,
                "retry_after": None,
                "queued_at": to_db_datetime(now),
                "started_at": None,
                "completed_at": None,
                "worker_id": None,
            },
            details={"retry_count": current.retry_count + 1},
            extra_where=(col(Job.retry_count) == current.retry_count,),
        )

    def mark_running(self, *, job_id: str, worker_id: str) -> JobView:
        """Claim a queued job for one worker and stamp ``started_at``."""

        now = utc_now()
        return self._transition(
            job_id=job_id,
            target=JobStatus.RUNNING,
            event_type="started",
            values={"started_at": to_db_datetime(now), "worker_id": worker_id},
            details={"worker_id": worker_id},
        )

    def complete_job(self, *, job_id: str, details: dict | None = None) -> JobView:
        now = utc_now()
        return self._transition(
            job_id=job_id,
            target=JobStatus.SUCCESS,
            event_type="succeeded",
            values={
                "completed_at": to_db_datetime(now),
                "failure_class": None,
                "error_message": None,
                "blocking_files_json": None,
            },
            details=details or {},
        )

    def fail_job(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        failure_class: FailureClass,
        error_message: str,
        retry_after: datetime | None = None,
        blocking_files: tuple[str, ...] = (),
        details: dict | None = None,
    ) -> JobView:
        """Mark a running job failed; ``retry_after`` schedules the retry edge."""

        now = utc_now()
        event_details: dict[str, Any] = dict(details or {})
        event_details["failure_class"] = failure_class.value
        event_details["error_message"] = error_message
        if blocking_files:
            event_details["blocking_files"] = list(blocking_files)
        if retry_after is not None:
            event_details["retry_after"] = to_utc_aware_datetime(retry_after).isoformat()
        return self._transition(
            job_id=job_id,
            target=JobStatus.FAILED,
            event_type="failed",
            values={
                "completed_at": to_db_datetime(now),
                "failure_class": failure_class.value,
                "error_message": error_message,
                "retry_after": to_db_datetime(retry_after) if retry_after is not None else None,
                "blocking_files_json": (
                    json.dumps(list(blocking_files), ensure_ascii=False)
                    if blocking_files
                    else None
                ),
            },
            details=event_details,
        )

    def cancel_job(self, *, job_id: str, reason: str = "cancelled by request") -> JobView:
        now = utc_now()
        return self._transition(
            job_id=job_id,
            target=JobStatus.CANCELLED,
            event_type="cancelled",
            values={"canceled_at": to_db_datetime(now), "error_message": reason},
            details={"reason": reason},
        )

    def drop_scheduled_retry(self, *, job_id: str, reason: str) -> JobView:
        """Make a failed job waiting on backoff terminal by clearing ``retry_after``."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.FAILED.value,
                    col(Job.retry_after).is_not(None),
                )
                .values(
                    retry_after=None,
                    error_message=reason,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise self._concurrent_change(session, job_id, JobStatus.FAILED)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="retry_dropped",
                status_from=JobStatus.FAILED,
                status_to=JobStatus.FAILED,
                details={"reason": reason},
            )
            session.commit()
            return _to_job_view(self._get_row(session=session, job_id=job_id))

    def add_job_event(self, *, job_id: str, event_type: str, details: dict[str, object]) -> None:
        """Append a non-transition event (warnings, lease notes) to the job trail."""

        with Session(self.engine) as session:
            row = self._get_row(session=session, job_id=job_id)
            status = JobStatus(row.status)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=status,
                status_to=status,
                details=details,
            )
            session.commit()

    def has_event(self, *, job_id: str, event_type: str) -> bool:
        with Session(self.engine) as session:
            row = session.exec(
                select(JobEvent.id)
                .where(JobEvent.job_id == job_id, JobEvent.event_type == event_type)
                .limit(1),
            ).first()
            return row is not None

    def get_job(self, *, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def require_job(self, *, job_id: str) -> JobView:
        job = self.get_job(job_id=job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            rows = session.exec(statement).all()
            return [_to_job_view(row) for row in rows]

    def list_queued_jobs(self) -> list[JobView]:
        """Queued jobs in queue order, used to rebuild the in-memory queue."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(Job.status == JobStatus.QUEUED.value)
                .order_by(col(Job.queued_at).asc(), col(Job.created_at).asc()),
            ).all()
            return [_to_job_view(row) for row in rows]

    def list_retry_waiting_jobs(self) -> list[JobView]:
        """Failed jobs whose retry is scheduled but not yet taken."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(
                    Job.status == JobStatus.FAILED.value,
                    col(Job.retry_after).is_not(None),
                    col(Job.retry_count) < col(Job.max_retries),
                )
                .order_by(col(Job.retry_after).asc()),
            ).all()
            return [_to_job_view(row) for row in rows]

    def list_events(self, *, job_id: str) -> list[JobEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()

        events: list[JobEventView] = []
        for row in rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                JobEventView(
                    event_id=row.id or 0,
                    job_id=row.job_id,
                    event_type=row.event_type,
                    status_from=JobStatus(row.status_from) if row.status_from else None,
                    status_to=JobStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return events

    def get_status_snapshot(self, *, job_id: str) -> JobStatusSnapshot:
        job = self.require_job(job_id=job_id)
        return JobStatusSnapshot(
            job=job,
            events=self.list_events(job_id=job_id),
            attempt_counts=self.count_attempts_by_method(job_id=job_id),
        )

    def record_resolution_attempt(self, attempt: ResolutionAttempt) -> None:
        """Append one resolution attempt; rows are never updated afterwards."""

        if attempt.job_id is None:
            raise ValueError("Resolution attempt has no job_id; cannot persist.")
        with Session(self.engine) as session:
            session.add(
                ResolutionAttemptRecord(
                    attempt_id=attempt.attempt_id,
                    job_id=attempt.job_id,
                    file_path=attempt.file_path,
                    conflict_index=attempt.conflict_index,
                    start_line=attempt.start_line,
                    language=attempt.language,
                    binary=attempt.binary,
                    method=attempt.method.value,
                    success=attempt.success,
                    syntax_check=attempt.syntax.value,
                    security_check=attempt.security.value,
                    semantic_check=attempt.semantic.value,
                    tests_check=attempt.tests.value,
                    rationale=attempt.rationale,
                    candidate_text=attempt.candidate_text,
                    ours_text=attempt.ours_text,
                    theirs_text=attempt.theirs_text,
                    target_branch=attempt.target_branch,
                    created_at=to_db_datetime(attempt.created_at),
                ),
            )
            session.commit()

    def list_resolution_attempts(self, *, job_id: str) -> list[ResolutionAttempt]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ResolutionAttemptRecord)
                .where(ResolutionAttemptRecord.job_id == job_id)
                .order_by(col(ResolutionAttemptRecord.id).asc()),
            ).all()
            return [_to_attempt(row) for row in rows]

    def count_attempts_by_method(self, *, job_id: str) -> dict[str, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ResolutionAttemptRecord.method, func.count())
                .where(ResolutionAttemptRecord.job_id == job_id)
                .group_by(ResolutionAttemptRecord.method),
            ).all()
        return {method: int(count) for method, count in rows}

    def _transition(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        target: JobStatus,
        event_type: str,
        values: Mapping[str, Any],
        details: dict[str, Any],
        extra_where: tuple[Any, ...] = (),
    ) -> JobView:
        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_row(session=session, job_id=job_id)
            current = _to_job_view(row)
            try:
                check_transition(current, target)
            except InvalidTransition:
                logger.error(
                    "Rejected transition job_id=%s %s -> %s",
                    job_id,
                    current.status.value,
                    target.value,
                )
                raise

            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == current.status.value,
                    *extra_where,
                )
                .values(status=target.value, updated_at=to_db_datetime(now), **values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise self._concurrent_change(session, job_id, current.status)

            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=current.status,
                status_to=target,
                details=details,
            )
            session.commit()
            updated = self._get_row(session=session, job_id=job_id)
            logger.info(
                "Job %s: %s -> %s",
                job_id,
                current.status.value,
                target.value,
            )
            return _to_job_view(updated)

    def _concurrent_change(
        self,
        session: Session,
        job_id: str,
        expected: JobStatus,
    ) -> InvalidTransition:
        row = self._get_row(session=session, job_id=job_id)
        logger.error(
            "Job %s changed concurrently: expected status=%s, found %s",
            job_id,
            expected.value,
            row.status,
        )
        return InvalidTransition(
            job_id=job_id,
            status_from=row.status,
            status_to=expected.value,
            reason="job state changed concurrently",
        )

    def _get_row(self, *, session: Session, job_id: str) -> Job:
        row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
        if row is None:
            raise JobNotFound(job_id)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _to_job_view(row: Job) -> JobView:
    blocking: tuple[str, ...] = ()
    if row.blocking_files_json:
        blocking = tuple(str(path) for path in json.loads(row.blocking_files_json))
    return JobView(
        job_id=row.job_id,
        user_id=row.user_id,
        organization_id=row.organization_id,
        repository=row.repository,
        status=JobStatus(row.status),
        priority=JobPriority(row.priority),
        operation=row.operation,
        estimated_cost=row.estimated_cost,
        config=JobConfig.from_payload(json.loads(row.config_json)),
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        parent_job_id=row.parent_job_id,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        error_message=row.error_message,
        blocking_files=blocking,
        worker_id=row.worker_id,
        retry_after=optional_utc(row.retry_after),
        created_at=to_utc_aware_datetime(row.created_at),
        queued_at=optional_utc(row.queued_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        canceled_at=optional_utc(row.canceled_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_attempt(row: ResolutionAttemptRecord) -> ResolutionAttempt:
    return ResolutionAttempt(
        file_path=row.file_path,
        conflict_index=row.conflict_index,
        start_line=row.start_line,
        language=row.language,
        method=ResolutionMethod(row.method),
        success=row.success,
        syntax=CheckOutcome(row.syntax_check),
        security=CheckOutcome(row.security_check),
        semantic=CheckOutcome(row.semantic_check),
        tests=CheckOutcome(row.tests_check),
        rationale=row.rationale,
        candidate_text=row.candidate_text,
        ours_text=row.ours_text,
        theirs_text=row.theirs_text,
        target_branch=row.target_branch,
        binary=row.binary,
        job_id=row.job_id,
        attempt_id=row.attempt_id,
        created_at=to_utc_aware_datetime(row.created_at),
    )
