"""Job lifecycle owner: admission, queueing, retries and cancellation."""

from __future__ import annotations

import logging
import random
import threading
from datetime import timedelta
from functools import partial

from rebase_pilot.orchestrator.admission import (
    AdmissionController,
    AdmissionDecision,
    AdmissionRequest,
    BudgetWarning,
)
from rebase_pilot.orchestrator.cancellation import CancellationToken
from rebase_pilot.orchestrator.errors import InvalidTransition, UnresolvableConflict
from rebase_pilot.orchestrator.failure_classifier import classify_failure
from rebase_pilot.orchestrator.models import (
    JobOutcome,
    JobStatus,
    JobStatusSnapshot,
    JobSubmission,
    JobView,
)
from rebase_pilot.orchestrator.queue import JobQueue, QueuedJob
from rebase_pilot.orchestrator.repository import JobRepository
from rebase_pilot.orchestrator.retry import RetryScheduler, compute_retry_delay
from rebase_pilot.orchestrator.state_machine import is_terminal
from rebase_pilot.storage.common import utc_now

logger = logging.getLogger(__name__)

CANCEL_REQUESTED_EVENT = "cancel_requested"


class JobManager:
    """The only component that mutates job records.

    Admission, the in-memory queue and retry timers are coordinated here; workers
    report back through ``start_job``, ``complete_job``, ``fail_job`` and
    ``finish_cancelled``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        admission: AdmissionController,
        queue: JobQueue,
        retry_base_seconds: float = 30.0,
        retry_max_seconds: float = 900.0,
        rng: random.Random | None = None,
        scheduler: RetryScheduler | None = None,
        cancel_probe_seconds: float = 1.0,
    ) -> None:
        self.repository = repository
        self.admission = admission
        self.queue = queue
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.cancel_probe_seconds = cancel_probe_seconds
        self._rng = rng or random.Random()  # noqa: S311
        self.scheduler = scheduler or RetryScheduler(self._requeue)
        self._tokens: dict[str, CancellationToken] = {}
        self._tokens_lock = threading.Lock()
        self._restore_lock = threading.Lock()

    def close(self) -> None:
        self.scheduler.close()

    def submit_job(self, submission: JobSubmission) -> str:
        """Create the job and run admission.

        A denied job stays ``pending`` with the reason recorded, and
        ``BudgetExceeded`` carrying its ``job_id`` is raised.
        """

        job = self.repository.create_job(submission)
        self._admit(job)
        return job.job_id

    def admit_pending(self, job_id: str) -> JobView:
        """Retry admission for a job left ``pending`` by an earlier denial."""

        job = self.repository.require_job(job_id=job_id)
        if job.status != JobStatus.PENDING:
            raise InvalidTransition(
                job_id=job_id,
                status_from=job.status.value,
                status_to=JobStatus.QUEUED.value,
                reason="only pending jobs go through admission",
            )
        return self._admit(job)

    def resubmit_job(self, job_id: str) -> str:
        """Start a new job that continues the retry chain of a terminal job."""

        parent = self.repository.require_job(job_id=job_id)
        if parent.status not in {JobStatus.FAILED, JobStatus.CANCELLED} or not is_terminal(parent):
            raise InvalidTransition(
                job_id=job_id,
                status_from=parent.status.value,
                status_to=JobStatus.QUEUED.value,
                reason="only terminal failed or cancelled jobs can be resubmitted",
            )
        if parent.retry_count >= parent.max_retries:
            raise InvalidTransition(
                job_id=job_id,
                status_from=parent.status.value,
                status_to=JobStatus.QUEUED.value,
                reason=f"retries exhausted ({parent.retry_count}/{parent.max_retries})",
            )
        child = self.repository.create_job(
            JobSubmission(
                user_id=parent.user_id,
                organization_id=parent.organization_id,
                repository=parent.repository,
                config=parent.config,
                priority=parent.priority,
                max_retries=parent.max_retries,
                operation=parent.operation,
                estimated_cost=parent.estimated_cost,
                parent_job_id=parent.job_id,
            ),
            retry_count=parent.retry_count + 1,
        )
        logger.info("Job %s resubmitted as %s", parent.job_id, child.job_id)
        self._admit(child)
        return child.job_id

    def cancel_job(self, job_id: str, *, reason: str = "cancelled by request") -> JobView:
        """Cancel a queued job now, or signal a running one.

        A running job stays ``running`` until its worker reaches a checkpoint and
        calls ``finish_cancelled``. A failed job waiting on retry backoff loses its
        retry and becomes terminal.
        """

        job = self.repository.require_job(job_id=job_id)
        if job.status == JobStatus.QUEUED:
            self.queue.remove(job_id)
            try:
                return self.repository.cancel_job(job_id=job_id, reason=reason)
            except InvalidTransition:
                job = self.repository.require_job(job_id=job_id)
                if job.status != JobStatus.RUNNING:
                    raise
        if job.status == JobStatus.RUNNING:
            return self._signal_running(job_id, reason=reason)
        if job.status == JobStatus.FAILED and not is_terminal(job):
            self.scheduler.cancel(job_id)
            return self.repository.drop_scheduled_retry(job_id=job_id, reason=reason)
        raise InvalidTransition(
            job_id=job_id,
            status_from=job.status.value,
            status_to=JobStatus.CANCELLED.value,
        )

    def get_job_status(self, job_id: str) -> JobStatusSnapshot:
        return self.repository.get_status_snapshot(job_id=job_id)

    def restore_queue(self) -> int:
        """Re-enqueue persisted ``queued`` jobs and re-arm pending retry timers.

        Safe to call repeatedly; jobs already queued or scheduled are skipped.
        """

        restored = 0
        with self._restore_lock:
            for job in self.repository.list_queued_jobs():
                if job.job_id in self.queue:
                    continue
                try:
                    self.queue.enqueue(_queued(job))
                except ValueError:
                    continue
                restored += 1
            scheduled = set(self.scheduler.pending())
            now = utc_now()
            for job in self.repository.list_retry_waiting_jobs():
                if job.job_id in scheduled or job.retry_after is None:
                    continue
                delay = max((job.retry_after - now).total_seconds(), 0.0)
                self.scheduler.schedule(job.job_id, delay)
                restored += 1
        if restored:
            logger.info("Restored %d jobs into the queue and retry schedule", restored)
        return restored

    def start_job(self, job_id: str, *, worker_id: str) -> tuple[JobView, CancellationToken] | None:
        """Move a dequeued job to ``running``; None when it is no longer queued."""

        job = self.repository.get_job(job_id=job_id)
        if job is None or job.status != JobStatus.QUEUED:
            logger.info(
                "Skipping job %s: status is %s",
                job_id,
                job.status.value if job is not None else "missing",
            )
            return None
        try:
            running = self.repository.mark_running(job_id=job_id, worker_id=worker_id)
        except InvalidTransition:
            return None
        token = CancellationToken(
            job_id,
            probe=partial(
                self.repository.has_event,
                job_id=job_id,
                event_type=CANCEL_REQUESTED_EVENT,
            ),
            probe_interval_seconds=self.cancel_probe_seconds,
        )
        with self._tokens_lock:
            self._tokens[job_id] = token
        return running, token

    def complete_job(self, job_id: str, *, details: dict | None = None) -> JobOutcome:
        self._forget_token(job_id)
        job = self.repository.complete_job(job_id=job_id, details=details)
        return JobOutcome(job_id=job.job_id, status=job.status)

    def fail_job(self, job_id: str, error: BaseException) -> JobOutcome:
        """Record a running job's failure and schedule its retry when allowed."""

        self._forget_token(job_id)
        classification = classify_failure(error)
        job = self.repository.require_job(job_id=job_id)
        blocking = error.blocking_files if isinstance(error, UnresolvableConflict) else ()
        delay: float | None = None
        retry_after = None
        if classification.retryable and job.retry_count < job.max_retries:
            delay = compute_retry_delay(
                retry_number=job.retry_count + 1,
                base_seconds=self.retry_base_seconds,
                max_seconds=self.retry_max_seconds,
                rng=self._rng,
            )
            retry_after = utc_now() + timedelta(seconds=delay)

        message = str(error) or type(error).__name__
        self.repository.fail_job(
            job_id=job_id,
            failure_class=classification.failure_class,
            error_message=message,
            retry_after=retry_after,
            blocking_files=blocking,
            details=classification.to_event_details(),
        )
        if delay is not None:
            self.scheduler.schedule(job_id, delay)
        else:
            logger.warning(
                "Job %s failed terminally: %s (%s)",
                job_id,
                classification.failure_class.value,
                classification.reason_code,
            )
        return JobOutcome(
            job_id=job_id,
            status=JobStatus.FAILED,
            failure_class=classification.failure_class,
            error_message=message,
            blocking_files=blocking,
            retried=delay is not None,
        )

    def finish_cancelled(self, job_id: str, *, reason: str = "cancelled by request") -> JobOutcome:
        """Record that a running job stopped at a checkpoint after cancellation."""

        self._forget_token(job_id)
        job = self.repository.cancel_job(job_id=job_id, reason=reason)
        return JobOutcome(job_id=job.job_id, status=job.status, error_message=reason)

    def record_budget_warning(self, warning: BudgetWarning) -> None:
        """Warning sink for the admission controller: keep warnings on the job trail."""

        if warning.job_id is None:
            return
        self.repository.add_job_event(
            job_id=warning.job_id,
            event_type="budget_warning",
            details={
                "scope": warning.scope.value,
                "scope_id": warning.scope_id,
                "used": warning.used,
                "limit": warning.limit,
                "threshold": warning.threshold,
                "window_start": warning.window_start,
            },
        )

    def _admit(self, job: JobView) -> JobView:
        decision = self.admission.try_admit(AdmissionRequest.from_job(job))
        if not decision.allowed:
            self.repository.record_admission_denied(
                job_id=job.job_id,
                error_message=decision.reason,
                details=_decision_details(decision),
            )
            decision.raise_for_denied(job_id=job.job_id)
        queued = self.repository.mark_queued(job_id=job.job_id, details=_decision_details(decision))
        self.queue.enqueue(_queued(queued))
        return queued

    def _signal_running(self, job_id: str, *, reason: str) -> JobView:
        with self._tokens_lock:
            token = self._tokens.get(job_id)
        if token is not None:
            token.cancel()
        self.repository.add_job_event(
            job_id=job_id,
            event_type=CANCEL_REQUESTED_EVENT,
            details={"reason": reason, "delivered": token is not None},
        )
        logger.info("Cancellation requested for running job %s", job_id)
        return self.repository.require_job(job_id=job_id)

    def _requeue(self, job_id: str) -> None:
        job = self.repository.get_job(job_id=job_id)
        if job is None or job.status != JobStatus.FAILED or is_terminal(job):
            logger.info("Retry for job %s skipped: no longer waiting on backoff", job_id)
            return
        queued = self.repository.requeue_retry(job_id=job_id)
        self.queue.enqueue(_queued(queued))

    def _forget_token(self, job_id: str) -> None:
        with self._tokens_lock:
            self._tokens.pop(job_id, None)


def _queued(job: JobView) -> QueuedJob:
    return QueuedJob(job_id=job.job_id, priority=job.priority, repository=job.repository)


def _decision_details(decision: AdmissionDecision) -> dict[str, object]:
    return {
        "reason": decision.reason,
        "remaining": decision.remaining,
        "scope": decision.scope.value if decision.scope is not None else None,
        "scope_id": decision.scope_id,
        "limit": decision.limit,
        "current": decision.current,
    }
