"""Job lifecycle transition rules.

    pending -> queued -> running -> {success | failed | cancelled}
    queued -> cancelled
    failed -> queued            (retry, only while retry_count < max_retries)

``success`` and ``cancelled`` are always terminal. ``failed`` is terminal once no
retry is pending: either retries are exhausted or the failure was not retryable.
"""

from __future__ import annotations

from rebase_pilot.orchestrator.errors import InvalidTransition
from rebase_pilot.orchestrator.models import JobStatus, JobView

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.QUEUED}),
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.FAILED: frozenset({JobStatus.QUEUED}),
    JobStatus.SUCCESS: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.CANCELLED})


def is_terminal(job: JobView) -> bool:
    """True when no further mutation of the job is permitted."""

    if job.status in {JobStatus.SUCCESS, JobStatus.CANCELLED}:
        return True
    if job.status == JobStatus.FAILED:
        return job.retry_after is None or job.retry_count >= job.max_retries
    return False


def check_transition(job: JobView, target: JobStatus) -> None:
    """Raise ``InvalidTransition`` unless ``job`` may move to ``target``."""

    allowed = ALLOWED_TRANSITIONS[job.status]
    if target not in allowed:
        raise InvalidTransition(
            job_id=job.job_id,
            status_from=job.status.value,
            status_to=target.value,
        )
    if job.status == JobStatus.FAILED and target == JobStatus.QUEUED:
        if job.retry_count >= job.max_retries:
            raise InvalidTransition(
                job_id=job.job_id,
                status_from=job.status.value,
                status_to=target.value,
                reason=f"retries exhausted ({job.retry_count}/{job.max_retries})",
            )
        if job.retry_after is None:
            raise InvalidTransition(
                job_id=job.job_id,
                status_from=job.status.value,
                status_to=target.value,
                reason="failure is terminal, no retry scheduled",
            )
