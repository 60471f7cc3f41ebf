from __future__ import annotations

import threading
from datetime import timedelta

import allure
import pytest

from rebase_pilot.orchestrator.errors import InvalidTransition, JobNotFound
from rebase_pilot.orchestrator.models import (
    FailureClass,
    JobConfig,
    JobPriority,
    JobStatus,
    JobSubmission,
)
from rebase_pilot.orchestrator.repository import JobRepository
from rebase_pilot.orchestrator.state_machine import is_terminal
from rebase_pilot.resolution.models import CheckOutcome, ResolutionAttempt, ResolutionMethod
from rebase_pilot.storage.common import utc_now

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Persistence"),
]


def _submission(**overrides) -> JobSubmission:
    values = {
        "user_id": "u1",
        "organization_id": "org1",
        "repository": "git@example.com:acme/app.git",
        "config": JobConfig(
            branch="feature/login",
            target_branch="main",
            task="rebase onto main",
            environment={"CI": "1"},
        ),
    }
    values.update(overrides)
    return JobSubmission(**values)


def _running(repository: JobRepository, **overrides) -> str:
    job = repository.create_job(_submission(**overrides))
    repository.mark_queued(job_id=job.job_id)
    repository.mark_running(job_id=job.job_id, worker_id="w1")
    return job.job_id


def _attempt(job_id: str | None, method: ResolutionMethod, *, success: bool) -> ResolutionAttempt:
    return ResolutionAttempt(
        file_path="app/models.py",
        conflict_index=0,
        start_line=12,
        language="python",
        method=method,
        success=success,
        syntax=CheckOutcome.PASS,
        security=CheckOutcome.PASS,
        semantic=CheckOutcome.PASS,
        tests=CheckOutcome.NOT_APPLICABLE,
        rationale="all checks passed",
        candidate_text="x = 2\n",
        ours_text="x = 1\n",
        theirs_text="x = 2\n",
        target_branch="main",
        job_id=job_id,
    )


def test_create_job_persists_pending_job_with_config(repository: JobRepository) -> None:
    job = repository.create_job(_submission(priority=JobPriority.HIGH, max_retries=5))

    loaded = repository.require_job(job_id=job.job_id)
    assert loaded.status == JobStatus.PENDING
    assert loaded.priority == JobPriority.HIGH
    assert loaded.max_retries == 5
    assert loaded.retry_count == 0
    assert loaded.config.environment == {"CI": "1"}
    assert loaded.config.target_branch == "main"
    events = repository.list_events(job_id=job.job_id)
    assert [event.event_type for event in events] == ["created"]
    assert events[0].status_to == JobStatus.PENDING


def test_create_job_rejects_retry_count_above_max(repository: JobRepository) -> None:
    with pytest.raises(ValueError, match="exceeds max_retries"):
        repository.create_job(_submission(max_retries=1), retry_count=2)


def test_successful_lifecycle_records_every_transition(repository: JobRepository) -> None:
    job_id = _running(repository)

    done = repository.complete_job(job_id=job_id, details={"conflict_rounds": 2})

    assert done.status == JobStatus.SUCCESS
    assert done.worker_id == "w1"
    assert done.started_at is not None
    assert done.finished_at is not None
    events = repository.list_events(job_id=job_id)
    assert [event.event_type for event in events] == ["created", "admitted", "started", "succeeded"]
    assert events[-1].details == {"conflict_rounds": 2}


def test_terminal_job_rejects_further_mutation(repository: JobRepository) -> None:
    job_id = _running(repository)
    repository.complete_job(job_id=job_id)

    with pytest.raises(InvalidTransition):
        repository.cancel_job(job_id=job_id)
    with pytest.raises(InvalidTransition):
        repository.mark_running(job_id=job_id, worker_id="w2")

    assert repository.require_job(job_id=job_id).status == JobStatus.SUCCESS
    assert len(repository.list_events(job_id=job_id)) == 4


def test_retry_edge_increments_retry_count(repository: JobRepository) -> None:
    job_id = _running(repository, max_retries=2)
    repository.fail_job(
        job_id=job_id,
        failure_class=FailureClass.RETRYABLE_TRANSIENT,
        error_message="connection reset",
        retry_after=utc_now() + timedelta(seconds=30),
    )
    assert [job.job_id for job in repository.list_retry_waiting_jobs()] == [job_id]

    requeued = repository.requeue_retry(job_id=job_id)

    assert requeued.status == JobStatus.QUEUED
    assert requeued.retry_count == 1
    assert requeued.retry_after is None
    assert requeued.worker_id is None
    assert repository.list_retry_waiting_jobs() == []
    assert [job.job_id for job in repository.list_queued_jobs()] == [job_id]


def test_retry_edge_is_refused_once_budget_is_spent(repository: JobRepository) -> None:
    job_id = _running(repository, max_retries=1)
    repository.fail_job(
        job_id=job_id,
        failure_class=FailureClass.TIMEOUT,
        error_message="timeout",
        retry_after=utc_now(),
    )
    repository.requeue_retry(job_id=job_id)
    repository.mark_running(job_id=job_id, worker_id="w1")
    repository.fail_job(
        job_id=job_id,
        failure_class=FailureClass.TIMEOUT,
        error_message="timeout again",
        retry_after=utc_now(),
    )

    with pytest.raises(InvalidTransition, match="retries exhausted"):
        repository.requeue_retry(job_id=job_id)

    job = repository.require_job(job_id=job_id)
    assert job.retry_count == 1
    assert job.retry_count <= job.max_retries


def test_failure_keeps_blocking_files_and_reason(repository: JobRepository) -> None:
    job_id = _running(repository)

    failed = repository.fail_job(
        job_id=job_id,
        failure_class=FailureClass.UNRESOLVABLE_CONFLICT,
        error_message="Unresolvable conflicts block completion: config.json",
        blocking_files=("config.json",),
        details={"reason_code": "unresolvable_conflict"},
    )

    assert failed.status == JobStatus.FAILED
    assert failed.blocking_files == ("config.json",)
    assert failed.failure_class == FailureClass.UNRESOLVABLE_CONFLICT
    assert is_terminal(failed)
    event = repository.list_events(job_id=job_id)[-1]
    assert event.details["blocking_files"] == ["config.json"]
    assert event.details["reason_code"] == "unresolvable_conflict"


def test_admission_denial_keeps_job_pending(repository: JobRepository) -> None:
    job = repository.create_job(_submission())

    repository.record_admission_denied(
        job_id=job.job_id,
        error_message="global budget exhausted",
        details={"remaining": 0},
    )

    loaded = repository.require_job(job_id=job.job_id)
    assert loaded.status == JobStatus.PENDING
    assert loaded.error_message == "global budget exhausted"
    assert repository.has_event(job_id=job.job_id, event_type="admission_denied")

    queued = repository.mark_queued(job_id=job.job_id)
    assert queued.error_message is None


def test_drop_scheduled_retry_makes_failure_terminal(repository: JobRepository) -> None:
    job_id = _running(repository)
    repository.fail_job(
        job_id=job_id,
        failure_class=FailureClass.RETRYABLE_TRANSIENT,
        error_message="503",
        retry_after=utc_now() + timedelta(minutes=5),
    )

    dropped = repository.drop_scheduled_retry(job_id=job_id, reason="cancelled by request")

    assert dropped.status == JobStatus.FAILED
    assert dropped.retry_after is None
    assert is_terminal(dropped)
    with pytest.raises(InvalidTransition):
        repository.drop_scheduled_retry(job_id=job_id, reason="again")


def test_concurrent_claims_start_a_job_exactly_once(repository: JobRepository) -> None:
    job = repository.create_job(_submission())
    repository.mark_queued(job_id=job.job_id)
    barrier = threading.Barrier(4)
    outcomes: list[str] = []
    guard = threading.Lock()

    def _claim(worker_id: str) -> None:
        barrier.wait(timeout=10)
        try:
            repository.mark_running(job_id=job.job_id, worker_id=worker_id)
            result = "claimed"
        except InvalidTransition:
            result = "rejected"
        with guard:
            outcomes.append(result)

    threads = [threading.Thread(target=_claim, args=(f"w{index}",)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes) == ["claimed", "rejected", "rejected", "rejected"]
    started = [
        event
        for event in repository.list_events(job_id=job.job_id)
        if event.event_type == "started"
    ]
    assert len(started) == 1


def test_resolution_attempts_are_appended_and_counted(repository: JobRepository) -> None:
    job_id = _running(repository)
    repository.record_resolution_attempt(
        _attempt(job_id, ResolutionMethod.AI_VALIDATED, success=False),
    )
    repository.record_resolution_attempt(
        _attempt(job_id, ResolutionMethod.FALLBACK_OURS, success=True),
    )

    attempts = repository.list_resolution_attempts(job_id=job_id)
    snapshot = repository.get_status_snapshot(job_id=job_id)

    assert [(attempt.method, attempt.success) for attempt in attempts] == [
        (ResolutionMethod.AI_VALIDATED, False),
        (ResolutionMethod.FALLBACK_OURS, True),
    ]
    assert attempts[0].tests == CheckOutcome.NOT_APPLICABLE
    assert attempts[1].job_id == job_id
    assert snapshot.attempt_counts == {"ai_validated": 1, "fallback_ours": 1}


def test_attempt_without_job_is_not_persisted(repository: JobRepository) -> None:
    with pytest.raises(ValueError, match="no job_id"):
        repository.record_resolution_attempt(
            _attempt(None, ResolutionMethod.MANUAL_REQUIRED, success=False),
        )


def test_unknown_job_raises_job_not_found(repository: JobRepository) -> None:
    assert repository.get_job(job_id="missing") is None
    with pytest.raises(JobNotFound):
        repository.require_job(job_id="missing")
    with pytest.raises(JobNotFound):
        repository.add_job_event(job_id="missing", event_type="note", details={})


def test_list_jobs_filters_by_status(repository: JobRepository) -> None:
    pending = repository.create_job(_submission())
    queued = repository.create_job(_submission())
    repository.mark_queued(job_id=queued.job_id)

    assert [job.job_id for job in repository.list_jobs(status=JobStatus.PENDING)] == [
        pending.job_id,
    ]
    assert {job.job_id for job in repository.list_jobs()} == {pending.job_id, queued.job_id}
    assert len(repository.list_jobs(limit=1)) == 1
