"""Queue workers that run rebase jobs under a repository lease."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from functools import partial
from pathlib import Path

from rebase_pilot.orchestrator.cancellation import CancellationToken
from rebase_pilot.orchestrator.errors import (
    GitOperationError,
    JobCancelled,
    OrchestratorError,
    UnresolvableConflict,
)
from rebase_pilot.orchestrator.git.base import GitOperations
from rebase_pilot.orchestrator.locks import LeaseKeeper, RepositoryLock, hold_repository
from rebase_pilot.orchestrator.manager import JobManager
from rebase_pilot.orchestrator.models import JobOutcome, JobStatus, JobView
from rebase_pilot.orchestrator.queue import QueuedJob
from rebase_pilot.resolution.models import Conflict
from rebase_pilot.resolution.pipeline import ConflictResolutionPipeline

logger = logging.getLogger(__name__)

PipelineFactory = Callable[[Path], ConflictResolutionPipeline]


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    cancelled: int = 0
    idle_polls: int = 0

    def merge(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.cancelled += other.cancelled
        self.idle_polls += other.idle_polls


class JobWorker:
    """Dequeue, lease the repository, rebase, resolve conflicts, push, report."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        manager: JobManager,
        lock: RepositoryLock,
        git: GitOperations,
        pipeline_factory: PipelineFactory,
        worker_id: str,
        poll_interval_seconds: float = 1.0,
        lease_renew_seconds: float = 20.0,
        max_rebase_rounds: int = 100,
        push: bool = True,
    ) -> None:
        self.manager = manager
        self.lock = lock
        self.git = git
        self.pipeline_factory = pipeline_factory
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.lease_renew_seconds = lease_renew_seconds
        self.max_rebase_rounds = max_rebase_rounds
        self.push = push
        self._stop_requested = False
        self._current_job_id: str | None = None

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        item = self.manager.queue.dequeue(timeout=self.poll_interval_seconds)
        if item is None:
            if not self.manager.queue.closed:
                self.manager.restore_queue()
            summary.idle_polls = 1
            return summary

        try:
            outcome = self.process(item)
        except Exception:
            logger.exception("Worker %s could not start job %s", self.worker_id, item.job_id)
            summary.idle_polls = 1
            return summary
        if outcome is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        if outcome.status == JobStatus.SUCCESS:
            summary.succeeded = 1
        elif outcome.status == JobStatus.CANCELLED:
            summary.cancelled = 1
        elif outcome.retried:
            summary.retried = 1
        else:
            summary.failed = 1
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run until idle, ``max_jobs`` reached, or a stop is requested.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting (None = never).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with signal_handlers(self.request_stop):
            while not self._stop_requested:
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    break
                summary = self.run_once()
                aggregate.merge(summary)
                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                    continue
                consecutive_idle = 0
        return aggregate

    def request_stop(self, *, signal_name: str = "stop") -> None:
        """Stop taking new jobs; the job in flight runs to completion."""

        self._stop_requested = True
        logger.info(
            "Worker %s stop requested (%s), job in flight: %s",
            self.worker_id,
            signal_name,
            self._current_job_id,
        )

    def process(self, item: QueuedJob) -> JobOutcome | None:
        """Run one dequeued job; None when it was cancelled before it started."""

        job = self.manager.repository.get_job(job_id=item.job_id)
        if job is None or job.status != JobStatus.QUEUED:
            return None

        with hold_repository(
            self.lock,
            job.repository,
            holder=f"{self.worker_id}:{job.job_id}",
            renew_interval_seconds=self.lease_renew_seconds,
        ) as keeper:
            started = self.manager.start_job(job.job_id, worker_id=self.worker_id)
            if started is None:
                return None
            running, token = started
            self._current_job_id = running.job_id
            try:
                return self._execute(running, token, keeper)
            finally:
                self._current_job_id = None

    def _execute(
        self,
        job: JobView,
        token: CancellationToken,
        keeper: LeaseKeeper,
    ) -> JobOutcome:
        def checkpoint() -> None:
            token.raise_if_cancelled()
            keeper.check()

        workdir: Path | None = None
        rounds = 0
        previous: frozenset[tuple[str, int, str, str]] | None = None
        try:
            checkpoint()
            workdir = self.git.clone(job.repository, branch=job.config.branch, job_id=job.job_id)
            checkpoint()
            result = self.git.rebase(workdir, target_branch=job.config.target_branch)
            while not result.success:
                rounds += 1
                if rounds > self.max_rebase_rounds:
                    raise GitOperationError(
                        f"Rebase still conflicting after {self.max_rebase_rounds} rounds",
                        operation="continue_rebase",
                    )
                current = _round_signature(result.conflicts)
                if not current:
                    raise GitOperationError(
                        "Rebase stopped without reporting conflict regions",
                        operation="continue_rebase",
                    )
                if current == previous:
                    stuck = sorted({conflict.file_path for conflict in result.conflicts})
                    raise UnresolvableConflict(
                        dict.fromkeys(stuck, "same conflicts reported again after resolution"),
                    )
                previous = current
                checkpoint()
                self._resolve_round(job, workdir, result.conflicts, token)
                checkpoint()
                result = self.git.continue_rebase(workdir)
            checkpoint()
            if self.push:
                self.git.push(workdir, branch=job.config.branch)
        except JobCancelled:
            logger.info("Job %s cancelled at checkpoint after %d rounds", job.job_id, rounds)
            return self.manager.finish_cancelled(job.job_id)
        except OrchestratorError as error:
            logger.warning("Job %s failed: %s", job.job_id, error)
            self._abort(workdir)
            return self.manager.fail_job(job.job_id, error)
        except Exception as error:
            logger.exception("Job %s crashed", job.job_id)
            self._abort(workdir)
            return self.manager.fail_job(job.job_id, error)

        return self.manager.complete_job(
            job.job_id,
            details={"conflict_rounds": rounds, "worker_id": self.worker_id, "pushed": self.push},
        )

    def _resolve_round(
        self,
        job: JobView,
        workdir: Path,
        conflicts: Sequence[Conflict],
        token: CancellationToken,
    ) -> None:
        pipeline = self.pipeline_factory(workdir)
        try:
            outcome = pipeline.resolve(
                conflicts,
                target_branch=job.config.target_branch,
                job_id=job.job_id,
                cancel=token,
                apply=partial(self.git.apply_resolution, workdir),
            )
        finally:
            pipeline.close()
        outcome.raise_for_blocked()

    def _abort(self, workdir: Path | None) -> None:
        if workdir is None:
            return
        try:
            self.git.abort(workdir)
        except GitOperationError as error:
            logger.warning("Rebase abort failed in %s: %s", workdir, error)


class WorkerPool:
    """Run several ``JobWorker`` loops on threads and aggregate their summaries."""

    def __init__(self, workers: list[JobWorker]) -> None:
        if not workers:
            raise ValueError("WorkerPool needs at least one worker")
        self.workers = workers
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._reserved = 0

    def run(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = None,
    ) -> WorkerRunSummary:
        aggregate = WorkerRunSummary()
        threads = [
            threading.Thread(
                target=self._run_worker,
                args=(worker, aggregate, max_jobs, max_idle_polls),
                name=f"job-worker-{worker.worker_id}",
                daemon=True,
            )
            for worker in self.workers
        ]
        with signal_handlers(self.stop):
            for thread in threads:
                thread.start()
            for thread in threads:
                while thread.is_alive():
                    thread.join(timeout=0.2)
        return aggregate

    def stop(self, *, signal_name: str = "stop") -> None:
        self._stop.set()
        for worker in self.workers:
            worker.request_stop(signal_name=signal_name)

    def _run_worker(
        self,
        worker: JobWorker,
        aggregate: WorkerRunSummary,
        max_jobs: int | None,
        max_idle_polls: int | None,
    ) -> None:
        consecutive_idle = 0
        while not self._stop.is_set():
            if not self._reserve(max_jobs):
                return
            summary = worker.run_once()
            with self._lock:
                aggregate.merge(summary)
                if summary.processed == 0:
                    self._reserved -= 1
            if summary.processed:
                consecutive_idle = 0
                continue
            consecutive_idle += 1
            if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                return

    def _reserve(self, max_jobs: int | None) -> bool:
        with self._lock:
            if max_jobs is not None and self._reserved >= max_jobs:
                return False
            self._reserved += 1
            return True


@contextmanager
def signal_handlers(on_stop: Callable[..., None]) -> Iterator[None]:
    """Route SIGINT/SIGTERM to ``on_stop(signal_name=...)`` while the block runs."""

    if threading.current_thread() is not threading.main_thread():
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        on_stop(signal_name=name)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


def _round_signature(conflicts: Sequence[Conflict]) -> frozenset[tuple[str, int, str, str]]:
    return frozenset(
        (conflict.file_path, conflict.start_line, conflict.ours, conflict.theirs)
        for conflict in conflicts
    )
