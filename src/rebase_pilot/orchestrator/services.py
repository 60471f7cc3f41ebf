"""Composition root: build the orchestrator graph from ``Settings``."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from rebase_pilot.config import Settings
from rebase_pilot.orchestrator.admission import AdmissionController, AdmissionLimits
from rebase_pilot.orchestrator.backend import CandidateGenerator, CommandCandidateGenerator
from rebase_pilot.orchestrator.git import GitCli
from rebase_pilot.orchestrator.locks import LocalRepositoryLock, RepositoryLock, SqlRepositoryLock
from rebase_pilot.orchestrator.manager import JobManager
from rebase_pilot.orchestrator.queue import JobQueue
from rebase_pilot.orchestrator.repository import JobRepository
from rebase_pilot.orchestrator.usage import SqlUsageCounter
from rebase_pilot.orchestrator.worker import JobWorker, WorkerPool
from rebase_pilot.resolution.audit import AuditStream
from rebase_pilot.resolution.parser import ConflictParser
from rebase_pilot.resolution.pipeline import ConflictResolutionPipeline, PipelineConfig
from rebase_pilot.resolution.strategies import FallbackPolicy
from rebase_pilot.resolution.testing import CommandTestRunner, NullTestRunner, TestRunner
from rebase_pilot.resolution.validator import ResolutionValidator

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Orchestrator:
    """Every long-lived collaborator of one process, wired together."""

    settings: Settings
    repository: JobRepository
    usage: SqlUsageCounter
    admission: AdmissionController
    queue: JobQueue
    lock: RepositoryLock
    manager: JobManager
    audit: AuditStream
    git: GitCli
    generator: CandidateGenerator | None
    executor: ThreadPoolExecutor
    _closers: list = field(default_factory=list)

    def pipeline_for(self, workdir: Path | None) -> ConflictResolutionPipeline:
        """Pipeline whose test runner works against ``workdir``."""

        return build_pipeline(
            self.settings,
            generator=self.generator,
            audit=self.audit,
            executor=self.executor,
            workdir=workdir,
        )

    def build_workers(self, count: int | None = None) -> WorkerPool:
        worker_count = count or self.settings.worker.worker_count
        workers = [
            JobWorker(
                manager=self.manager,
                lock=self.lock,
                git=self.git,
                pipeline_factory=self.pipeline_for,
                worker_id=f"{self.settings.worker.worker_id_prefix}-{index}",
                poll_interval_seconds=self.settings.worker.poll_interval_seconds,
                lease_renew_seconds=self.settings.worker.lease_renew_seconds,
                max_rebase_rounds=self.settings.worker.max_rebase_rounds,
                push=self.settings.git.push_enabled,
            )
            for index in range(1, worker_count + 1)
        ]
        return WorkerPool(workers)

    def close(self) -> None:
        self.manager.close()
        self.queue.close()
        self.executor.shutdown(wait=False, cancel_futures=True)
        for closer in reversed(self._closers):
            closer()


def build_orchestrator(settings: Settings, *, init_schema: bool = True) -> Orchestrator:
    settings.validate()
    repository = JobRepository(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    if init_schema:
        repository.init_schema()
    usage = SqlUsageCounter(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    lock = build_lock(settings)
    queue = JobQueue()
    admission = AdmissionController(
        counter=usage,
        limits=AdmissionLimits(
            window_seconds=settings.admission.window_seconds,
            global_limit=settings.admission.global_limit,
            organization_limit=settings.admission.organization_limit,
            user_limit=settings.admission.user_limit,
            operation_limits=dict(settings.admission.operation_limits),
            warning_threshold=settings.admission.warning_threshold,
        ),
    )
    manager = JobManager(
        repository=repository,
        admission=admission,
        queue=queue,
        retry_base_seconds=settings.worker.retry_base_seconds,
        retry_max_seconds=settings.worker.retry_max_seconds,
    )
    admission.warning_sink = manager.record_budget_warning

    audit = AuditStream()
    audit.subscribe(repository.record_resolution_attempt)
    # One generation or test call in flight per file thread of every worker.
    executor = ThreadPoolExecutor(
        max_workers=settings.worker.worker_count * settings.pipeline.max_parallel_files,
        thread_name_prefix="resolution-call",
    )
    closers = [repository.close, usage.close]
    if isinstance(lock, SqlRepositoryLock):
        closers.append(lock.close)
    return Orchestrator(
        settings=settings,
        repository=repository,
        usage=usage,
        admission=admission,
        queue=queue,
        lock=lock,
        manager=manager,
        audit=audit,
        git=GitCli(
            workdir_root=settings.git.workdir_root,
            remote_name=settings.git.remote_name,
            timeout_seconds=settings.git.timeout_seconds,
            parser=ConflictParser(context_lines=settings.pipeline.context_lines),
        ),
        generator=build_generator(settings),
        executor=executor,
        _closers=closers,
    )


def build_lock(settings: Settings) -> RepositoryLock:
    if settings.worker.lock_backend == "local":
        return LocalRepositoryLock(ttl_seconds=settings.worker.lease_ttl_seconds)
    return SqlRepositoryLock(
        settings.db_path,
        ttl_seconds=settings.worker.lease_ttl_seconds,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )


def build_generator(settings: Settings) -> CandidateGenerator | None:
    if not settings.generator.command_template:
        logger.info("No generator command configured; conflicts use the fallback ladder only")
        return None
    return CommandCandidateGenerator(
        command_template=settings.generator.command_template,
        workdir_root=settings.generator.workdir_root,
        default_timeout_seconds=settings.pipeline.generation_timeout_seconds,
    )


def build_pipeline(
    settings: Settings,
    *,
    generator: CandidateGenerator | None,
    audit: AuditStream | None = None,
    executor: ThreadPoolExecutor | None = None,
    workdir: Path | None = None,
) -> ConflictResolutionPipeline:
    test_runner: TestRunner = NullTestRunner()
    if workdir is not None and settings.pipeline.test_command:
        test_runner = CommandTestRunner(
            workdir=workdir,
            command_template=settings.pipeline.test_command,
            timeout_seconds=settings.pipeline.test_timeout_seconds,
        )
    return ConflictResolutionPipeline(
        generator=generator,
        validator=ResolutionValidator(
            test_runner=test_runner,
            test_timeout_seconds=settings.pipeline.test_timeout_seconds,
            executor=executor,
        ),
        config=PipelineConfig(
            context_lines=settings.pipeline.context_lines,
            max_context_chars=settings.pipeline.max_context_chars,
            generation_timeout_seconds=settings.pipeline.generation_timeout_seconds,
            max_consecutive_timeouts=settings.pipeline.max_consecutive_timeouts,
            max_parallel_files=settings.pipeline.max_parallel_files,
            fallback_policy=FallbackPolicy(settings.pipeline.fallback_policy),
        ),
        audit=audit,
        executor=executor,
    )
