from __future__ import annotations

import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

import allure
import pytest

from rebase_pilot.orchestrator.backend.base import GenerationRequest
from rebase_pilot.orchestrator.cancellation import CancellationToken
from rebase_pilot.orchestrator.errors import (
    CandidateGenerationError,
    JobCancelled,
    RetryablePipelineError,
    UnresolvableConflict,
)
from rebase_pilot.resolution.audit import AuditStream, InMemoryAuditLog
from rebase_pilot.resolution.models import CheckOutcome, FileStatus, ResolutionMethod
from rebase_pilot.resolution.parser import ConflictParser
from rebase_pilot.resolution.pipeline import ConflictResolutionPipeline, PipelineConfig
from rebase_pilot.resolution.strategies import FallbackPolicy

pytestmark = [
    allure.epic("Conflict Resolution"),
    allure.feature("Resolution Pipeline"),
]

SIMPLE = """\
import os
<<<<<<< ours
limit = 10
=======
limit = 20
>>>>>>> theirs
print(limit, os.sep)
"""

TWO_BROKEN = """\
<<<<<<< ours
a = = 1
=======
a = = 2
>>>>>>> theirs
<<<<<<< ours
b = 1
=======
b = 2
>>>>>>> theirs
"""


class ScriptedGenerator:
    """Answers each request with the next scripted step; exceptions are raised."""

    def __init__(self, *steps: str | BaseException | Callable[[GenerationRequest], str]) -> None:
        self.steps = list(steps)
        self.requests: list[GenerationRequest] = []
        self._lock = threading.Lock()

    def generate(self, request: GenerationRequest) -> str:
        with self._lock:
            self.requests.append(request)
            step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return step(request)
        return step


def _pipeline(generator, **config) -> tuple[ConflictResolutionPipeline, InMemoryAuditLog]:
    log = InMemoryAuditLog()
    settings = {"generation_timeout_seconds": None, "max_parallel_files": 1, **config}
    pipeline = ConflictResolutionPipeline(
        generator=generator,
        config=PipelineConfig(**settings),
        audit=AuditStream([log]),
    )
    return pipeline, log


def _parse(path: str, text: str | bytes):
    return ConflictParser().parse_conflicts(path, text)


def test_validated_candidate_is_applied() -> None:
    generator = ScriptedGenerator("limit = 15\n")
    pipeline, log = _pipeline(generator)
    applied: dict[str, str] = {}

    result = pipeline.resolve(
        _parse("app/config.py", SIMPLE),
        target_branch="main",
        job_id="job-1",
        apply=applied.__setitem__,
    )

    assert result.resolved
    assert applied["app/config.py"] == "import os\nlimit = 15\nprint(limit, os.sep)\n"
    (attempt,) = result.attempts
    assert attempt.method == ResolutionMethod.AI_VALIDATED
    assert attempt.success
    assert attempt.job_id == "job-1"
    assert attempt.target_branch == "main"
    assert log.records(job_id="job-1") == [attempt]
    request = generator.requests[0]
    assert "<<<<<<< ours\nlimit = 10\n=======\nlimit = 20\n>>>>>>> theirs\n" in request.context
    assert request.ours == "limit = 10\n"
    assert request.language == "python"


def test_binary_conflict_never_reaches_generator() -> None:
    generator = ScriptedGenerator("unused")
    pipeline, _ = _pipeline(generator)

    result = pipeline.resolve(_parse("logo.png", b"\x89PNG\x00\x01"), target_branch="main")

    assert generator.requests == []
    (outcome,) = result.files
    assert outcome.status == FileStatus.BLOCKED
    assert result.attempts[0].method == ResolutionMethod.MANUAL_REQUIRED
    assert result.attempts[0].binary
    with pytest.raises(UnresolvableConflict) as error:
        result.raise_for_blocked()
    assert error.value.blocking_files == ("logo.png",)


def test_rejected_candidate_falls_back_to_ours() -> None:
    pipeline, _ = _pipeline(ScriptedGenerator("limit = eval('15')\n"))

    result = pipeline.resolve(_parse("app/config.py", SIMPLE), target_branch="main")

    rejected, fallback = result.attempts
    assert rejected.method == ResolutionMethod.AI_VALIDATED
    assert not rejected.success
    assert rejected.security == CheckOutcome.FAIL
    assert rejected.rationale.startswith(
        "security check failed: Candidate rejected by security rule dynamic_code_execution",
    )
    assert rejected.semantic == CheckOutcome.SKIPPED
    assert fallback.method == ResolutionMethod.FALLBACK_OURS
    assert fallback.success
    assert result.files[0].content == "import os\nlimit = 10\nprint(limit, os.sep)\n"


def test_prefer_theirs_policy_is_honoured() -> None:
    pipeline, _ = _pipeline(None, fallback_policy=FallbackPolicy.PREFER_THEIRS)

    result = pipeline.resolve(_parse("app/config.py", SIMPLE), target_branch="main")

    assert result.attempts[0].method == ResolutionMethod.FALLBACK_THEIRS
    assert "limit = 20" in (result.files[0].content or "")


def test_missing_generator_uses_fallback_with_reason() -> None:
    pipeline, _ = _pipeline(None)

    result = pipeline.resolve(_parse("app/config.py", SIMPLE), target_branch="main")

    (attempt,) = result.attempts
    assert attempt.method == ResolutionMethod.FALLBACK_OURS
    assert attempt.rationale.startswith("no candidate generator configured; kept ours side")
    assert attempt.security == CheckOutcome.SKIPPED


def test_manual_only_policy_blocks_file() -> None:
    pipeline, _ = _pipeline(
        ScriptedGenerator("limit = = 15\n"),
        fallback_policy=FallbackPolicy.MANUAL_ONLY,
    )

    result = pipeline.resolve(_parse("app/config.py", SIMPLE), target_branch="main")

    assert [attempt.method for attempt in result.attempts] == [
        ResolutionMethod.AI_VALIDATED,
        ResolutionMethod.MANUAL_REQUIRED,
    ]
    assert result.blocking == {
        "app/config.py": "line 2: fallback policy requires manual resolution",
    }


def test_blocked_region_ends_work_on_its_file() -> None:
    generator = ScriptedGenerator("a = = 3\n")
    pipeline, _ = _pipeline(generator)
    applied: dict[str, str] = {}

    result = pipeline.resolve(
        _parse("app/pair.py", TWO_BROKEN),
        target_branch="main",
        apply=applied.__setitem__,
    )

    assert len(generator.requests) == 1
    assert [attempt.conflict_index for attempt in result.attempts] == [0, 0]
    assert result.files[0].blocking_conflict_index == 0
    assert result.files[0].blocking_line == 1
    assert applied == {}


def test_non_retryable_generator_error_falls_back() -> None:
    pipeline, _ = _pipeline(
        ScriptedGenerator(CandidateGenerationError("model refused", retryable=False)),
    )

    result = pipeline.resolve(_parse("app/config.py", SIMPLE), target_branch="main")

    (attempt,) = result.attempts
    assert attempt.method == ResolutionMethod.FALLBACK_OURS
    assert attempt.rationale.startswith("generator error: model refused")


def test_transient_generator_error_is_retried() -> None:
    generator = ScriptedGenerator(
        CandidateGenerationError("429 too many requests", retryable=True),
        "limit = 15\n",
    )
    pipeline, _ = _pipeline(generator, max_consecutive_timeouts=3)

    result = pipeline.resolve(_parse("app/config.py", SIMPLE), target_branch="main")

    assert len(generator.requests) == 2
    assert result.attempts[0].method == ResolutionMethod.AI_VALIDATED


def test_consecutive_timeouts_make_the_job_retryable() -> None:
    generator = ScriptedGenerator(TimeoutError("agent timed out"))
    pipeline, log = _pipeline(generator, max_consecutive_timeouts=2)

    with pytest.raises(RetryablePipelineError) as error:
        pipeline.resolve(_parse("app/config.py", SIMPLE), target_branch="main")

    assert error.value.reason_code == "generation_timeout"
    assert len(generator.requests) == 2
    assert len(log) == 0


def test_generation_deadline_is_enforced() -> None:
    def _slow(request: GenerationRequest) -> str:
        time.sleep(0.5)
        return request.theirs

    pipeline, _ = _pipeline(
        ScriptedGenerator(_slow),
        generation_timeout_seconds=0.05,
        max_consecutive_timeouts=1,
    )
    try:
        with pytest.raises(RetryablePipelineError) as error:
            pipeline.resolve(_parse("app/config.py", SIMPLE), target_branch="main")
    finally:
        pipeline.close()

    assert error.value.reason_code == "generation_timeout"


def test_cancelled_token_stops_before_generation() -> None:
    generator = ScriptedGenerator("limit = 15\n")
    pipeline, _ = _pipeline(generator)
    token = CancellationToken("job-1")
    token.cancel()

    with pytest.raises(JobCancelled):
        pipeline.resolve(_parse("app/config.py", SIMPLE), target_branch="main", cancel=token)

    assert generator.requests == []


def test_failing_audit_sink_does_not_abort_resolution() -> None:
    def _broken(attempt) -> None:
        raise RuntimeError("disk full")

    log = InMemoryAuditLog()
    pipeline = ConflictResolutionPipeline(
        generator=None,
        config=PipelineConfig(max_parallel_files=1),
        audit=AuditStream([_broken, log]),
    )

    result = pipeline.resolve(_parse("app/config.py", SIMPLE), target_branch="main")

    assert result.resolved
    assert len(log) == 1


def test_files_are_resolved_in_parallel() -> None:
    barrier = threading.Barrier(3, timeout=5)

    def _together(request: GenerationRequest) -> str:
        barrier.wait()
        return request.theirs

    conflicts = [
        conflict
        for path in ("a.py", "b.py", "c.py")
        for conflict in _parse(path, SIMPLE)
    ]
    pipeline, _ = _pipeline(ScriptedGenerator(_together), max_parallel_files=3)
    try:
        result = pipeline.resolve(conflicts, target_branch="main")
    finally:
        pipeline.close()

    assert result.resolved
    assert sorted(outcome.path for outcome in result.files) == ["a.py", "b.py", "c.py"]


def test_queued_generation_calls_get_their_full_deadline() -> None:
    def _steady(request: GenerationRequest) -> str:
        time.sleep(0.25)
        return request.theirs

    generator = ScriptedGenerator(_steady)
    single_thread = ThreadPoolExecutor(max_workers=1, thread_name_prefix="busy-call")
    pipeline = ConflictResolutionPipeline(
        generator=generator,
        config=PipelineConfig(
            generation_timeout_seconds=0.6,
            max_consecutive_timeouts=1,
            max_parallel_files=3,
        ),
        executor=single_thread,
    )
    conflicts = [
        conflict
        for path in ("a.py", "b.py", "c.py")
        for conflict in _parse(path, SIMPLE)
    ]
    try:
        result = pipeline.resolve(conflicts, target_branch="main")
    finally:
        single_thread.shutdown(wait=True)

    assert result.resolved
    assert len(generator.requests) == 3
    assert {attempt.method for attempt in result.attempts} == {ResolutionMethod.AI_VALIDATED}


def test_timeout_streak_is_counted_per_file() -> None:
    generator = ScriptedGenerator(
        TimeoutError("agent timed out"),
        TimeoutError("agent timed out"),
        CandidateGenerationError("model refused", retryable=False),
        TimeoutError("agent timed out"),
        "limit = 15\n",
    )
    pipeline, _ = _pipeline(generator, max_consecutive_timeouts=3)
    conflicts = [*_parse("a.py", SIMPLE), *_parse("b.py", SIMPLE)]

    result = pipeline.resolve(conflicts, target_branch="main")

    assert result.resolved
    assert len(generator.requests) == 5
    assert [(attempt.file_path, attempt.method) for attempt in result.attempts] == [
        ("a.py", ResolutionMethod.FALLBACK_OURS),
        ("b.py", ResolutionMethod.AI_VALIDATED),
    ]
