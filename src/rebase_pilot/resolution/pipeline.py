"""Conflict resolution pipeline: generate, validate, fall back, apply."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

from rebase_pilot.orchestrator.backend.base import CandidateGenerator, GenerationRequest
from rebase_pilot.orchestrator.cancellation import CancellationToken
from rebase_pilot.orchestrator.errors import CandidateGenerationError, RetryablePipelineError
from rebase_pilot.resolution.audit import AuditStream
from rebase_pilot.resolution.models import (
    CheckOutcome,
    Conflict,
    FileOutcome,
    FileStatus,
    PipelineResult,
    RenderedFile,
    ResolutionAttempt,
    ResolutionMethod,
)
from rebase_pilot.resolution.strategies import FallbackChoice, FallbackPolicy, strategy_for
from rebase_pilot.resolution.validator import (
    ResolutionValidator,
    ValidationReport,
    call_with_timeout,
    context_window_text,
)

logger = logging.getLogger(__name__)

ApplyResolution = Callable[[str, str], None]


@dataclass(slots=True)
class PipelineConfig:
    context_lines: int = 10
    max_context_chars: int = 8000
    generation_timeout_seconds: float | None = 120.0
    max_consecutive_timeouts: int = 3
    max_parallel_files: int = 4
    fallback_policy: FallbackPolicy = FallbackPolicy.PREFER_OURS


class _TimeoutBudget:
    """Consecutive transient generator failures while resolving one file."""

    def __init__(self, limit: int) -> None:
        self.limit = max(1, limit)
        self._lock = threading.Lock()
        self._consecutive = 0

    def record_timeout(self, conflict: Conflict, error: BaseException) -> None:
        with self._lock:
            self._consecutive += 1
            count = self._consecutive
        logger.warning(
            "Candidate request for %s failed transiently (%d/%d): %s",
            conflict.location,
            count,
            self.limit,
            error,
        )
        if count >= self.limit:
            reason = "generation_timeout" if isinstance(error, TimeoutError) else "generator_transient"
            raise RetryablePipelineError(
                f"{count} consecutive transient candidate failures; last at "
                f"{conflict.location}: {error}",
                reason_code=reason,
            ) from error

    def reset(self) -> None:
        with self._lock:
            self._consecutive = 0


@dataclass(slots=True)
class _RunContext:
    target_branch: str
    job_id: str | None
    cancel: CancellationToken | None
    apply: ApplyResolution | None

    def checkpoint(self) -> None:
        if self.cancel is not None:
            self.cancel.raise_if_cancelled()


class ConflictResolutionPipeline:
    """Resolve every conflict region reported by one rebase attempt.

    Per region: binary and marker-less regions go straight to manual; otherwise
    one candidate is requested, validated, and on rejection the fallback policy
    decides. A region left ``manual_required`` blocks its file and ends work on
    that file. Files are validated in parallel; writing resolved content is
    serialized per file.
    """

    def __init__(
        self,
        *,
        generator: CandidateGenerator | None,
        validator: ResolutionValidator | None = None,
        config: PipelineConfig | None = None,
        audit: AuditStream | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.generator = generator
        self.config = config or PipelineConfig()
        self.audit = audit or AuditStream()
        self.strategy = strategy_for(self.config.fallback_policy)
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=max(2, self.config.max_parallel_files),
            thread_name_prefix="resolution-call",
        )
        self.validator = validator or ResolutionValidator(executor=self.executor)
        self._file_locks: dict[str, threading.Lock] = {}
        self._file_locks_guard = threading.Lock()

    def close(self) -> None:
        if self._owns_executor:
            self.executor.shutdown(wait=False, cancel_futures=True)

    def resolve(
        self,
        conflicts: Sequence[Conflict],
        *,
        target_branch: str,
        job_id: str | None = None,
        cancel: CancellationToken | None = None,
        apply: ApplyResolution | None = None,
    ) -> PipelineResult:
        """Resolve ``conflicts`` and return every attempt with per-file outcomes.

        Raises ``RetryablePipelineError`` once candidate requests for one file time
        out too many times in a row, and ``JobCancelled`` at the first checkpoint after
        cancellation. Attempts recorded before either are already in the audit
        stream.
        """

        context = _RunContext(
            target_branch=target_branch,
            job_id=job_id,
            cancel=cancel,
            apply=apply,
        )
        by_file: dict[str, list[Conflict]] = {}
        for conflict in conflicts:
            by_file.setdefault(conflict.file_path, []).append(conflict)

        context.checkpoint()
        if len(by_file) <= 1 or self.config.max_parallel_files <= 1:
            outcomes = [self._resolve_file(path, items, context) for path, items in by_file.items()]
        else:
            outcomes = self._resolve_files_parallel(by_file, context)

        attempts = [attempt for outcome in outcomes for attempt in outcome.attempts]
        return PipelineResult(files=outcomes, attempts=attempts)

    def _resolve_files_parallel(
        self,
        by_file: dict[str, list[Conflict]],
        context: _RunContext,
    ) -> list[FileOutcome]:
        with ThreadPoolExecutor(
            max_workers=min(self.config.max_parallel_files, len(by_file)),
            thread_name_prefix="resolution-file",
        ) as pool:
            futures: list[Future[FileOutcome]] = [
                pool.submit(self._resolve_file, path, items, context)
                for path, items in by_file.items()
            ]
            outcomes: list[FileOutcome] = []
            first_error: BaseException | None = None
            for future in futures:
                try:
                    outcomes.append(future.result())
                except Exception as error:  # noqa: BLE001
                    if first_error is None:
                        first_error = error
        if first_error is not None:
            raise first_error
        return outcomes

    def _resolve_file(  # noqa: C901
        self,
        path: str,
        conflicts: list[Conflict],
        context: _RunContext,
    ) -> FileOutcome:
        outcome = FileOutcome(path=path, status=FileStatus.RESOLVED, content=None)
        resolutions: dict[int, str] = {}
        timeouts = _TimeoutBudget(self.config.max_consecutive_timeouts)

        for conflict in sorted(conflicts, key=lambda item: item.index):
            if conflict.binary or conflict.manual_reason is not None:
                attempt = self._record(
                    conflict,
                    context,
                    method=ResolutionMethod.MANUAL_REQUIRED,
                    success=False,
                    rationale=conflict.manual_reason
                    or "binary content is never resolved automatically",
                    candidate=None,
                )
                outcome.attempts.append(attempt)
                self._block(
                    outcome,
                    conflict,
                    conflict.manual_reason or "binary file requires manual resolution",
                )
                continue

            candidate, report, rationale = self._try_candidate(
                conflict,
                resolutions,
                context,
                timeouts,
            )
            if candidate is not None and report is not None and report.passed:
                outcome.attempts.append(
                    self._record(
                        conflict,
                        context,
                        method=ResolutionMethod.AI_VALIDATED,
                        success=True,
                        rationale=report.rationale,
                        candidate=candidate,
                        report=report,
                    ),
                )
                resolutions[conflict.index] = candidate
                context.checkpoint()
                continue

            if candidate is not None and report is not None:
                outcome.attempts.append(
                    self._record(
                        conflict,
                        context,
                        method=ResolutionMethod.AI_VALIDATED,
                        success=False,
                        rationale=report.rationale,
                        candidate=candidate,
                        report=report,
                    ),
                )

            choice = self._fallback(conflict, resolutions)
            outcome.attempts.append(
                self._record(
                    conflict,
                    context,
                    method=choice.method,
                    success=choice.resolved,
                    rationale=f"{rationale}; {choice.rationale}" if rationale else choice.rationale,
                    candidate=choice.text,
                    syntax=choice.syntax,
                ),
            )
            context.checkpoint()
            if not choice.resolved:
                self._block(outcome, conflict, choice.rationale)
                break
            resolutions[conflict.index] = choice.text or ""

        if outcome.status == FileStatus.BLOCKED:
            logger.info(
                "File %s blocked at line %s: %s",
                path,
                outcome.blocking_line,
                outcome.reason,
            )
            return outcome

        document = conflicts[0].document
        if document is not None:
            outcome.content = document.render(resolutions)
            if context.apply is not None:
                with self._file_lock(path):
                    context.checkpoint()
                    context.apply(path, outcome.content)
        logger.info("File %s resolved (%d regions)", path, len(resolutions))
        return outcome

    def _try_candidate(
        self,
        conflict: Conflict,
        resolutions: dict[int, str],
        context: _RunContext,
        timeouts: _TimeoutBudget,
    ) -> tuple[str | None, ValidationReport | None, str | None]:
        """Request and validate one candidate, retrying transient failures."""

        if self.generator is None:
            return None, None, "no candidate generator configured"

        request = self._build_request(conflict, context)
        while True:
            context.checkpoint()
            try:
                candidate = call_with_timeout(
                    self.executor,
                    self.config.generation_timeout_seconds,
                    self.generator.generate,
                    request,
                )
                report = self.validator.validate(
                    conflict,
                    candidate,
                    rendered=self._render(conflict, resolutions, candidate),
                )
            except TimeoutError as error:
                timeouts.record_timeout(conflict, error)
                continue
            except CandidateGenerationError as error:
                if error.retryable:
                    timeouts.record_timeout(conflict, error)
                    continue
                logger.warning("Candidate generation failed for %s: %s", conflict.location, error)
                return None, None, f"generator error: {error}"
            timeouts.reset()
            return candidate, report, None

    def _fallback(self, conflict: Conflict, resolutions: dict[int, str]) -> FallbackChoice:
        return self.strategy.choose(
            conflict,
            render=lambda text: self._render(conflict, resolutions, text),
            check_syntax=self.validator.check_syntax,
        )

    def _render(
        self,
        conflict: Conflict,
        resolutions: dict[int, str],
        text: str,
    ) -> RenderedFile:
        if conflict.document is None:
            return context_window_text(conflict, text)
        return conflict.document.render_file({**resolutions, conflict.index: text})

    def _build_request(self, conflict: Conflict, context: _RunContext) -> GenerationRequest:
        lines = self.config.context_lines
        before = "".join(f"{line}\n" for line in conflict.context_before[-lines:] if lines)
        after = "".join(f"{line}\n" for line in conflict.context_after[:lines] if lines)
        conflict_text = _marker_block(conflict)
        budget = max(self.config.max_context_chars - len(conflict_text), 0)
        if len(before) + len(after) > budget:
            before = before[-(budget // 2) :] if budget // 2 else ""
            after = after[: budget - len(before)]
        return GenerationRequest(
            file_path=conflict.file_path,
            language=conflict.language,
            conflict_text=conflict_text,
            context=f"{before}{conflict_text}{after}",
            ours=conflict.ours,
            theirs=conflict.theirs,
            base=conflict.base,
            target_branch=context.target_branch,
            job_id=context.job_id,
            timeout_seconds=self.config.generation_timeout_seconds,
        )

    def _record(  # noqa: PLR0913
        self,
        conflict: Conflict,
        context: _RunContext,
        *,
        method: ResolutionMethod,
        success: bool,
        rationale: str,
        candidate: str | None,
        report: ValidationReport | None = None,
        syntax: CheckOutcome | None = None,
    ) -> ResolutionAttempt:
        attempt = ResolutionAttempt(
            file_path=conflict.file_path,
            conflict_index=conflict.index,
            start_line=conflict.start_line,
            language=conflict.language,
            method=method,
            success=success,
            syntax=report.syntax if report else (syntax or CheckOutcome.SKIPPED),
            security=report.security if report else CheckOutcome.SKIPPED,
            semantic=report.semantic if report else CheckOutcome.SKIPPED,
            tests=report.tests if report else CheckOutcome.SKIPPED,
            rationale=rationale,
            candidate_text=candidate,
            ours_text=conflict.ours,
            theirs_text=conflict.theirs,
            target_branch=context.target_branch,
            binary=conflict.binary,
            job_id=context.job_id,
        )
        self.audit.publish(attempt)
        return attempt

    def _block(self, outcome: FileOutcome, conflict: Conflict, reason: str) -> None:
        if outcome.status == FileStatus.BLOCKED:
            return
        outcome.status = FileStatus.BLOCKED
        outcome.blocking_conflict_index = conflict.index
        outcome.blocking_line = conflict.start_line
        outcome.reason = reason

    def _file_lock(self, path: str) -> threading.Lock:
        with self._file_locks_guard:
            return self._file_locks.setdefault(path, threading.Lock())


def _marker_block(conflict: Conflict) -> str:
    parts = [f"<<<<<<< {conflict.ours_label}\n", _terminated(conflict.ours)]
    if conflict.base is not None:
        parts.extend(["||||||| base\n", _terminated(conflict.base)])
    parts.extend(["=======\n", _terminated(conflict.theirs), f">>>>>>> {conflict.theirs_label}\n"])
    return "".join(parts)


def _terminated(text: str) -> str:
    return text if not text or text.endswith("\n") else f"{text}\n"
