"""Ordered validation battery for candidate conflict resolutions."""

from __future__ import annotations

import logging
import textwrap
import threading
from collections.abc import Callable
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import TypeVar

from rebase_pilot.orchestrator.errors import SecurityRejected
from rebase_pilot.resolution.languages import SyntaxCheckResult, SyntaxRegistry
from rebase_pilot.resolution.models import CheckOutcome, Conflict, RenderedFile
from rebase_pilot.resolution.security import SecurityScanner
from rebase_pilot.resolution.semantic import check_semantics
from rebase_pilot.resolution.testing import NullTestRunner, TestRunner

logger = logging.getLogger(__name__)

T = TypeVar("T")

CHECK_ORDER = ("syntax", "security", "semantic", "tests")


@dataclass(slots=True)
class ValidationReport:
    """Per-check outcomes; checks after the first failure stay ``skipped``."""

    syntax: CheckOutcome = CheckOutcome.SKIPPED
    security: CheckOutcome = CheckOutcome.SKIPPED
    semantic: CheckOutcome = CheckOutcome.SKIPPED
    tests: CheckOutcome = CheckOutcome.SKIPPED
    failed_check: str | None = None
    detail: str | None = None
    security_rejection: SecurityRejected | None = None

    @property
    def passed(self) -> bool:
        return self.failed_check is None

    @property
    def rationale(self) -> str:
        if self.passed:
            return "all checks passed"
        return f"{self.failed_check} check failed: {self.detail or 'no detail'}"


def call_with_timeout(
    executor: Executor | None,
    timeout_seconds: float | None,
    func: Callable[..., T],
    *args: object,
) -> T:
    """Run ``func`` with a hard deadline; ``TimeoutError`` when it is exceeded.

    The deadline starts once ``func`` is running, not while the call waits for a
    free executor thread. A timed-out call keeps running on its worker thread;
    only the caller stops waiting for it.
    """

    if executor is None or timeout_seconds is None:
        return func(*args)
    started = threading.Event()

    def _run() -> T:
        started.set()
        return func(*args)

    future = executor.submit(_run)
    future.add_done_callback(lambda _: started.set())
    started.wait()
    try:
        return future.result(timeout=timeout_seconds)
    except TimeoutError:
        future.cancel()
        raise TimeoutError(
            f"{getattr(func, '__qualname__', func)!s} exceeded {timeout_seconds:.1f}s",
        ) from None


def context_window_text(conflict: Conflict, candidate: str) -> RenderedFile:
    """Candidate surrounded by its context lines, for conflicts without a parsed file."""

    body = candidate if candidate.endswith("\n") or not candidate else f"{candidate}\n"
    before = "".join(f"{line}\n" for line in conflict.context_before)
    after = "".join(f"{line}\n" for line in conflict.context_after)
    return RenderedFile(text=textwrap.dedent(before + body + after))


class ResolutionValidator:
    """Syntax, then security, then semantic, then tests; stops at the first failure.

    The syntax check runs on the whole rendered file. A syntax error located
    inside a region that is still undecided is not held against the candidate.
    """

    def __init__(
        self,
        *,
        syntax: SyntaxRegistry | None = None,
        security: SecurityScanner | None = None,
        test_runner: TestRunner | None = None,
        test_timeout_seconds: float | None = None,
        executor: Executor | None = None,
    ) -> None:
        self.syntax = syntax or SyntaxRegistry()
        self.security = security or SecurityScanner()
        self.test_runner: TestRunner = test_runner or NullTestRunner()
        self.test_timeout_seconds = test_timeout_seconds
        self.executor = executor

    def check_syntax(self, conflict: Conflict, rendered: RenderedFile) -> SyntaxCheckResult:
        result = self.syntax.check(conflict.language, rendered.text)
        if result.outcome == CheckOutcome.FAIL and rendered.in_pending_region(result.line):
            logger.debug(
                "Syntax error in undecided region of %s at line %s deferred",
                conflict.file_path,
                result.line,
            )
            return SyntaxCheckResult(CheckOutcome.PASS, result.detail, result.line)
        return result

    def validate(
        self,
        conflict: Conflict,
        candidate: str,
        *,
        rendered: RenderedFile | None = None,
    ) -> ValidationReport:
        """Run the battery; ``TimeoutError`` from the test step propagates."""

        report = ValidationReport()
        target = rendered or context_window_text(conflict, candidate)

        syntax = self.check_syntax(conflict, target)
        report.syntax = syntax.outcome
        logger.debug("%s syntax=%s", conflict.location, syntax.outcome.value)
        if syntax.outcome == CheckOutcome.FAIL:
            report.failed_check = "syntax"
            report.detail = syntax.detail
            return report

        finding = self.security.scan(candidate)
        if finding is not None:
            report.security = CheckOutcome.FAIL
            report.failed_check = "security"
            report.security_rejection = finding.to_error()
            report.detail = str(report.security_rejection)
            logger.debug("%s security=fail rule=%s", conflict.location, finding.rule)
            return report
        report.security = CheckOutcome.PASS
        logger.debug("%s security=pass", conflict.location)

        semantic = check_semantics(conflict, candidate)
        report.semantic = semantic.outcome
        logger.debug("%s semantic=%s", conflict.location, semantic.outcome.value)
        if semantic.outcome == CheckOutcome.FAIL:
            report.failed_check = "semantic"
            report.detail = semantic.detail
            return report

        if not self.test_runner.has_tests(conflict.file_path):
            report.tests = CheckOutcome.NOT_APPLICABLE
            logger.debug("%s tests=not_applicable", conflict.location)
            return report
        passed = call_with_timeout(
            self.executor,
            self.test_timeout_seconds,
            self.test_runner.run_tests,
            conflict.file_path,
            target.text,
        )
        report.tests = CheckOutcome.PASS if passed else CheckOutcome.FAIL
        logger.debug("%s tests=%s", conflict.location, report.tests.value)
        if not passed:
            report.failed_check = "tests"
            report.detail = f"tests reachable from {conflict.file_path} failed"
        return report
