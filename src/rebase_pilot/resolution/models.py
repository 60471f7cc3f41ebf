"""Data model for conflict regions, resolution attempts and pipeline outcomes."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from rebase_pilot.orchestrator.errors import UnresolvableConflict
from rebase_pilot.storage.common import utc_now


class ResolutionMethod(str, Enum):
    """How a conflict region ended up resolved (or not)."""

    AI_VALIDATED = "ai_validated"
    FALLBACK_OURS = "fallback_ours"
    FALLBACK_THEIRS = "fallback_theirs"
    MANUAL_REQUIRED = "manual_required"


class CheckOutcome(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    NOT_APPLICABLE = "not_applicable"
    SKIPPED = "skipped"


class FileStatus(str, Enum):
    RESOLVED = "resolved"
    BLOCKED = "blocked"


@dataclass(slots=True)
class Conflict:
    """One contiguous conflicting region inside one file."""

    file_path: str
    index: int
    ours: str
    theirs: str
    language: str
    start_line: int
    end_line: int
    base: str | None = None
    context_before: tuple[str, ...] = ()
    context_after: tuple[str, ...] = ()
    binary: bool = False
    manual_reason: str | None = None
    ours_label: str = "ours"
    theirs_label: str = "theirs"
    document: ConflictDocument | None = field(default=None, repr=False, compare=False)

    @property
    def location(self) -> str:
        return f"{self.file_path}:{self.start_line}"


@dataclass(slots=True)
class ConflictDocument:
    """A conflicted file split into plain chunks around its conflict regions.

    ``chunks`` always holds ``len(conflicts) + 1`` entries: the text before the
    first region, between consecutive regions, and after the last one.
    """

    path: str
    chunks: tuple[str, ...]
    conflicts: tuple[Conflict, ...]

    def render(self, resolutions: Mapping[int, str], *, default: str = "ours") -> str:
        """Rebuild file text, substituting a resolution for every region.

        Regions missing from ``resolutions`` fall back to the ``default`` side.
        """

        return self.render_file(resolutions, default=default).text

    def render_file(
        self,
        resolutions: Mapping[int, str],
        *,
        default: str = "ours",
    ) -> RenderedFile:
        """Like ``render`` but also reports where each region landed.

        Regions absent from ``resolutions`` are listed in ``pending``.
        """

        parts: list[str] = [self.chunks[0]]
        line = self.chunks[0].count("\n") + 1
        spans: dict[int, tuple[int, int]] = {}
        pending: set[int] = set()
        for conflict, chunk in zip(self.conflicts, self.chunks[1:], strict=True):
            text = resolutions.get(conflict.index)
            if text is None:
                pending.add(conflict.index)
                text = conflict.theirs if default == "theirs" else conflict.ours
            text = _terminate_line(text)
            height = text.count("\n")
            spans[conflict.index] = (line, line + height - 1)
            line += height + chunk.count("\n")
            parts.append(text)
            parts.append(chunk)
        return RenderedFile(text="".join(parts), spans=spans, pending=frozenset(pending))


@dataclass(frozen=True, slots=True)
class RenderedFile:
    """Rendered file text with the 1-based, inclusive line span of each region."""

    text: str
    spans: Mapping[int, tuple[int, int]] = field(default_factory=dict)
    pending: frozenset[int] = frozenset()

    def in_pending_region(self, line: int | None) -> bool:
        """True when ``line`` falls inside a region whose text is not decided yet."""

        if line is None:
            return False
        for index in self.pending:
            first, last = self.spans.get(index, (0, -1))
            if first <= line <= last:
                return True
        return False


@dataclass(frozen=True, slots=True)
class ResolutionAttempt:
    """Immutable audit record for one candidate fix of one conflict."""

    file_path: str
    conflict_index: int
    start_line: int
    language: str
    method: ResolutionMethod
    success: bool
    syntax: CheckOutcome
    security: CheckOutcome
    semantic: CheckOutcome
    tests: CheckOutcome
    rationale: str
    candidate_text: str | None
    ours_text: str
    theirs_text: str
    target_branch: str
    binary: bool = False
    job_id: str | None = None
    attempt_id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=utc_now)

    def to_event_details(self) -> dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "job_id": self.job_id,
            "file_path": self.file_path,
            "conflict_index": self.conflict_index,
            "start_line": self.start_line,
            "method": self.method.value,
            "success": self.success,
            "checks": {
                "syntax": self.syntax.value,
                "security": self.security.value,
                "semantic": self.semantic.value,
                "tests": self.tests.value,
            },
            "rationale": self.rationale,
        }


@dataclass(slots=True)
class FileOutcome:
    """Aggregated resolution result for one file."""

    path: str
    status: FileStatus
    content: str | None
    attempts: list[ResolutionAttempt] = field(default_factory=list)
    blocking_conflict_index: int | None = None
    blocking_line: int | None = None
    reason: str | None = None


@dataclass(slots=True)
class PipelineResult:
    """Per-job aggregate of every file outcome and attempt."""

    files: list[FileOutcome]
    attempts: list[ResolutionAttempt]

    @property
    def resolved(self) -> bool:
        return all(outcome.status == FileStatus.RESOLVED for outcome in self.files)

    @property
    def blocking(self) -> dict[str, str]:
        return {
            outcome.path: f"line {outcome.blocking_line}: {outcome.reason}"
            for outcome in self.files
            if outcome.status == FileStatus.BLOCKED
        }

    def raise_for_blocked(self) -> None:
        blocking = self.blocking
        if blocking:
            raise UnresolvableConflict(blocking)


def _terminate_line(text: str) -> str:
    if text and not text.endswith("\n"):
        return f"{text}\n"
    return text
