"""Git operation layer interface."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from rebase_pilot.resolution.models import Conflict


@dataclass(slots=True)
class RebaseResult:
    """Outcome of a rebase step: clean, or stopped on conflicts."""

    success: bool
    conflicts: list[Conflict] = field(default_factory=list)

    @classmethod
    def clean(cls) -> RebaseResult:
        return cls(success=True)


class GitOperations(Protocol):
    """Black-box Git calls used by workers; failures raise ``GitOperationError``."""

    def clone(self, repository: str, *, branch: str, job_id: str) -> Path:
        """Check out ``branch`` of ``repository`` into a fresh working copy."""

    def rebase(self, workdir: Path, *, target_branch: str) -> RebaseResult: ...

    def apply_resolution(self, workdir: Path, file_path: str, content: str) -> None: ...

    def continue_rebase(self, workdir: Path) -> RebaseResult:
        """Resume after resolutions; may stop again on the next commit's conflicts."""

    def push(self, workdir: Path, *, branch: str) -> None: ...

    def abort(self, workdir: Path) -> None:
        """Best-effort cleanup of an in-progress rebase."""
