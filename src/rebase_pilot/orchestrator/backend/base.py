"""Candidate generator interface."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(slots=True)
class GenerationRequest:
    """Everything a generator may see about one conflict region."""

    file_path: str
    language: str
    conflict_text: str
    context: str
    ours: str
    theirs: str
    target_branch: str
    base: str | None = None
    job_id: str | None = None
    timeout_seconds: float | None = None


class CandidateGenerator(Protocol):
    """Protocol implemented by candidate generators."""

    def generate(self, request: GenerationRequest) -> str:
        """Return replacement text for the region.

        Raises ``CandidateGenerationError`` (with a retryability hint) or
        ``TimeoutError``.
        """
