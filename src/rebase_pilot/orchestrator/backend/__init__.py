"""Candidate generator implementations."""

from rebase_pilot.orchestrator.backend.base import CandidateGenerator, GenerationRequest
from rebase_pilot.orchestrator.backend.cli_backend import CommandCandidateGenerator

__all__ = [
    "CandidateGenerator",
    "CommandCandidateGenerator",
    "GenerationRequest",
]
