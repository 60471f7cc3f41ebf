"""Git operation layer."""

from rebase_pilot.orchestrator.git.base import GitOperations, RebaseResult
from rebase_pilot.orchestrator.git.cli_git import GitCli

__all__ = ["GitCli", "GitOperations", "RebaseResult"]
