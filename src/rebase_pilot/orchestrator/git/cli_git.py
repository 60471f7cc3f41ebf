"""Subprocess ``git`` implementation of the Git operation layer."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path

from rebase_pilot.orchestrator.errors import GitOperationError
from rebase_pilot.orchestrator.failure_classifier import is_transient_output
from rebase_pilot.orchestrator.git.base import RebaseResult
from rebase_pilot.resolution.languages import is_binary_path
from rebase_pilot.resolution.models import Conflict
from rebase_pilot.resolution.parser import (
    ConflictParseError,
    ConflictParser,
    binary_document,
    manual_document,
)

logger = logging.getLogger(__name__)


class GitCli:
    """Run ``git`` in per-job working copies under ``workdir_root``."""

    def __init__(
        self,
        *,
        workdir_root: Path,
        remote_name: str = "origin",
        timeout_seconds: float = 600.0,
        parser: ConflictParser | None = None,
        git_binary: str = "git",
    ) -> None:
        self.workdir_root = workdir_root
        self.remote_name = remote_name
        self.timeout_seconds = timeout_seconds
        self.parser = parser or ConflictParser()
        self.git_binary = git_binary

    def clone(self, repository: str, *, branch: str, job_id: str) -> Path:
        workdir = self.workdir_root / job_id
        if workdir.exists():
            shutil.rmtree(workdir)
        self.workdir_root.mkdir(parents=True, exist_ok=True)
        self._git(
            ["clone", "--origin", self.remote_name, "--branch", branch, repository, str(workdir)],
            cwd=self.workdir_root,
            operation="clone",
        )
        return workdir

    def rebase(self, workdir: Path, *, target_branch: str) -> RebaseResult:
        self._git(["fetch", self.remote_name, target_branch], cwd=workdir, operation="fetch")
        completed = self._git(
            ["rebase", f"{self.remote_name}/{target_branch}"],
            cwd=workdir,
            operation="rebase",
            check=False,
        )
        return self._rebase_result(workdir, completed, operation="rebase")

    def apply_resolution(self, workdir: Path, file_path: str, content: str) -> None:
        target = workdir / file_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, "utf-8")
        self._git(["add", "--", file_path], cwd=workdir, operation="apply_resolution")

    def continue_rebase(self, workdir: Path) -> RebaseResult:
        completed = self._git(
            ["-c", "core.editor=true", "rebase", "--continue"],
            cwd=workdir,
            operation="continue_rebase",
            check=False,
        )
        return self._rebase_result(workdir, completed, operation="continue_rebase")

    def push(self, workdir: Path, *, branch: str) -> None:
        self._git(
            ["push", "--force-with-lease", self.remote_name, f"HEAD:{branch}"],
            cwd=workdir,
            operation="push",
        )

    def abort(self, workdir: Path) -> None:
        if not workdir.exists():
            return
        completed = self._git(["rebase", "--abort"], cwd=workdir, operation="abort", check=False)
        if completed.returncode != 0:
            logger.debug("git rebase --abort in %s: %s", workdir, completed.stderr.strip())

    def conflicted_files(self, workdir: Path) -> list[str]:
        completed = self._git(
            ["diff", "--name-only", "--diff-filter=U", "-z"],
            cwd=workdir,
            operation="list_conflicts",
        )
        return [path for path in completed.stdout.split("\0") if path]

    def read_conflicts(self, workdir: Path, file_path: str) -> list[Conflict]:
        """Regions of one unmerged path; never empty.

        A path git reports as unmerged but without markers to parse (deleted on
        one side, renamed) comes back as a single manual-only region.
        """

        target = workdir / file_path
        if is_binary_path(file_path):
            return list(binary_document(file_path).conflicts)
        if not target.exists():
            reason = "unmerged path is missing from the working tree (deleted on one side)"
            return list(manual_document(file_path, reason).conflicts)
        try:
            document = self.parser.parse(file_path, target.read_bytes())
        except ConflictParseError as error:
            raise GitOperationError(str(error), operation="read_conflicts") from error
        if not document.conflicts:
            reason = "unmerged without conflict markers (modify/delete or rename conflict)"
            return list(manual_document(file_path, reason).conflicts)
        return list(document.conflicts)

    def _rebase_result(
        self,
        workdir: Path,
        completed: subprocess.CompletedProcess[str],
        *,
        operation: str,
    ) -> RebaseResult:
        if completed.returncode == 0:
            return RebaseResult.clean()
        files = self.conflicted_files(workdir)
        if not files:
            raise GitOperationError(
                f"git {operation} failed: {_tail(completed)}",
                operation=operation,
                retryable=is_transient_output(completed.stderr),
            )
        conflicts: list[Conflict] = []
        for file_path in files:
            conflicts.extend(self.read_conflicts(workdir, file_path))
        logger.info("git %s stopped on %d conflicted files", operation, len(files))
        return RebaseResult(success=False, conflicts=conflicts)

    def _git(
        self,
        args: list[str],
        *,
        cwd: Path,
        operation: str,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env["GIT_EDITOR"] = "true"
        try:
            completed = subprocess.run(  # noqa: S603
                [self.git_binary, *args],
                cwd=cwd,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as error:
            raise GitOperationError(
                f"git {operation} timed out after {self.timeout_seconds:.0f}s",
                operation=operation,
                retryable=True,
            ) from error
        except FileNotFoundError as error:
            raise GitOperationError(
                f"git binary not found: {self.git_binary}",
                operation=operation,
            ) from error
        if check and completed.returncode != 0:
            raise GitOperationError(
                f"git {operation} failed: {_tail(completed)}",
                operation=operation,
                retryable=is_transient_output(completed.stderr),
            )
        return completed


def _tail(completed: subprocess.CompletedProcess[str], limit: int = 500) -> str:
    return (completed.stderr.strip() or completed.stdout.strip())[-limit:]
