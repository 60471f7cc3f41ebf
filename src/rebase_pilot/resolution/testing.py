"""Test-runner adapters used as the last validation check."""

from __future__ import annotations

import logging
import shlex
import subprocess
import threading
from pathlib import Path, PurePosixPath
from typing import Protocol

logger = logging.getLogger(__name__)


class TestRunner(Protocol):
    __test__ = False

    def has_tests(self, file_path: str) -> bool:
        """True when a test suite reachable from ``file_path`` exists."""
        ...

    def run_tests(self, file_path: str, content: str) -> bool:
        """Run the suite with ``content`` in place of ``file_path``; True on pass."""
        ...


class NullTestRunner:
    """No discoverable tests anywhere; the test check is always not applicable."""

    def has_tests(self, file_path: str) -> bool:  # noqa: ARG002
        return False

    def run_tests(self, file_path: str, content: str) -> bool:  # noqa: ARG002
        return True


class CommandTestRunner:
    """Run a test command against a working copy with the candidate written in.

    Tests for ``pkg/mod.py`` are discovered as ``tests/test_mod.py``,
    ``pkg/test_mod.py`` or ``pkg/mod_test.py``. The original file is restored
    after every run; runs are serialized because they share the working copy.
    """

    def __init__(
        self,
        *,
        workdir: Path,
        command_template: str = "python -m pytest -q {test_path}",
        timeout_seconds: float = 300.0,
    ) -> None:
        if "{test_path}" not in command_template:
            raise ValueError("Test command template must include {test_path}.")
        self.workdir = workdir
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds
        self._lock = threading.Lock()

    def discover(self, file_path: str) -> Path | None:
        pure = PurePosixPath(file_path)
        stem, suffix = pure.stem, pure.suffix
        candidates = (
            self.workdir / "tests" / f"test_{stem}{suffix}",
            self.workdir / pure.parent / f"test_{stem}{suffix}",
            self.workdir / pure.parent / f"{stem}_test{suffix}",
        )
        for candidate in candidates:
            if candidate.is_file() and candidate.resolve() != (self.workdir / pure).resolve():
                return candidate
        return None

    def has_tests(self, file_path: str) -> bool:
        return self.discover(file_path) is not None

    def run_tests(self, file_path: str, content: str) -> bool:
        test_path = self.discover(file_path)
        if test_path is None:
            return True
        target = self.workdir / file_path
        argv = shlex.split(
            self.command_template.format(
                test_path=shlex.quote(str(test_path.relative_to(self.workdir))),
            ),
        )
        with self._lock:
            original = target.read_bytes() if target.exists() else None
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, "utf-8")
            try:
                completed = subprocess.run(  # noqa: S603
                    argv,
                    cwd=self.workdir,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout_seconds,
                    check=False,
                )
            except subprocess.TimeoutExpired as error:
                raise TimeoutError(
                    f"Tests for {file_path} exceeded {self.timeout_seconds:.0f}s",
                ) from error
            finally:
                if original is None:
                    target.unlink(missing_ok=True)
                else:
                    target.write_bytes(original)
        logger.debug(
            "Tests for %s exited with %d: %s",
            file_path,
            completed.returncode,
            completed.stdout[-500:],
        )
        return completed.returncode == 0
