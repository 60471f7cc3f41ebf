"""Subprocess-based candidate generator for CLI agents."""

from __future__ import annotations

import json
import logging
import os
import re
import shlex
import subprocess
import tempfile
from pathlib import Path

from rebase_pilot.orchestrator.backend.base import GenerationRequest
from rebase_pilot.orchestrator.errors import CandidateGenerationError
from rebase_pilot.orchestrator.failure_classifier import is_transient_output

logger = logging.getLogger(__name__)

_PROMPT_PLACEHOLDERS = ("{prompt}", "{prompt_file}", "{request_file}")
_FENCED_BLOCK = re.compile(r"```[\w+-]*[ \t]*\n(.*?)```", re.DOTALL)


class CommandCandidateGenerator:
    """Render a command template per conflict and read the candidate from stdout.

    Placeholders: ``{prompt}``, ``{prompt_file}``, ``{request_file}`` (JSON with the
    request fields), ``{language}`` and ``{file_path}``; values are shell-quoted.
    """

    def __init__(
        self,
        *,
        command_template: str,
        workdir_root: Path | None = None,
        transient_exit_codes: tuple[int, ...] = (137, 143),
        default_timeout_seconds: float = 120.0,
    ) -> None:
        stripped = command_template.strip()
        if not stripped:
            raise ValueError("Generator command template is empty.")
        if not any(placeholder in stripped for placeholder in _PROMPT_PLACEHOLDERS):
            raise ValueError(
                "Generator command template must include {prompt}, {prompt_file} "
                "or {request_file}.",
            )
        self.command_template = stripped
        self.workdir_root = workdir_root
        self.transient_exit_codes = transient_exit_codes
        self.default_timeout_seconds = default_timeout_seconds

    def generate(self, request: GenerationRequest) -> str:
        prompt = build_prompt(request)
        if self.workdir_root is not None:
            self.workdir_root.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(
            prefix="rebase-pilot-gen-",
            dir=self.workdir_root,
        ) as scratch:
            prompt_file = Path(scratch) / "prompt.txt"
            request_file = Path(scratch) / "request.json"
            prompt_file.write_text(prompt, "utf-8")
            request_file.write_text(
                json.dumps(_request_payload(request), ensure_ascii=False, indent=2),
                "utf-8",
            )
            argv = self._build_argv(
                prompt=prompt,
                prompt_file=prompt_file,
                request_file=request_file,
                request=request,
            )
            return self._run(argv, request=request)

    def _build_argv(
        self,
        *,
        prompt: str,
        prompt_file: Path,
        request_file: Path,
        request: GenerationRequest,
    ) -> list[str]:
        try:
            rendered = self.command_template.format(
                prompt=shlex.quote(prompt),
                prompt_file=shlex.quote(str(prompt_file)),
                request_file=shlex.quote(str(request_file)),
                language=shlex.quote(request.language),
                file_path=shlex.quote(request.file_path),
            )
        except KeyError as error:
            raise CandidateGenerationError(
                f"Unsupported command template placeholder: {error}",
                retryable=False,
            ) from error
        argv = shlex.split(rendered)
        if not argv:
            raise CandidateGenerationError(
                "Generator command template rendered empty command.",
                retryable=False,
            )
        return argv

    def _run(self, argv: list[str], *, request: GenerationRequest) -> str:
        timeout = request.timeout_seconds or self.default_timeout_seconds
        env = os.environ.copy()
        env["REBASE_PILOT_FILE_PATH"] = request.file_path
        env["REBASE_PILOT_LANGUAGE"] = request.language
        env["REBASE_PILOT_TARGET_BRANCH"] = request.target_branch
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                env=env,
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as error:
            raise TimeoutError(f"Generator exceeded {timeout:.0f}s for {request.file_path}") from error
        except FileNotFoundError as error:
            raise CandidateGenerationError(
                f"Generator command not found: {argv[0]}",
                retryable=False,
            ) from error
        except OSError as error:
            raise CandidateGenerationError(
                f"Generator failed to start: {error}",
                retryable=True,
            ) from error

        if completed.returncode != 0:
            stderr_tail = completed.stderr.strip()[-500:]
            retryable = completed.returncode in self.transient_exit_codes or is_transient_output(
                completed.stderr,
            )
            raise CandidateGenerationError(
                f"Generator exited with {completed.returncode}: {stderr_tail}",
                retryable=retryable,
            )

        candidate = extract_candidate(completed.stdout)
        if candidate is None:
            raise CandidateGenerationError("Generator produced no candidate text.", retryable=False)
        logger.debug("Generator produced %d chars for %s", len(candidate), request.file_path)
        return candidate


def build_prompt(request: GenerationRequest) -> str:
    """Instruction text handed to the agent."""

    return (
        f"Resolve the merge conflict in {request.file_path} ({request.language}) "
        f"while rebasing onto {request.target_branch}.\n"
        f"\n"
        f"Surrounding code with the conflict region:\n"
        f"{request.context}\n"
        f"\n"
        f"Conflict region:\n"
        f"{request.conflict_text}\n"
        f"Reply with only the text that replaces the whole conflict region, "
        f"without conflict markers.\n"
    )


def extract_candidate(stdout_text: str) -> str | None:
    """Candidate from agent stdout: first fenced block if present, else raw text."""

    if not stdout_text.strip():
        return None
    fenced = _FENCED_BLOCK.search(stdout_text)
    if fenced is not None:
        return fenced.group(1)
    return stdout_text


def _request_payload(request: GenerationRequest) -> dict[str, object]:
    return {
        "file_path": request.file_path,
        "language": request.language,
        "target_branch": request.target_branch,
        "ours": request.ours,
        "theirs": request.theirs,
        "base": request.base,
        "context": request.context,
        "conflict_text": request.conflict_text,
        "job_id": request.job_id,
    }
