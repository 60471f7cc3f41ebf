from __future__ import annotations

import json
import sys
from pathlib import Path

import allure
import pytest

from rebase_pilot.orchestrator.backend.base import GenerationRequest
from rebase_pilot.orchestrator.backend.cli_backend import (
    CommandCandidateGenerator,
    build_prompt,
    extract_candidate,
)
from rebase_pilot.orchestrator.backend.echo_agent import main as echo_main
from rebase_pilot.orchestrator.errors import CandidateGenerationError

pytestmark = [
    allure.epic("Conflict Resolution"),
    allure.feature("Agent Command Rendering"),
]


def _request(**overrides) -> GenerationRequest:
    values = {
        "file_path": "app/config.py",
        "language": "python",
        "conflict_text": "<<<<<<< ours\nlimit = 10\n=======\nlimit = 20\n>>>>>>> theirs\n",
        "context": "import os\n<<<<<<< ours\nlimit = 10\n=======\nlimit = 20\n>>>>>>> theirs\n",
        "ours": "limit = 10\n",
        "theirs": "limit = 20\n",
        "target_branch": "main",
        "job_id": "job-1",
        "timeout_seconds": 30.0,
    }
    values.update(overrides)
    return GenerationRequest(**values)


def test_template_requires_prompt_placeholder() -> None:
    with pytest.raises(ValueError, match="must include"):
        CommandCandidateGenerator(command_template="agent --file {file_path}")
    with pytest.raises(ValueError, match="empty"):
        CommandCandidateGenerator(command_template="   ")


@pytest.mark.parametrize(
    ("strategy", "expected"),
    [
        ("ours", "limit = 10\n"),
        ("theirs", "limit = 20\n"),
        ("fenced", "limit = 20\n"),
        ("union", "limit = 10\nlimit = 20\n"),
    ],
)
def test_echo_agent_candidates(echo_agent: str, strategy: str, expected: str) -> None:
    generator = CommandCandidateGenerator(command_template=f"{echo_agent} --strategy {strategy}")

    assert generator.generate(_request()) == expected


def test_failing_agent_is_not_retryable(echo_agent: str) -> None:
    generator = CommandCandidateGenerator(command_template=f"{echo_agent} --strategy fail")

    with pytest.raises(CandidateGenerationError) as error:
        generator.generate(_request())

    assert not error.value.retryable
    assert "refusing to resolve" in str(error.value)


def test_rate_limited_agent_is_retryable(echo_agent: str) -> None:
    generator = CommandCandidateGenerator(command_template=f"{echo_agent} --strategy rate-limited")

    with pytest.raises(CandidateGenerationError) as error:
        generator.generate(_request())

    assert error.value.retryable


def test_slow_agent_times_out(echo_agent: str) -> None:
    generator = CommandCandidateGenerator(command_template=f"{echo_agent} --sleep 5")

    with pytest.raises(TimeoutError):
        generator.generate(_request(timeout_seconds=0.5))


def test_missing_command_is_not_retryable() -> None:
    generator = CommandCandidateGenerator(
        command_template="rebase-pilot-no-such-agent-binary {prompt_file}",
    )

    with pytest.raises(CandidateGenerationError, match="not found") as error:
        generator.generate(_request())

    assert not error.value.retryable


def test_unknown_placeholder_is_rejected() -> None:
    generator = CommandCandidateGenerator(command_template="agent {prompt} --model {model}")

    with pytest.raises(CandidateGenerationError, match="placeholder"):
        generator.generate(_request())


def test_prompt_file_and_language_placeholders(tmp_path: Path) -> None:
    script = tmp_path / "agent.py"
    script.write_text(
        "import sys\n"
        "from pathlib import Path\n"
        "print(sys.argv[2] + ':' + Path(sys.argv[1]).read_text().splitlines()[0])\n",
        "utf-8",
    )
    generator = CommandCandidateGenerator(
        command_template=f"{sys.executable} {script} {{prompt_file}} {{language}}",
        workdir_root=tmp_path / "scratch",
    )

    candidate = generator.generate(_request())

    assert candidate == (
        "python:Resolve the merge conflict in app/config.py (python) while rebasing onto main.\n"
    )
    assert list((tmp_path / "scratch").iterdir()) == []


def test_build_prompt_mentions_region_and_branch() -> None:
    prompt = build_prompt(_request())

    assert "onto main" in prompt
    assert "Conflict region:\n<<<<<<< ours\nlimit = 10\n" in prompt
    assert "without conflict markers" in prompt


@pytest.mark.parametrize(
    ("stdout", "expected"),
    [
        ("x = 1\n", "x = 1\n"),
        ("Sure:\n```python\nx = 1\n```\nand more\n```\ny\n```", "x = 1\n"),
        ("  \n", None),
    ],
)
def test_extract_candidate(stdout: str, expected: str | None) -> None:
    assert extract_candidate(stdout) == expected


def test_echo_agent_reads_request_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    request_file = tmp_path / "request.json"
    request_file.write_text(json.dumps({"ours": "a\n", "theirs": "a\nb\n"}), "utf-8")

    assert echo_main(["--request-file", str(request_file)]) == 0

    assert capsys.readouterr().out == "a\nb\n"
