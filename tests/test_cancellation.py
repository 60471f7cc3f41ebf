from __future__ import annotations

import allure
import pytest

from rebase_pilot.orchestrator.cancellation import CancellationToken
from rebase_pilot.orchestrator.errors import JobCancelled

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Cancellation"),
]


def test_token_starts_clear_and_latches_once_cancelled() -> None:
    token = CancellationToken("job-1")
    token.raise_if_cancelled()

    token.cancel()

    assert token.cancelled
    with pytest.raises(JobCancelled) as error:
        token.raise_if_cancelled()
    assert error.value.job_id == "job-1"


def test_probe_is_rate_limited() -> None:
    calls: list[int] = []

    def _probe() -> bool:
        calls.append(1)
        return False

    token = CancellationToken("job-1", probe=_probe, probe_interval_seconds=3600)

    assert not token.cancelled
    assert not token.cancelled
    assert len(calls) == 1


def test_probe_can_cancel_the_token() -> None:
    answers = iter([False, True])
    token = CancellationToken("job-1", probe=lambda: next(answers), probe_interval_seconds=0)

    assert not token.cancelled
    assert token.cancelled
    assert token.cancelled
