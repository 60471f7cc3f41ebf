"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from rebase_pilot.orchestrator.admission import AdmissionController, AdmissionLimits
from rebase_pilot.orchestrator.manager import JobManager
from rebase_pilot.orchestrator.queue import JobQueue
from rebase_pilot.orchestrator.repository import JobRepository
from rebase_pilot.orchestrator.usage import InMemoryUsageCounter

_SRC_DIR = Path(__file__).resolve().parents[1] / "src"

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m rebase_pilot.orchestrator.backend.echo_agent "
    "--request-file {request_file}"
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Drop REBASE_PILOT_* variables from the developer shell."""

    for name in list(os.environ):
        if name.startswith("REBASE_PILOT_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def echo_agent(monkeypatch: pytest.MonkeyPatch) -> str:
    """Command template for the deterministic echo agent, importable from subprocesses."""

    existing = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join([str(_SRC_DIR), existing]) if existing else str(_SRC_DIR),
    )
    return ECHO_AGENT_COMMAND_TEMPLATE


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "jobs.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def make_manager(repository: JobRepository) -> Iterator[Callable[..., JobManager]]:
    """Build managers over the shared test database; each gets its own queue."""

    managers: list[JobManager] = []

    def _make(
        *,
        limits: AdmissionLimits | None = None,
        counter: InMemoryUsageCounter | None = None,
        clock: Callable[[], float] | None = None,
        retry_base_seconds: float = 0.0,
        retry_max_seconds: float = 0.0,
    ) -> JobManager:
        admission = AdmissionController(
            counter=counter or InMemoryUsageCounter(),
            limits=limits or AdmissionLimits(),
            **({"clock": clock} if clock is not None else {}),
        )
        manager = JobManager(
            repository=repository,
            admission=admission,
            queue=JobQueue(),
            retry_base_seconds=retry_base_seconds,
            retry_max_seconds=retry_max_seconds,
            cancel_probe_seconds=0.0,
        )
        admission.warning_sink = manager.record_budget_warning
        managers.append(manager)
        return manager

    yield _make
    for manager in managers:
        manager.close()
        manager.queue.close()
