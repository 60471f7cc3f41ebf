from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import allure
import pytest

from rebase_pilot.orchestrator.usage import InMemoryUsageCounter, ScopeLimit, SqlUsageCounter
from rebase_pilot.storage.alembic_runner import upgrade_head

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Admission Control"),
]


@pytest.fixture()
def sql_counter(tmp_path: Path) -> Iterator[SqlUsageCounter]:
    db_path = tmp_path / "usage.db"
    upgrade_head(db_path)
    counter = SqlUsageCounter(db_path)
    yield counter
    counter.close()


@pytest.fixture(params=["memory", "sql"])
def counter(request: pytest.FixtureRequest, sql_counter: SqlUsageCounter):
    if request.param == "memory":
        return InMemoryUsageCounter()
    return sql_counter


_LIMITS = (
    ScopeLimit(scope="global", scope_id="*", limit=5),
    ScopeLimit(scope="user", scope_id="alice", limit=2),
)


def test_charge_is_applied_to_every_scope(counter) -> None:
    result = counter.try_charge(_LIMITS, cost=2, window_start=60)

    assert result.allowed
    assert [(usage.scope, usage.used, usage.remaining) for usage in result.usages] == [
        ("global", 2, 3),
        ("user", 2, 0),
    ]
    assert counter.current(scope="global", scope_id="*", window_start=60) == 2


def test_denied_charge_leaves_every_scope_untouched(counter) -> None:
    assert counter.try_charge(_LIMITS, cost=2, window_start=60).allowed

    result = counter.try_charge(_LIMITS, cost=1, window_start=60)

    assert not result.allowed
    assert result.violated is not None
    assert result.violated.scope == "user"
    assert result.violated.used == 2
    assert result.violated.remaining == 0
    assert counter.current(scope="global", scope_id="*", window_start=60) == 2


def test_windows_are_counted_independently(counter) -> None:
    assert counter.try_charge(_LIMITS, cost=2, window_start=60).allowed

    assert counter.try_charge(_LIMITS, cost=2, window_start=120).allowed
    assert counter.current(scope="user", scope_id="alice", window_start=120) == 2


def test_zero_cost_is_always_admitted_when_within_limit(counter) -> None:
    assert counter.try_charge(_LIMITS, cost=2, window_start=60).allowed

    assert counter.try_charge(_LIMITS, cost=0, window_start=60).allowed


def test_unknown_scope_reads_as_zero(sql_counter: SqlUsageCounter) -> None:
    assert sql_counter.current(scope="organization", scope_id="nobody", window_start=0) == 0
