from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest

from rebase_pilot.orchestrator.admission import (
    AdmissionController,
    AdmissionDecision,
    AdmissionLimits,
    AdmissionRequest,
    AdmissionScope,
    BudgetWarning,
)
from rebase_pilot.orchestrator.errors import BudgetExceeded
from rebase_pilot.orchestrator.usage import InMemoryUsageCounter, SqlUsageCounter
from rebase_pilot.storage.alembic_runner import upgrade_head

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Admission Control"),
]


class _Clock:
    def __init__(self, now: float = 1_800_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _request(user: str = "u1", org: str = "org1", **kwargs) -> AdmissionRequest:
    return AdmissionRequest(user_id=user, organization_id=org, **kwargs)


def _admit_concurrently(controller: AdmissionController, count: int) -> list[AdmissionDecision]:
    barrier = threading.Barrier(count)
    decisions: list[AdmissionDecision] = []
    lock = threading.Lock()

    def _run(index: int) -> None:
        barrier.wait(timeout=10)
        decision = controller.try_admit(_request(user=f"user-{index}"))
        with lock:
            decisions.append(decision)

    threads = [threading.Thread(target=_run, args=(index,)) for index in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return decisions


def test_eleventh_concurrent_request_is_denied_with_zero_remaining() -> None:
    controller = AdmissionController(
        counter=InMemoryUsageCounter(),
        limits=AdmissionLimits(window_seconds=60, global_limit=10),
        clock=_Clock(),
    )

    decisions = _admit_concurrently(controller, 11)

    allowed = [decision for decision in decisions if decision.allowed]
    denied = [decision for decision in decisions if not decision.allowed]
    assert len(allowed) == 10
    assert len(denied) == 1
    assert denied[0].scope == AdmissionScope.GLOBAL
    assert denied[0].remaining == 0
    with pytest.raises(BudgetExceeded) as error:
        denied[0].raise_for_denied(job_id="job-11")
    assert error.value.remaining == 0
    assert error.value.limit == 10
    assert error.value.job_id == "job-11"


def test_last_unit_is_never_double_spent_across_sql_counters(tmp_path: Path) -> None:
    db_path = tmp_path / "usage.db"
    upgrade_head(db_path)
    counters = [SqlUsageCounter(db_path) for _ in range(6)]
    assert counters[0].current(scope="organization", scope_id="org1", window_start=0) == 0
    clock = _Clock()
    controllers = [
        AdmissionController(
            counter=counter,
            limits=AdmissionLimits(window_seconds=60, organization_limit=1),
            clock=clock,
        )
        for counter in counters
    ]
    barrier = threading.Barrier(len(controllers))
    decisions: list[AdmissionDecision] = []
    lock = threading.Lock()

    def _run(controller: AdmissionController) -> None:
        barrier.wait(timeout=10)
        decision = controller.try_admit(_request())
        with lock:
            decisions.append(decision)

    threads = [threading.Thread(target=_run, args=(controller,)) for controller in controllers]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)
    for counter in counters:
        counter.close()

    assert sum(decision.allowed for decision in decisions) == 1
    assert len(decisions) == len(controllers)


def test_first_violated_scope_is_reported_and_nothing_is_charged() -> None:
    counter = InMemoryUsageCounter()
    clock = _Clock()
    controller = AdmissionController(
        counter=counter,
        limits=AdmissionLimits(global_limit=10, user_limit=1),
        clock=clock,
    )
    assert controller.try_admit(_request(user="alice")).allowed

    denied = controller.try_admit(_request(user="alice"))

    assert not denied.allowed
    assert denied.scope == AdmissionScope.USER
    assert denied.scope_id == "alice"
    assert denied.current == 1
    window = controller.current_window_start()
    assert counter.current(scope="global", scope_id="*", window_start=window) == 1
    assert controller.try_admit(_request(user="bob")).allowed


def test_global_scope_is_checked_before_user_scope() -> None:
    controller = AdmissionController(
        counter=InMemoryUsageCounter(),
        limits=AdmissionLimits(global_limit=1, user_limit=1),
        clock=_Clock(),
    )
    assert controller.try_admit(_request(user="alice")).allowed

    denied = controller.try_admit(_request(user="alice"))

    assert denied.scope == AdmissionScope.GLOBAL
    assert "global budget exhausted" in denied.reason


def test_operation_limits_apply_per_operation() -> None:
    controller = AdmissionController(
        counter=InMemoryUsageCounter(),
        limits=AdmissionLimits(operation_limits={"expensive": 2}),
        clock=_Clock(),
    )

    assert controller.try_admit(_request(operation="expensive", estimated_cost=2)).allowed
    denied = controller.try_admit(_request(operation="expensive"))
    assert denied.scope == AdmissionScope.OPERATION
    assert denied.scope_id == "expensive"
    assert controller.try_admit(_request(operation="standard", estimated_cost=50)).allowed


def test_no_configured_limits_admits_everything() -> None:
    controller = AdmissionController(counter=InMemoryUsageCounter(), limits=AdmissionLimits())

    decision = controller.try_admit(_request(estimated_cost=1000))

    assert decision.allowed
    assert decision.remaining is None
    decision.raise_for_denied()


def test_budget_resets_in_next_window() -> None:
    clock = _Clock(now=1_800_000_000.0)
    controller = AdmissionController(
        counter=InMemoryUsageCounter(),
        limits=AdmissionLimits(window_seconds=60, global_limit=1),
        clock=clock,
    )
    assert controller.try_admit(_request()).allowed
    assert not controller.try_admit(_request()).allowed

    clock.now += 60

    assert controller.try_admit(_request()).allowed


def test_warning_is_emitted_once_when_threshold_is_crossed() -> None:
    warnings: list[BudgetWarning] = []
    controller = AdmissionController(
        counter=InMemoryUsageCounter(),
        limits=AdmissionLimits(global_limit=5, warning_threshold=0.8),
        warning_sink=warnings.append,
        clock=_Clock(),
    )

    for index in range(5):
        assert controller.try_admit(_request(job_id=f"job-{index}")).allowed

    assert len(warnings) == 1
    assert warnings[0].used == 4
    assert warnings[0].job_id == "job-3"
    assert warnings[0].ratio == pytest.approx(0.8)


def test_failing_warning_sink_does_not_block_admission() -> None:
    def _broken_sink(_: BudgetWarning) -> None:
        raise RuntimeError("sink down")

    controller = AdmissionController(
        counter=InMemoryUsageCounter(),
        limits=AdmissionLimits(global_limit=1, warning_threshold=0.5),
        warning_sink=_broken_sink,
        clock=_Clock(),
    )

    assert controller.try_admit(_request()).allowed


def test_negative_cost_is_rejected() -> None:
    controller = AdmissionController(counter=InMemoryUsageCounter(), limits=AdmissionLimits())

    with pytest.raises(ValueError, match="estimated_cost"):
        controller.try_admit(_request(estimated_cost=-1))
