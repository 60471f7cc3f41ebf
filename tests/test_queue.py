from __future__ import annotations

import threading

import allure
import pytest

from rebase_pilot.orchestrator.models import JobPriority
from rebase_pilot.orchestrator.queue import JobQueue, QueuedJob

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Priority Queue"),
]


def _item(job_id: str, priority: JobPriority = JobPriority.NORMAL) -> QueuedJob:
    return QueuedJob(job_id=job_id, priority=priority, repository="repo")


def test_high_priority_job_enqueued_later_is_dequeued_first() -> None:
    queue = JobQueue()
    queue.enqueue(_item("normal-1"))
    queue.enqueue(_item("high-1", JobPriority.HIGH))

    first = queue.dequeue(timeout=0)
    second = queue.dequeue(timeout=0)

    assert first is not None and first.job_id == "high-1"
    assert second is not None and second.job_id == "normal-1"


def test_jobs_within_one_tier_are_fifo() -> None:
    queue = JobQueue()
    for job_id in ("a", "b", "c"):
        queue.enqueue(_item(job_id, JobPriority.LOW))
    queue.enqueue(_item("n"))

    order = [queue.dequeue(timeout=0) for _ in range(4)]

    assert [item.job_id for item in order if item is not None] == ["n", "a", "b", "c"]


def test_duplicate_enqueue_is_rejected() -> None:
    queue = JobQueue()
    queue.enqueue(_item("a"))

    with pytest.raises(ValueError, match="already queued"):
        queue.enqueue(_item("a", JobPriority.HIGH))
    assert len(queue) == 1


def test_removed_job_is_never_dequeued() -> None:
    queue = JobQueue()
    queue.enqueue(_item("a"))
    queue.enqueue(_item("b"))

    assert queue.remove("a") is True
    assert queue.remove("a") is False
    assert "a" not in queue
    item = queue.dequeue(timeout=0)
    assert item is not None and item.job_id == "b"
    assert queue.dequeue(timeout=0) is None


def test_dequeue_times_out_on_empty_queue() -> None:
    assert JobQueue().dequeue(timeout=0.01) is None


def test_blocked_consumer_receives_job_enqueued_later() -> None:
    queue = JobQueue()
    received: list[QueuedJob | None] = []
    consumer = threading.Thread(target=lambda: received.append(queue.dequeue(timeout=5)))
    consumer.start()

    queue.enqueue(_item("late"))
    consumer.join(timeout=5)

    assert [item.job_id for item in received if item is not None] == ["late"]


def test_close_wakes_blocked_consumers_and_rejects_new_jobs() -> None:
    queue = JobQueue()
    received: list[QueuedJob | None] = []
    consumer = threading.Thread(target=lambda: received.append(queue.dequeue()))
    consumer.start()

    queue.close()
    consumer.join(timeout=5)

    assert not consumer.is_alive()
    assert received == [None]
    assert queue.closed
    with pytest.raises(RuntimeError, match="closed"):
        queue.enqueue(_item("a"))


def test_snapshot_lists_lanes_in_priority_order() -> None:
    queue = JobQueue()
    queue.enqueue(_item("low", JobPriority.LOW))
    queue.enqueue(_item("high", JobPriority.HIGH))

    snapshot = queue.snapshot()

    assert list(snapshot) == [JobPriority.HIGH, JobPriority.NORMAL, JobPriority.LOW]
    assert snapshot[JobPriority.HIGH] == ["high"]
    assert snapshot[JobPriority.LOW] == ["low"]
