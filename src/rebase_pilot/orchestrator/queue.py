"""Priority-aware in-memory job queue with blocking dequeue."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass

from rebase_pilot.orchestrator.models import JobPriority


@dataclass(frozen=True, slots=True)
class QueuedJob:
    job_id: str
    priority: JobPriority
    repository: str


class JobQueue:
    """One FIFO lane per priority tier.

    ``dequeue`` always serves the highest non-empty tier. Priority is strict: a
    steady stream of high-priority jobs starves lower tiers, there is no aging.
    """

    def __init__(self, tiers: tuple[JobPriority, ...] = tuple(JobPriority)) -> None:
        self._tiers = tuple(sorted(tiers, key=lambda tier: tier.rank))
        self._lanes: dict[JobPriority, deque[QueuedJob]] = {tier: deque() for tier in self._tiers}
        self._members: set[str] = set()
        self._condition = threading.Condition()
        self._closed = False

    def enqueue(self, item: QueuedJob) -> None:
        with self._condition:
            if self._closed:
                raise RuntimeError("Job queue is closed.")
            if item.job_id in self._members:
                raise ValueError(f"Job already queued: {item.job_id}")
            self._lanes[item.priority].append(item)
            self._members.add(item.job_id)
            self._condition.notify()

    def dequeue(self, timeout: float | None = None) -> QueuedJob | None:
        """Block until a job is available.

        Returns ``None`` when ``timeout`` elapses or the queue is closed.
        """

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while True:
                item = self._pop_locked()
                if item is not None:
                    return item
                if self._closed:
                    return None
                if deadline is None:
                    self._condition.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._condition.wait(remaining)

    def remove(self, job_id: str) -> bool:
        """Drop a queued job; False when it is not (or no longer) queued."""

        with self._condition:
            if job_id not in self._members:
                return False
            for lane in self._lanes.values():
                for item in lane:
                    if item.job_id == job_id:
                        lane.remove(item)
                        self._members.discard(job_id)
                        return True
            return False

    def close(self) -> None:
        """Wake every blocked consumer; subsequent dequeues drain then return None."""

        with self._condition:
            self._closed = True
            self._condition.notify_all()

    @property
    def closed(self) -> bool:
        with self._condition:
            return self._closed

    def __contains__(self, job_id: object) -> bool:
        with self._condition:
            return job_id in self._members

    def __len__(self) -> int:
        with self._condition:
            return len(self._members)

    def snapshot(self) -> dict[JobPriority, list[str]]:
        with self._condition:
            return {tier: [item.job_id for item in lane] for tier, lane in self._lanes.items()}

    def _pop_locked(self) -> QueuedJob | None:
        for tier in self._tiers:
            lane = self._lanes[tier]
            if lane:
                item = lane.popleft()
                self._members.discard(item.job_id)
                return item
        return None
