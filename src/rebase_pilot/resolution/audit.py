"""Append-only audit stream of resolution attempts."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from rebase_pilot.resolution.models import ResolutionAttempt

logger = logging.getLogger(__name__)

AuditSink = Callable[[ResolutionAttempt], None]


class InMemoryAuditLog:
    """Thread-safe list of every attempt published to it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: list[ResolutionAttempt] = []

    def __call__(self, attempt: ResolutionAttempt) -> None:
        with self._lock:
            self._records.append(attempt)

    def records(self, *, job_id: str | None = None) -> list[ResolutionAttempt]:
        with self._lock:
            if job_id is None:
                return list(self._records)
            return [record for record in self._records if record.job_id == job_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class AuditStream:
    """Fan every attempt out to the subscribed sinks.

    A failing sink is logged and skipped; it never aborts resolution.
    """

    def __init__(self, sinks: list[AuditSink] | None = None) -> None:
        self._lock = threading.Lock()
        self._sinks: list[AuditSink] = list(sinks or [])

    def subscribe(self, sink: AuditSink) -> Callable[[], None]:
        with self._lock:
            self._sinks.append(sink)

        def _unsubscribe() -> None:
            with self._lock:
                if sink in self._sinks:
                    self._sinks.remove(sink)

        return _unsubscribe

    def publish(self, attempt: ResolutionAttempt) -> None:
        with self._lock:
            sinks = list(self._sinks)
        for sink in sinks:
            try:
                sink(attempt)
            except Exception:
                logger.exception(
                    "Audit sink failed for attempt_id=%s file=%s",
                    attempt.attempt_id,
                    attempt.file_path,
                )
