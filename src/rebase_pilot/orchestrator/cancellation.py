"""Cooperative cancellation signal delivered to running jobs."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from rebase_pilot.orchestrator.errors import JobCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """Set once by the manager, polled by the worker at each checkpoint.

    ``probe`` lets a token notice a cancel requested from another process (for
    example a ``cancel_requested`` job event); it is called at most once per
    ``probe_interval_seconds``.
    """

    def __init__(
        self,
        job_id: str,
        *,
        probe: Callable[[], bool] | None = None,
        probe_interval_seconds: float = 1.0,
    ) -> None:
        self.job_id = job_id
        self._event = threading.Event()
        self._probe = probe
        self._probe_interval_seconds = probe_interval_seconds
        self._next_probe_at = 0.0
        self._probe_lock = threading.Lock()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._probe is None:
            return False
        with self._probe_lock:
            now = time.monotonic()
            if now < self._next_probe_at:
                return False
            self._next_probe_at = now + self._probe_interval_seconds
            if self._probe():
                logger.info("Cancellation requested externally for job_id=%s", self.job_id)
                self._event.set()
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise JobCancelled(self.job_id)
