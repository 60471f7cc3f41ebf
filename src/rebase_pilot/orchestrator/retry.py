"""Exponential retry backoff and delayed requeue scheduling."""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


def compute_retry_delay(
    *,
    retry_number: int,
    base_seconds: float,
    max_seconds: float,
    rng: random.Random | None = None,
) -> float:
    """Full-jitter exponential backoff: uniform in ``[0, min(max, base * 2**(n-1))]``."""

    max_delay = min(max_seconds, base_seconds * (2 ** max(retry_number - 1, 0)))
    return (rng or random).uniform(0, max(max_delay, 0.0))


class RetryScheduler:
    """Fire one callback per job after its backoff delay.

    Each pending retry owns a daemon ``threading.Timer``; a non-positive delay runs
    the callback inline.
    """

    def __init__(self, callback: Callable[[str], None]) -> None:
        self._callback = callback
        self._lock = threading.Lock()
        self._timers: dict[str, threading.Timer] = {}
        self._closed = False

    def schedule(self, job_id: str, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self._fire(job_id)
            return
        timer = threading.Timer(delay_seconds, self._fire, args=(job_id,))
        timer.daemon = True
        with self._lock:
            if self._closed:
                return
            previous = self._timers.pop(job_id, None)
            if previous is not None:
                previous.cancel()
            self._timers[job_id] = timer
        timer.start()
        logger.info("Retry scheduled job_id=%s in %.2fs", job_id, delay_seconds)

    def cancel(self, job_id: str) -> bool:
        with self._lock:
            timer = self._timers.pop(job_id, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def pending(self) -> list[str]:
        with self._lock:
            return list(self._timers)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def _fire(self, job_id: str) -> None:
        with self._lock:
            self._timers.pop(job_id, None)
        try:
            self._callback(job_id)
        except Exception:
            logger.exception("Retry callback failed for job_id=%s", job_id)
