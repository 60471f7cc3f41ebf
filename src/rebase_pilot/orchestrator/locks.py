"""Per-repository exclusive leases with expiry and renewal."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col

from rebase_pilot.orchestrator.errors import LeaseLost
from rebase_pilot.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    utc_now,
)
from rebase_pilot.storage.sqlmodel_models import RepositoryLease

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Lease:
    repository_id: str
    lease_id: str
    holder: str
    acquired_at: datetime
    expires_at: datetime


class RepositoryLock(Protocol):
    ttl_seconds: float

    def acquire(self, repository_id: str, *, holder: str, timeout: float | None = None) -> Lease:
        """Block until the repository is free; ``TimeoutError`` only when ``timeout`` elapses."""
        ...

    def release(self, lease: Lease) -> None: ...

    def renew(self, lease: Lease) -> Lease:
        """Extend the lease; raises ``LeaseLost`` if it was reclaimed."""
        ...


class LocalRepositoryLock:
    """In-process lock table guarded by one condition variable."""

    def __init__(
        self,
        *,
        ttl_seconds: float = 60.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._condition = threading.Condition()
        self._leases: dict[str, Lease] = {}

    def acquire(self, repository_id: str, *, holder: str, timeout: float | None = None) -> Lease:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._condition:
            while True:
                now = self._clock()
                current = self._leases.get(repository_id)
                if current is not None and current.expires_at <= now:
                    logger.warning(
                        "Reclaiming expired lease repository=%s lease_id=%s holder=%s",
                        repository_id,
                        current.lease_id,
                        current.holder,
                    )
                    del self._leases[repository_id]
                    current = None
                if current is None:
                    lease = Lease(
                        repository_id=repository_id,
                        lease_id=str(uuid4()),
                        holder=holder,
                        acquired_at=now,
                        expires_at=now + timedelta(seconds=self.ttl_seconds),
                    )
                    self._leases[repository_id] = lease
                    return lease

                wait_for = max((current.expires_at - now).total_seconds(), 0.001)
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise TimeoutError(f"Timed out waiting for repository lock {repository_id}")
                    wait_for = min(wait_for, remaining)
                self._condition.wait(wait_for)

    def release(self, lease: Lease) -> None:
        with self._condition:
            current = self._leases.get(lease.repository_id)
            if current is None or current.lease_id != lease.lease_id:
                logger.warning(
                    "Release of lease not held repository=%s lease_id=%s",
                    lease.repository_id,
                    lease.lease_id,
                )
                return
            del self._leases[lease.repository_id]
            self._condition.notify_all()

    def renew(self, lease: Lease) -> Lease:
        with self._condition:
            current = self._leases.get(lease.repository_id)
            if current is None or current.lease_id != lease.lease_id:
                raise LeaseLost(repository_id=lease.repository_id, lease_id=lease.lease_id)
            renewed = replace(current, expires_at=self._clock() + timedelta(seconds=self.ttl_seconds))
            self._leases[lease.repository_id] = renewed
            return renewed

    def holder_of(self, repository_id: str) -> str | None:
        with self._condition:
            current = self._leases.get(repository_id)
            if current is None or current.expires_at <= self._clock():
                return None
            return current.holder


class SqlRepositoryLock:
    """Lease rows in SQLite, shared by worker processes using the same database.

    A lease is claimed by inserting its row, or by taking over a row whose
    ``expires_at`` has passed. Blocked callers poll.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        ttl_seconds: float = 60.0,
        poll_interval_seconds: float = 0.2,
        busy_timeout_ms: int = 5000,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def acquire(self, repository_id: str, *, holder: str, timeout: float | None = None) -> Lease:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            lease = self._try_claim(repository_id, holder=holder)
            if lease is not None:
                return lease
            wait_for = self.poll_interval_seconds
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError(f"Timed out waiting for repository lock {repository_id}")
                wait_for = min(wait_for, remaining)
            time.sleep(wait_for)

    def release(self, lease: Lease) -> None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(RepositoryLease).where(
                    col(RepositoryLease.repository_id) == lease.repository_id,
                    col(RepositoryLease.lease_id) == lease.lease_id,
                ),
            )
            session.commit()
        if result.rowcount != 1:
            logger.warning(
                "Release of lease not held repository=%s lease_id=%s",
                lease.repository_id,
                lease.lease_id,
            )

    def renew(self, lease: Lease) -> Lease:
        expires_at = utc_now() + timedelta(seconds=self.ttl_seconds)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(RepositoryLease)
                .where(
                    col(RepositoryLease.repository_id) == lease.repository_id,
                    col(RepositoryLease.lease_id) == lease.lease_id,
                )
                .values(expires_at=to_db_datetime(expires_at)),
            )
            if result.rowcount != 1:
                session.rollback()
                raise LeaseLost(repository_id=lease.repository_id, lease_id=lease.lease_id)
            session.commit()
        return replace(lease, expires_at=expires_at)

    def _try_claim(self, repository_id: str, *, holder: str) -> Lease | None:
        now = utc_now()
        lease = Lease(
            repository_id=repository_id,
            lease_id=str(uuid4()),
            holder=holder,
            acquired_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )
        values = {
            "lease_id": lease.lease_id,
            "holder": holder,
            "acquired_at": to_db_datetime(now),
            "expires_at": to_db_datetime(lease.expires_at),
        }
        with Session(self.engine) as session:
            inserted = session.exec(
                sqlite_insert(RepositoryLease)
                .values(repository_id=repository_id, **values)
                .on_conflict_do_nothing(index_elements=["repository_id"]),
            )
            if inserted.rowcount == 1:
                session.commit()
                return lease

            reclaimed = session.exec(
                sa_update(RepositoryLease)
                .where(
                    col(RepositoryLease.repository_id) == repository_id,
                    col(RepositoryLease.expires_at) <= to_db_datetime(now),
                )
                .values(**values),
            )
            if reclaimed.rowcount == 1:
                session.commit()
                logger.warning(
                    "Reclaimed expired lease repository=%s new_holder=%s",
                    repository_id,
                    holder,
                )
                return lease
            session.rollback()
            return None


class LeaseKeeper:
    """Renew a held lease on a background thread until closed.

    When renewal reports the lease lost, ``lost`` becomes true and ``on_lost`` is
    called once; ``check()`` then raises ``LeaseLost`` at the holder's next
    checkpoint.
    """

    def __init__(
        self,
        lock: RepositoryLock,
        lease: Lease,
        *,
        interval_seconds: float,
        on_lost: Callable[[], None] | None = None,
    ) -> None:
        self.lock = lock
        self.lease = lease
        self.interval_seconds = interval_seconds
        self.on_lost = on_lost
        self._stop = threading.Event()
        self._lost = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"lease-keeper-{lease.repository_id}",
            daemon=True,
        )

    def __enter__(self) -> LeaseKeeper:
        self._thread.start()
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    def close(self) -> None:
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=max(self.interval_seconds, 1.0) + 1.0)

    @property
    def lost(self) -> bool:
        return self._lost.is_set()

    def check(self) -> None:
        if self._lost.is_set():
            raise LeaseLost(repository_id=self.lease.repository_id, lease_id=self.lease.lease_id)

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.lease = self.lock.renew(self.lease)
            except LeaseLost:
                logger.warning(
                    "Lease lost repository=%s lease_id=%s",
                    self.lease.repository_id,
                    self.lease.lease_id,
                )
                self._lost.set()
                if self.on_lost is not None:
                    self.on_lost()
                return
            except Exception:
                logger.exception("Lease renewal failed repository=%s", self.lease.repository_id)


@contextmanager
def hold_repository(
    lock: RepositoryLock,
    repository_id: str,
    *,
    holder: str,
    renew_interval_seconds: float,
    on_lost: Callable[[], None] | None = None,
) -> Iterator[LeaseKeeper]:
    """Acquire, keep renewed, and always release the repository lease."""

    lease = lock.acquire(repository_id, holder=holder)
    keeper = LeaseKeeper(lock, lease, interval_seconds=renew_interval_seconds, on_lost=on_lost)
    try:
        with keeper:
            yield keeper
    finally:
        lock.release(keeper.lease)
