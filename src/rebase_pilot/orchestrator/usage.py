"""Shared usage counters with all-or-nothing compare-and-increment."""

from __future__ import annotations

import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, col, select

from rebase_pilot.storage.common import build_sqlite_engine, to_db_datetime, utc_now
from rebase_pilot.storage.sqlmodel_models import UsageCounterRow


@dataclass(frozen=True, slots=True)
class ScopeLimit:
    """One budget to charge: ``scope`` kind, its identifier and the window limit."""

    scope: str
    scope_id: str
    limit: int


@dataclass(slots=True)
class ScopeUsage:
    scope: str
    scope_id: str
    limit: int
    used: int

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)


@dataclass(slots=True)
class ChargeResult:
    """Outcome of one charge.

    When allowed, ``usages`` holds post-charge usage for every scope. When denied,
    nothing was charged and ``violated`` is the first scope (in request order)
    that could not absorb the cost.
    """

    allowed: bool
    usages: list[ScopeUsage] = field(default_factory=list)
    violated: ScopeUsage | None = None


class UsageCounter(Protocol):
    def try_charge(
        self,
        limits: Sequence[ScopeLimit],
        *,
        cost: int,
        window_start: int,
    ) -> ChargeResult:
        """Charge ``cost`` to every scope, or to none of them."""
        ...

    def current(self, *, scope: str, scope_id: str, window_start: int) -> int:
        """Usage recorded for one scope in one window."""
        ...


class InMemoryUsageCounter:
    """Process-local counter; one lock makes check-and-increment atomic."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._used: dict[tuple[str, str, int], int] = {}

    def try_charge(
        self,
        limits: Sequence[ScopeLimit],
        *,
        cost: int,
        window_start: int,
    ) -> ChargeResult:
        with self._lock:
            self._evict_before(window_start)
            for item in limits:
                used = self._used.get((item.scope, item.scope_id, window_start), 0)
                if used + cost > item.limit:
                    return ChargeResult(
                        allowed=False,
                        violated=ScopeUsage(item.scope, item.scope_id, item.limit, used),
                    )
            usages: list[ScopeUsage] = []
            for item in limits:
                key = (item.scope, item.scope_id, window_start)
                self._used[key] = self._used.get(key, 0) + cost
                usages.append(ScopeUsage(item.scope, item.scope_id, item.limit, self._used[key]))
            return ChargeResult(allowed=True, usages=usages)

    def current(self, *, scope: str, scope_id: str, window_start: int) -> int:
        with self._lock:
            return self._used.get((scope, scope_id, window_start), 0)

    def _evict_before(self, window_start: int) -> None:
        stale = [key for key in self._used if key[2] < window_start]
        for key in stale:
            del self._used[key]


class SqlUsageCounter:
    """SQLite-backed counter shared by every process using the same database.

    Each scope is charged with a conditional ``UPDATE ... WHERE used + cost <= limit``
    inside one write transaction; the first scope that does not match rolls the
    whole transaction back, so two concurrent callers can never both spend the
    last unit of a budget.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def try_charge(
        self,
        limits: Sequence[ScopeLimit],
        *,
        cost: int,
        window_start: int,
    ) -> ChargeResult:
        now = to_db_datetime(utc_now())
        usages: list[ScopeUsage] = []
        with Session(self.engine) as session:
            for item in limits:
                session.exec(
                    sqlite_insert(UsageCounterRow)
                    .values(
                        scope=item.scope,
                        scope_id=item.scope_id,
                        window_start=window_start,
                        used=0,
                        updated_at=now,
                    )
                    .on_conflict_do_nothing(
                        index_elements=["scope", "scope_id", "window_start"],
                    ),
                )
                result = session.exec(
                    sa_update(UsageCounterRow)
                    .where(
                        col(UsageCounterRow.scope) == item.scope,
                        col(UsageCounterRow.scope_id) == item.scope_id,
                        col(UsageCounterRow.window_start) == window_start,
                        col(UsageCounterRow.used) + cost <= item.limit,
                    )
                    .values(used=col(UsageCounterRow.used) + cost, updated_at=now),
                )
                used = self._read(session, item.scope, item.scope_id, window_start)
                if result.rowcount != 1:
                    session.rollback()
                    return ChargeResult(
                        allowed=False,
                        violated=ScopeUsage(item.scope, item.scope_id, item.limit, used),
                    )
                usages.append(ScopeUsage(item.scope, item.scope_id, item.limit, used))
            session.commit()
        return ChargeResult(allowed=True, usages=usages)

    def current(self, *, scope: str, scope_id: str, window_start: int) -> int:
        with Session(self.engine) as session:
            return self._read(session, scope, scope_id, window_start)

    @staticmethod
    def _read(session: Session, scope: str, scope_id: str, window_start: int) -> int:
        used = session.exec(
            select(UsageCounterRow.used).where(
                UsageCounterRow.scope == scope,
                UsageCounterRow.scope_id == scope_id,
                UsageCounterRow.window_start == window_start,
            ),
        ).one_or_none()
        return int(used or 0)
