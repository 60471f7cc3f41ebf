"""Admission control: rate and budget gates checked before a job is queued."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from rebase_pilot.orchestrator.errors import BudgetExceeded
from rebase_pilot.orchestrator.models import JobView
from rebase_pilot.orchestrator.usage import ScopeLimit, ScopeUsage, UsageCounter

logger = logging.getLogger(__name__)


class AdmissionScope(str, Enum):
    """Budget scopes, in the order they are checked."""

    GLOBAL = "global"
    ORGANIZATION = "organization"
    USER = "user"
    OPERATION = "operation"


GLOBAL_SCOPE_ID = "*"


@dataclass(slots=True)
class AdmissionLimits:
    """Per-window limits; ``0`` leaves a scope unlimited."""

    window_seconds: int = 60
    global_limit: int = 0
    organization_limit: int = 0
    user_limit: int = 0
    operation_limits: dict[str, int] = field(default_factory=dict)
    warning_threshold: float = 0.8


@dataclass(frozen=True, slots=True)
class AdmissionRequest:
    """Scope identifiers and weight of one job asking to run."""

    user_id: str
    organization_id: str
    operation: str = "standard"
    estimated_cost: int = 1
    job_id: str | None = None

    @classmethod
    def from_job(cls, job: JobView) -> AdmissionRequest:
        return cls(
            user_id=job.user_id,
            organization_id=job.organization_id,
            operation=job.operation,
            estimated_cost=job.estimated_cost,
            job_id=job.job_id,
        )


@dataclass(slots=True)
class AdmissionDecision:
    allowed: bool
    reason: str
    remaining: int | None
    scope: AdmissionScope | None = None
    scope_id: str | None = None
    limit: int | None = None
    current: int | None = None

    def raise_for_denied(self, *, job_id: str | None = None) -> None:
        if self.allowed:
            return
        raise BudgetExceeded(
            scope=self.scope.value if self.scope is not None else "unknown",
            scope_id=self.scope_id or "",
            limit=self.limit or 0,
            current=self.current or 0,
            remaining=self.remaining or 0,
            job_id=job_id,
        )


@dataclass(frozen=True, slots=True)
class BudgetWarning:
    """Usage of one scope reached the warning threshold."""

    scope: AdmissionScope
    scope_id: str
    limit: int
    used: int
    threshold: float
    window_start: int
    job_id: str | None = None

    @property
    def ratio(self) -> float:
        return self.used / self.limit if self.limit else 0.0


WarningSink = Callable[[BudgetWarning], None]


class AdmissionController:
    """Decide whether a job may start, charging every scope atomically.

    Limits apply to fixed windows of ``window_seconds`` aligned to the epoch. Scopes
    are checked global, organization, user, operation; the first violated one is
    reported and nothing is charged.
    """

    def __init__(
        self,
        *,
        counter: UsageCounter,
        limits: AdmissionLimits,
        warning_sink: WarningSink | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.counter = counter
        self.limits = limits
        self.warning_sink = warning_sink
        self.clock = clock

    def try_admit(self, request: AdmissionRequest) -> AdmissionDecision:
        if request.estimated_cost < 0:
            raise ValueError(f"estimated_cost must be >= 0, got {request.estimated_cost}")

        scope_limits = self._scope_limits(request)
        if not scope_limits:
            return AdmissionDecision(allowed=True, reason="no limits configured", remaining=None)

        window_start = self.current_window_start()
        result = self.counter.try_charge(
            scope_limits,
            cost=request.estimated_cost,
            window_start=window_start,
        )
        if not result.allowed and result.violated is not None:
            violated = result.violated
            scope = AdmissionScope(violated.scope)
            logger.info(
                "Admission denied job_id=%s scope=%s:%s used=%d limit=%d",
                request.job_id,
                scope.value,
                violated.scope_id,
                violated.used,
                violated.limit,
            )
            if self._at_or_over_threshold(violated.used, violated.limit):
                self._warn(violated, window_start=window_start, job_id=request.job_id)
            return AdmissionDecision(
                allowed=False,
                reason=(
                    f"{scope.value} budget exhausted for {violated.scope_id} "
                    f"({violated.used}/{violated.limit} per {self.limits.window_seconds}s)"
                ),
                remaining=violated.remaining,
                scope=scope,
                scope_id=violated.scope_id,
                limit=violated.limit,
                current=violated.used,
            )

        for usage in result.usages:
            before = usage.used - request.estimated_cost
            if not self._at_or_over_threshold(before, usage.limit) and (
                self._at_or_over_threshold(usage.used, usage.limit)
            ):
                self._warn(usage, window_start=window_start, job_id=request.job_id)

        tightest = min(result.usages, key=lambda usage: usage.remaining)
        return AdmissionDecision(
            allowed=True,
            reason="admitted",
            remaining=tightest.remaining,
            scope=AdmissionScope(tightest.scope),
            scope_id=tightest.scope_id,
            limit=tightest.limit,
            current=tightest.used,
        )

    def current_window_start(self) -> int:
        window = max(1, self.limits.window_seconds)
        now = int(self.clock())
        return now - (now % window)

    def _scope_limits(self, request: AdmissionRequest) -> list[ScopeLimit]:
        candidates = (
            (AdmissionScope.GLOBAL, GLOBAL_SCOPE_ID, self.limits.global_limit),
            (AdmissionScope.ORGANIZATION, request.organization_id, self.limits.organization_limit),
            (AdmissionScope.USER, request.user_id, self.limits.user_limit),
            (
                AdmissionScope.OPERATION,
                request.operation,
                self.limits.operation_limits.get(request.operation, 0),
            ),
        )
        return [
            ScopeLimit(scope=scope.value, scope_id=scope_id, limit=limit)
            for scope, scope_id, limit in candidates
            if limit > 0
        ]

    def _at_or_over_threshold(self, used: int, limit: int) -> bool:
        return limit > 0 and used >= self.limits.warning_threshold * limit

    def _warn(self, usage: ScopeUsage, *, window_start: int, job_id: str | None) -> None:
        warning = BudgetWarning(
            scope=AdmissionScope(usage.scope),
            scope_id=usage.scope_id,
            limit=usage.limit,
            used=usage.used,
            threshold=self.limits.warning_threshold,
            window_start=window_start,
            job_id=job_id,
        )
        logger.warning(
            "Budget warning scope=%s:%s used=%d limit=%d threshold=%.2f",
            usage.scope,
            usage.scope_id,
            usage.used,
            usage.limit,
            self.limits.warning_threshold,
        )
        if self.warning_sink is None:
            return
        try:
            self.warning_sink(warning)
        except Exception:
            logger.exception("Budget warning sink failed for scope=%s", usage.scope)
