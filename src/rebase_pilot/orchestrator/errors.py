"""Error taxonomy for job orchestration and conflict resolution."""

from __future__ import annotations

from collections.abc import Mapping


class OrchestratorError(RuntimeError):
    """Base class for all orchestration errors."""


class JobNotFound(OrchestratorError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class BudgetExceeded(OrchestratorError):
    """Admission rejected because one scope is out of budget."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        scope: str,
        scope_id: str,
        limit: int,
        current: int,
        remaining: int,
        job_id: str | None = None,
    ) -> None:
        super().__init__(
            f"Budget exceeded for {scope}={scope_id}: used {current} of {limit} "
            f"(remaining {remaining}).",
        )
        self.scope = scope
        self.scope_id = scope_id
        self.limit = limit
        self.current = current
        self.remaining = remaining
        self.job_id = job_id


class InvalidTransition(OrchestratorError):
    """A job state change that the lifecycle does not permit."""

    def __init__(
        self,
        *,
        job_id: str,
        status_from: str,
        status_to: str,
        reason: str = "transition not permitted",
    ) -> None:
        super().__init__(
            f"Invalid transition for job {job_id}: {status_from} -> {status_to} ({reason})",
        )
        self.job_id = job_id
        self.status_from = status_from
        self.status_to = status_to
        self.reason = reason


class RetryablePipelineError(OrchestratorError):
    """Transient failure: network, timeout or lock contention."""

    def __init__(self, message: str, *, reason_code: str = "transient") -> None:
        super().__init__(message)
        self.reason_code = reason_code


class UnresolvableConflict(OrchestratorError):
    """Every resolution strategy was exhausted for at least one file."""

    def __init__(self, blocking: Mapping[str, str]) -> None:
        files = ", ".join(f"{path} ({reason})" for path, reason in blocking.items())
        super().__init__(f"Unresolvable conflicts block completion: {files}")
        self.blocking = dict(blocking)

    @property
    def blocking_files(self) -> tuple[str, ...]:
        return tuple(self.blocking)


class SecurityRejected(OrchestratorError):
    """Candidate resolution matched the dangerous-construct denylist."""

    def __init__(self, *, rule: str, matched_text: str) -> None:
        super().__init__(f"Candidate rejected by security rule {rule}: {matched_text!r}")
        self.rule = rule
        self.matched_text = matched_text


class JobCancelled(OrchestratorError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job cancelled: {job_id}")
        self.job_id = job_id


class LeaseLost(OrchestratorError):
    """The lease expired and was reclaimed by another holder."""

    def __init__(self, *, repository_id: str, lease_id: str) -> None:
        super().__init__(f"Lease {lease_id} on repository {repository_id} is no longer held.")
        self.repository_id = repository_id
        self.lease_id = lease_id


class CandidateGenerationError(OrchestratorError):
    """Generator failure with retryability hint."""

    def __init__(self, message: str, *, retryable: bool) -> None:
        super().__init__(message)
        self.retryable = retryable


class GitOperationError(OrchestratorError):
    """Git layer failure with retryability hint."""

    def __init__(self, message: str, *, operation: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.operation = operation
        self.retryable = retryable
