"""Deterministic failure classification for job retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from rebase_pilot.orchestrator.errors import (
    CandidateGenerationError,
    GitOperationError,
    LeaseLost,
    RetryablePipelineError,
    UnresolvableConflict,
)
from rebase_pilot.orchestrator.models import RETRYABLE_FAILURE_CLASSES, FailureClass

FAILURE_CLASSIFIER_VERSION = 1

_LOCK_CONTENTION_PATTERNS: tuple[str, ...] = (
    "index.lock",
    "another git process",
    "unable to lock",
    "cannot lock ref",
    "lock contention",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "authentication failed",
    "permission denied",
    "could not read username",
    "403",
    "unauthorized",
    "forbidden",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "try again later",
    "overloaded",
)
_NETWORK_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "could not resolve host",
    "connection reset",
    "connection refused",
    "connection timed out",
    "the remote end hung up",
    "early eof",
    "temporarily unavailable",
    "temporary failure",
    "network error",
    "502",
    "503",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class in RETRYABLE_FAILURE_CLASSES

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for job events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "retryable": self.retryable,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(error: BaseException) -> FailureClassification:  # noqa: PLR0911
    """Classify an exception raised while running a job."""

    if isinstance(error, UnresolvableConflict):
        return FailureClassification(
            failure_class=FailureClass.UNRESOLVABLE_CONFLICT,
            reason_code="unresolvable_conflict",
            matched_rule="exception_type",
            matched_pattern=None,
        )
    if isinstance(error, LeaseLost):
        return FailureClassification(
            failure_class=FailureClass.LOCK_CONTENTION,
            reason_code="lease_lost",
            matched_rule="exception_type",
            matched_pattern=None,
        )
    if isinstance(error, RetryablePipelineError):
        failure_class = FailureClass.RETRYABLE_TRANSIENT
        if error.reason_code.endswith("timeout"):
            failure_class = FailureClass.TIMEOUT
        elif error.reason_code == "lock_contention":
            failure_class = FailureClass.LOCK_CONTENTION
        return FailureClassification(
            failure_class=failure_class,
            reason_code=error.reason_code,
            matched_rule="exception_type",
            matched_pattern=None,
        )
    if isinstance(error, GitOperationError):
        return _classify_text(
            text=str(error),
            source=f"git_{error.operation}",
            retryable_hint=error.retryable,
            fallback=FailureClass.GIT_NON_RETRYABLE,
        )
    if isinstance(error, CandidateGenerationError):
        return _classify_text(
            text=str(error),
            source="generator",
            retryable_hint=error.retryable,
            fallback=FailureClass.GENERATOR_NON_RETRYABLE,
        )
    if isinstance(error, TimeoutError):
        return FailureClassification(
            failure_class=FailureClass.TIMEOUT,
            reason_code="timeout",
            matched_rule="exception_type",
            matched_pattern=None,
        )
    if isinstance(error, ConnectionError):
        return FailureClassification(
            failure_class=FailureClass.RETRYABLE_TRANSIENT,
            reason_code="connection_error",
            matched_rule="exception_type",
            matched_pattern=None,
        )
    return FailureClassification(
        failure_class=FailureClass.INTERNAL_ERROR,
        reason_code=type(error).__name__,
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def is_transient_output(text: str) -> bool:
    """True when process output looks like a rate limit or network hiccup."""

    haystack = text.lower()
    if _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS) is not None:
        return False
    return (
        _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS) is not None
        or _first_match(haystack, _NETWORK_TRANSIENT_PATTERNS) is not None
    )


def _classify_text(
    *,
    text: str,
    source: str,
    retryable_hint: bool,
    fallback: FailureClass,
) -> FailureClassification:
    haystack = text.lower()

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=fallback,
            reason_code=f"{source}_access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _LOCK_CONTENTION_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.LOCK_CONTENTION,
            reason_code=f"{source}_lock_contention",
            matched_rule="lock_contention",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.RETRYABLE_TRANSIENT,
            reason_code=f"{source}_rate_limit_transient",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _NETWORK_TRANSIENT_PATTERNS)
    if pattern is not None or retryable_hint:
        return FailureClassification(
            failure_class=FailureClass.RETRYABLE_TRANSIENT,
            reason_code=f"{source}_transient",
            matched_rule="network_transient" if pattern is not None else "retryable_hint",
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_class=fallback,
        reason_code=f"{source}_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
