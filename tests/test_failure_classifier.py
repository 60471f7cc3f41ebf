from __future__ import annotations

import allure
import pytest

from rebase_pilot.orchestrator.errors import (
    CandidateGenerationError,
    GitOperationError,
    LeaseLost,
    RetryablePipelineError,
    UnresolvableConflict,
)
from rebase_pilot.orchestrator.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_failure,
    is_transient_output,
)
from rebase_pilot.orchestrator.models import FailureClass

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


def test_unresolvable_conflict_is_terminal() -> None:
    classified = classify_failure(UnresolvableConflict({"a.py": "line 3: manual"}))

    assert classified.failure_class == FailureClass.UNRESOLVABLE_CONFLICT
    assert not classified.retryable


def test_lost_lease_is_lock_contention() -> None:
    classified = classify_failure(LeaseLost(repository_id="repo-a", lease_id="l1"))

    assert classified.failure_class == FailureClass.LOCK_CONTENTION
    assert classified.retryable


@pytest.mark.parametrize(
    ("reason_code", "failure_class"),
    [
        ("generation_timeout", FailureClass.TIMEOUT),
        ("lock_contention", FailureClass.LOCK_CONTENTION),
        ("generator_transient", FailureClass.RETRYABLE_TRANSIENT),
    ],
)
def test_retryable_pipeline_error_maps_reason_code(
    reason_code: str,
    failure_class: FailureClass,
) -> None:
    classified = classify_failure(RetryablePipelineError("boom", reason_code=reason_code))

    assert classified.failure_class == failure_class
    assert classified.retryable


def test_git_auth_failure_wins_over_transient_hint() -> None:
    classified = classify_failure(
        GitOperationError(
            "fatal: Authentication failed for 'https://example.com/acme/app.git/'",
            operation="clone",
            retryable=True,
        ),
    )

    assert classified.failure_class == FailureClass.GIT_NON_RETRYABLE
    assert classified.matched_rule == "access_or_auth"
    assert classified.reason_code == "git_clone_access_or_auth"


def test_git_index_lock_is_lock_contention() -> None:
    classified = classify_failure(
        GitOperationError(
            "fatal: Unable to create '/w/.git/index.lock': File exists.",
            operation="rebase",
        ),
    )

    assert classified.failure_class == FailureClass.LOCK_CONTENTION
    assert classified.matched_pattern == "index.lock"


def test_git_network_error_is_transient() -> None:
    classified = classify_failure(
        GitOperationError("fatal: the remote end hung up unexpectedly", operation="push"),
    )

    assert classified.failure_class == FailureClass.RETRYABLE_TRANSIENT
    assert classified.matched_rule == "network_transient"


def test_generator_rate_limit_is_transient() -> None:
    classified = classify_failure(
        CandidateGenerationError("Generator exited with 1: 429 Too Many Requests", retryable=False),
    )

    assert classified.failure_class == FailureClass.RETRYABLE_TRANSIENT
    assert classified.matched_rule == "rate_limit_transient"


def test_generator_hint_decides_unmatched_text() -> None:
    transient = classify_failure(CandidateGenerationError("killed", retryable=True))
    fatal = classify_failure(CandidateGenerationError("bad output", retryable=False))

    assert transient.failure_class == FailureClass.RETRYABLE_TRANSIENT
    assert transient.matched_rule == "retryable_hint"
    assert fatal.failure_class == FailureClass.GENERATOR_NON_RETRYABLE


def test_builtin_timeouts_and_connection_errors_are_retryable() -> None:
    assert classify_failure(TimeoutError("slow")).failure_class == FailureClass.TIMEOUT
    assert classify_failure(ConnectionResetError("reset")).retryable


def test_unknown_exception_is_internal_error() -> None:
    classified = classify_failure(KeyError("missing"))

    assert classified.failure_class == FailureClass.INTERNAL_ERROR
    assert classified.reason_code == "KeyError"
    details = classified.to_event_details()
    assert details["retryable"] is False
    assert details["classifier_version"] == FAILURE_CLASSIFIER_VERSION


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Rate limit reached, try again later", True),
        ("curl: (6) Could not resolve host", True),
        ("403 Forbidden: rate limit", False),
        ("SyntaxError: invalid syntax", False),
    ],
)
def test_transient_output_detection(text: str, expected: bool) -> None:
    assert is_transient_output(text) is expected
