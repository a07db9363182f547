from __future__ import annotations

import random

import allure
import pytest

from agent_dispatch.orchestrator.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    AttemptFailure,
    RetryPolicy,
    classify_failure,
    failure_signature,
)
from agent_dispatch.orchestrator.models import FailureClass

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Retry & Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


def test_timeouts_are_always_transient() -> None:
    failure = AttemptFailure(
        failure_class=FailureClass.TIMEOUT,
        error_summary="Worker idle timeout",
        timeout_kind="idle",
    )

    classified = classify_failure(failure, previous_signature="timeout:idle")

    assert classified.transient is True
    assert classified.signature == "timeout:idle"


def test_missing_output_is_transient() -> None:
    failure = AttemptFailure(
        failure_class=FailureClass.OUTPUT_MISSING,
        error_summary="Result file not found: result.json",
        exit_code=0,
    )

    assert classify_failure(failure, previous_signature=None).transient is True


def test_crash_is_transient_until_the_same_exit_repeats() -> None:
    failure = AttemptFailure(
        failure_class=FailureClass.WORKER_CRASHED,
        error_summary="Worker exited with code 3",
        exit_code=3,
        stderr="segmentation fault",
    )

    first = classify_failure(failure, previous_signature=None)
    second = classify_failure(failure, previous_signature=first.signature)

    assert first.transient is True
    assert first.matched_rule == "non_zero_exit"
    assert second.transient is False
    assert second.matched_rule == "crash_loop"


def test_crash_with_different_exit_code_is_not_a_loop() -> None:
    previous = failure_signature(
        AttemptFailure(failure_class=FailureClass.WORKER_CRASHED, error_summary="", exit_code=1),
    )
    failure = AttemptFailure(
        failure_class=FailureClass.WORKER_CRASHED,
        error_summary="Worker exited with code 2",
        exit_code=2,
    )

    assert classify_failure(failure, previous_signature=previous).transient is True


@pytest.mark.parametrize(
    "stderr",
    ["HTTP 401 Unauthorized", "error: Permission denied (publickey)", "Bad credentials"],
)
def test_auth_and_permission_crashes_are_permanent(stderr: str) -> None:
    failure = AttemptFailure(
        failure_class=FailureClass.WORKER_CRASHED,
        error_summary="Worker exited with code 1",
        exit_code=1,
        stderr=stderr,
    )

    classified = classify_failure(failure, previous_signature=None)

    assert classified.transient is False
    assert classified.matched_rule == "non_retryable_pattern"
    assert classified.matched_pattern is not None


@pytest.mark.parametrize(
    "failure_class",
    [FailureClass.OUTPUT_INVALID, FailureClass.WORKER_REPORTED_FAILURE],
)
def test_invalid_output_is_permanent_on_repeated_signature(failure_class: FailureClass) -> None:
    first = AttemptFailure(
        failure_class=failure_class,
        error_summary="Result is not valid JSON: Expecting value at line 1 column 2 (char 1)",
    )
    repeat = AttemptFailure(
        failure_class=failure_class,
        error_summary="Result is not valid JSON: Expecting value at line 3 column 7 (char 40)",
    )

    classified_first = classify_failure(first, previous_signature=None)
    classified_repeat = classify_failure(repeat, previous_signature=classified_first.signature)

    assert classified_first.transient is True
    assert classified_repeat.signature == classified_first.signature
    assert classified_repeat.transient is False
    assert classified_repeat.matched_rule == "repeated_signature"


def test_different_invalid_output_stays_transient() -> None:
    first = classify_failure(
        AttemptFailure(failure_class=FailureClass.OUTPUT_INVALID, error_summary="bad success"),
        previous_signature=None,
    )
    second = classify_failure(
        AttemptFailure(failure_class=FailureClass.OUTPUT_INVALID, error_summary="bad actions"),
        previous_signature=first.signature,
    )

    assert second.transient is True


def test_event_details_are_serializable() -> None:
    classified = classify_failure(
        AttemptFailure(failure_class=FailureClass.TIMEOUT, error_summary="", timeout_kind="hard"),
        previous_signature=None,
    )

    assert classified.to_event_details() == {
        "classifier_version": 1,
        "failure_class": "timeout",
        "transient": True,
        "signature": "timeout:hard",
        "matched_rule": "timeout",
        "matched_pattern": None,
    }


def test_backoff_is_exponential_with_equal_jitter_and_cap() -> None:
    policy = RetryPolicy(base_seconds=1.0, max_seconds=30.0, multiplier=2.0, rng=random.Random(1))

    for retry_number, ceiling in [(1, 1.0), (2, 2.0), (3, 4.0), (5, 16.0), (6, 30.0), (9, 30.0)]:
        delay = policy.backoff_seconds(retry_number)
        assert ceiling / 2 <= delay <= ceiling


def test_backoff_is_reproducible_with_seed() -> None:
    first = RetryPolicy(rng=random.Random(42))
    second = RetryPolicy(rng=random.Random(42))

    assert [first.backoff_seconds(n) for n in range(1, 6)] == [
        second.backoff_seconds(n) for n in range(1, 6)
    ]


def test_decide_requeues_transient_failure_within_budget() -> None:
    policy = RetryPolicy(max_retries=3, rng=random.Random(0))
    classified = classify_failure(
        AttemptFailure(failure_class=FailureClass.TIMEOUT, error_summary="", timeout_kind="idle"),
        previous_signature=None,
    )

    decision = policy.decide(retry_count=2, max_retries=3, classification=classified)

    assert decision.requeue is True
    assert decision.charged is True
    assert 2.0 <= decision.delay_seconds <= 4.0


def test_decide_dead_letters_when_budget_exceeded() -> None:
    policy = RetryPolicy(max_retries=3)
    classified = classify_failure(
        AttemptFailure(failure_class=FailureClass.TIMEOUT, error_summary="", timeout_kind="idle"),
        previous_signature=None,
    )

    decision = policy.decide(retry_count=3, max_retries=3, classification=classified)

    assert decision.requeue is False
    assert decision.permanent is False
    assert "budget exhausted" in decision.reason


def test_decide_dead_letters_permanent_failure_immediately() -> None:
    policy = RetryPolicy(max_retries=3)
    classified = classify_failure(
        AttemptFailure(
            failure_class=FailureClass.WORKER_CRASHED,
            error_summary="",
            exit_code=1,
            stderr="invalid api key",
        ),
        previous_signature=None,
    )

    decision = policy.decide(retry_count=0, max_retries=None, classification=classified)

    assert decision.requeue is False
    assert decision.permanent is True
