"""Deterministic attempt failure classification and retry budget policy."""

from __future__ import annotations

import hashlib
import random
import re
from dataclasses import dataclass

from agent_dispatch.orchestrator.models import FailureClass, RetryDecision

FAILURE_CLASSIFIER_VERSION = 1

_NON_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "invalid credentials",
    "authentication failed",
    "bad credentials",
    "restricted token",
)
_VOLATILE_FRAGMENTS = re.compile(r"\b(line|column|char|pid)\s+\d+\b|\b0x[0-9a-f]+\b|\d{4,}")


@dataclass(slots=True)
class AttemptFailure:
    """Failure facts collected for one terminal attempt."""

    failure_class: FailureClass
    error_summary: str
    exit_code: int | None = None
    stderr: str = ""
    timeout_kind: str | None = None


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    transient: bool
    signature: str
    matched_rule: str
    matched_pattern: str | None = None

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "transient": self.transient,
            "signature": self.signature,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def failure_signature(failure: AttemptFailure) -> str:
    """Stable identity of a failure used to detect repeats across attempts."""

    if failure.failure_class == FailureClass.TIMEOUT:
        return f"timeout:{failure.timeout_kind or 'unknown'}"
    if failure.failure_class == FailureClass.WORKER_CRASHED:
        return f"worker_crashed:exit={failure.exit_code}"
    normalized = _VOLATILE_FRAGMENTS.sub("#", failure.error_summary.strip().lower())
    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]
    return f"{failure.failure_class.value}:{digest}"


def classify_failure(
    failure: AttemptFailure,
    *,
    previous_signature: str | None,
) -> FailureClassification:
    """Classify a charged attempt failure as transient or permanent."""

    signature = failure_signature(failure)
    repeated = previous_signature is not None and previous_signature == signature

    if failure.failure_class == FailureClass.TIMEOUT:
        return FailureClassification(
            failure_class=failure.failure_class,
            transient=True,
            signature=signature,
            matched_rule="timeout",
        )

    if failure.failure_class == FailureClass.OUTPUT_MISSING:
        return FailureClassification(
            failure_class=failure.failure_class,
            transient=True,
            signature=signature,
            matched_rule="output_missing",
        )

    if failure.failure_class == FailureClass.WORKER_CRASHED:
        pattern = _first_match(failure.stderr.lower(), _NON_RETRYABLE_PATTERNS)
        if pattern is not None:
            return FailureClassification(
                failure_class=failure.failure_class,
                transient=False,
                signature=signature,
                matched_rule="non_retryable_pattern",
                matched_pattern=pattern,
            )
        return FailureClassification(
            failure_class=failure.failure_class,
            transient=not repeated,
            signature=signature,
            matched_rule="crash_loop" if repeated else "non_zero_exit",
        )

    if failure.failure_class in {
        FailureClass.OUTPUT_INVALID,
        FailureClass.WORKER_REPORTED_FAILURE,
    }:
        return FailureClassification(
            failure_class=failure.failure_class,
            transient=not repeated,
            signature=signature,
            matched_rule="repeated_signature" if repeated else "first_occurrence",
        )

    # canceled and infrastructure failures never reach the retry budget
    return FailureClassification(
        failure_class=failure.failure_class,
        transient=False,
        signature=signature,
        matched_rule="not_retryable_class",
    )


class RetryPolicy:
    """Retry budget with capped exponential backoff and equal jitter."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        max_retries: int = 3,
        base_seconds: float = 1.0,
        max_seconds: float = 30.0,
        multiplier: float = 2.0,
        rng: random.Random | None = None,
    ) -> None:
        self.max_retries = max_retries
        self.base_seconds = base_seconds
        self.max_seconds = max_seconds
        self.multiplier = multiplier
        self._random = rng or random.Random()

    def backoff_seconds(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (1-based)."""

        ceiling = min(
            self.max_seconds,
            self.base_seconds * (self.multiplier ** max(retry_number - 1, 0)),
        )
        half = ceiling / 2
        return half + self._random.uniform(0, half)

    def decide(
        self,
        *,
        retry_count: int,
        max_retries: int | None,
        classification: FailureClassification,
    ) -> RetryDecision:
        """Charge one failure against the budget and decide requeue vs dead-letter.

        ``retry_count`` is the count before this failure; the caller persists
        ``retry_count + 1``.
        """

        budget = self.max_retries if max_retries is None else max_retries
        charged_count = retry_count + 1
        if not classification.transient:
            return RetryDecision(
                requeue=False,
                permanent=True,
                charged=True,
                delay_seconds=0.0,
                signature=classification.signature,
                reason=f"permanent failure ({classification.matched_rule})",
            )
        if charged_count > budget:
            return RetryDecision(
                requeue=False,
                permanent=False,
                charged=True,
                delay_seconds=0.0,
                signature=classification.signature,
                reason=f"retry budget exhausted ({charged_count} > {budget})",
            )
        return RetryDecision(
            requeue=True,
            permanent=False,
            charged=True,
            delay_seconds=self.backoff_seconds(charged_count),
            signature=classification.signature,
            reason=f"transient failure ({classification.matched_rule})",
        )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
