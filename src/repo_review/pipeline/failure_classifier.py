"""Deterministic failure classification for analyzer calls and clones."""

from __future__ import annotations

from dataclasses import dataclass

from repo_review.pipeline.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "insufficient_quota",
    "quota",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "401",
    "403",
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "incorrect api key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model_not_found",
    "model not found",
    "unknown model",
    "unsupported model",
    "does not exist",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "429",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "service unavailable",
    "bad gateway",
    "gateway timeout",
    "500",
    "502",
    "503",
    "504",
    "connection reset",
    "connection refused",
    "connection timed out",
    "network error",
    "network is unreachable",
    "could not resolve host",
    "early eof",
    "the remote end hung up unexpectedly",
    "dns",
)
_NOT_FOUND_PATTERNS: tuple[str, ...] = (
    "repository not found",
    "not found in upstream",
    "could not find remote branch",
    "does not appear to be a git repository",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def transient(self) -> bool:
        return self.failure_class.is_transient

    def to_event_details(self, *, source: str) -> dict[str, object]:
        """Serialize classifier diagnostics for queue events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "source": source,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(*, source: str, message: str) -> FailureClassification:
    """Classify a failure message into a deterministic retry class.

    Rules are checked in order: billing, auth, missing model or repository, rate
    limit, generic transient. Anything unmatched is non-retryable.
    """

    haystack = message.lower()

    pattern = _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.BILLING_OR_QUOTA,
            reason_code=f"{source}_billing_or_quota",
            matched_rule="billing_or_quota",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.ACCESS_OR_AUTH,
            reason_code=f"{source}_access_or_auth",
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _MODEL_NOT_AVAILABLE_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.MODEL_NOT_AVAILABLE,
            reason_code=f"{source}_model_not_available",
            matched_rule="model_not_available",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _NOT_FOUND_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.BACKEND_NON_RETRYABLE,
            reason_code=f"{source}_not_found",
            matched_rule="not_found",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.BACKEND_TRANSIENT,
            reason_code=f"{source}_rate_limit_transient",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.BACKEND_TRANSIENT,
            reason_code=f"{source}_backend_transient",
            matched_rule="generic_transient",
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_class=FailureClass.BACKEND_NON_RETRYABLE,
        reason_code=f"{source}_backend_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def classify_timeout(*, source: str) -> FailureClassification:
    return FailureClassification(
        failure_class=FailureClass.TIMEOUT,
        reason_code=f"{source}_timeout",
        matched_rule="timeout",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
