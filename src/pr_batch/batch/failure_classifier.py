"""Deterministic agent failure classification for batch diagnostics."""

from __future__ import annotations

from dataclasses import dataclass

from pr_batch.batch.models import COMMAND_NOT_FOUND_EXIT_CODE, TIMEOUT_EXIT_CODE, FailureClass

FAILURE_CLASSIFIER_VERSION = 1

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "overloaded",
    "temporarily unavailable",
    "connection reset",
    "network error",
    "could not resolve host",
)


@dataclass(slots=True)
class AgentFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    def summary(self, *, exit_code: int) -> str:
        suffix = f" ({self.matched_pattern!r})" if self.matched_pattern else ""
        return (
            f"{self.failure_class.value}: exit code {exit_code}, "
            f"rule {self.matched_rule}{suffix}"
        )


def classify_agent_failure(
    *,
    exit_code: int,
    timed_out: bool,
    stdout: str,
    stderr: str,
    transient_exit_codes: tuple[int, ...] = (137, 143),
) -> AgentFailureClassification:
    """Classify a failed agent run into one diagnostic class."""

    if timed_out or exit_code == TIMEOUT_EXIT_CODE:
        return AgentFailureClassification(
            failure_class=FailureClass.TIMEOUT,
            matched_rule="timeout",
            matched_pattern=None,
        )
    if exit_code == COMMAND_NOT_FOUND_EXIT_CODE:
        return AgentFailureClassification(
            failure_class=FailureClass.AGENT_NOT_FOUND,
            matched_rule="command_not_found_exit_code",
            matched_pattern=None,
        )

    haystack = f"{stderr}\n{stdout}".lower()
    for failure_class, rule, patterns in (
        (FailureClass.BILLING_OR_QUOTA, "billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
        (FailureClass.ACCESS_OR_AUTH, "access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
        (FailureClass.MODEL_NOT_AVAILABLE, "model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS),
        (FailureClass.AGENT_TRANSIENT, "transient", _TRANSIENT_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return AgentFailureClassification(
                failure_class=failure_class,
                matched_rule=rule,
                matched_pattern=pattern,
            )

    if exit_code in transient_exit_codes:
        return AgentFailureClassification(
            failure_class=FailureClass.AGENT_TRANSIENT,
            matched_rule="transient_exit_code",
            matched_pattern=None,
        )

    return AgentFailureClassification(
        failure_class=FailureClass.AGENT_NON_RETRYABLE,
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
