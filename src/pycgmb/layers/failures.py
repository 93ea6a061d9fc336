"""Deterministic classification of failed CLI layer calls.

A backend CLI reports failures as an exit status plus free text. The text
is matched against fixed pattern groups, in order, and the first group
that matches decides whether the step executor may retry.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from pycgmb.core.errors import RateLimitedError, StepError, StepExecutionError
from pycgmb.models import LayerType

TRANSIENT_EXIT_CODES: tuple[int, ...] = (137, 143)
"""Killed by SIGKILL / SIGTERM; usually the host, not the request."""


class FailureClass(Enum):
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    NON_RETRYABLE = "non_retryable"

    @property
    def retryable(self) -> bool:
        return self in (FailureClass.RATE_LIMITED, FailureClass.TRANSIENT)


_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
    "login required",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
    "not available in your region",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "network error",
    "could not resolve host",
    "timed out",
    "overloaded",
    "503",
)

_RULES: tuple[tuple[FailureClass, tuple[str, ...]], ...] = (
    (FailureClass.BILLING_OR_QUOTA, _BILLING_OR_QUOTA_PATTERNS),
    (FailureClass.ACCESS_OR_AUTH, _ACCESS_OR_AUTH_PATTERNS),
    (FailureClass.MODEL_NOT_AVAILABLE, _MODEL_NOT_AVAILABLE_PATTERNS),
    (FailureClass.RATE_LIMITED, _RATE_LIMIT_PATTERNS),
    (FailureClass.TRANSIENT, _GENERIC_TRANSIENT_PATTERNS),
)


@dataclass(frozen=True)
class FailureClassification:
    """Normalized failure classification result."""

    layer: LayerType
    failure_class: FailureClass
    exit_code: int
    matched_pattern: str | None

    @property
    def reason_code(self) -> str:
        return f"{self.layer.value}_{self.failure_class.value}"

    def to_error(self, detail: str) -> StepError:
        """The StepError the step executor should see for this failure."""
        message = f"{self.layer} exited with status {self.exit_code} ({self.reason_code})"
        if detail:
            message += f": {detail}"
        if self.failure_class is FailureClass.RATE_LIMITED:
            return RateLimitedError(message, layer=self.layer)
        return StepExecutionError(
            message,
            retryable=self.failure_class.retryable,
            layer=self.layer,
            details={"reason_code": self.reason_code, "exit_code": self.exit_code},
        )


def classify_layer_failure(
    layer: LayerType,
    *,
    exit_code: int,
    stdout: str,
    stderr: str,
    transient_exit_codes: tuple[int, ...] = TRANSIENT_EXIT_CODES,
) -> FailureClassification:
    """Classify a non-zero CLI exit into a retry class."""
    haystack = f"{stderr}\n{stdout}".lower()

    for failure_class, patterns in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(layer, failure_class, exit_code, pattern)

    if exit_code in transient_exit_codes or exit_code < 0:
        return FailureClassification(layer, FailureClass.TRANSIENT, exit_code, None)
    return FailureClassification(layer, FailureClass.NON_RETRYABLE, exit_code, None)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None


__all__ = [
    "FailureClass",
    "FailureClassification",
    "TRANSIENT_EXIT_CODES",
    "classify_layer_failure",
]
