"""
Retry policy configuration for step execution.

Design Pattern: Strategy Pattern
RetryPolicy encapsulates backoff behaviour so the step executor can retry
transient layer failures without knowing how delays are computed.

Delays grow exponentially from ``initial_delay_ms`` and are capped at
``max_delay_ms``. A random jitter of up to ``jitter_ms`` is added on top, so
that many steps failing at the same moment do not retry in lockstep.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, cast


@dataclass(frozen=True)
class RetryPolicy:
    """
    Configuration for step retry behavior.

    Examples:
        # Standard delays, two retries after the first attempt
        policy = RetryPolicy.STANDARD.with_retries(2)

        # Named policy
        policy = RetryPolicy.STANDARD

        # Full control
        policy = RetryPolicy(
            max_attempts=5,
            initial_delay_ms=500,
            max_delay_ms=10000,
            backoff_multiplier=2.0,
            jitter_ms=250,
        )
    """

    max_attempts: int
    """Maximum number of attempts, including the first one."""

    initial_delay_ms: int
    """Delay before the first retry, in milliseconds."""

    max_delay_ms: int
    """Upper bound on the exponential delay, in milliseconds."""

    backoff_multiplier: float
    """Each retry waits ``initial_delay * multiplier^(attempt-1)``."""

    jitter_ms: int = 0
    """Random extra delay in ``[0, jitter_ms]`` added to each retry."""

    if TYPE_CHECKING:
        NONE: RetryPolicy
        STANDARD: RetryPolicy
    else:
        NONE = cast("RetryPolicy", None)
        STANDARD = cast("RetryPolicy", None)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.jitter_ms < 0:
            raise ValueError(f"jitter_ms must be >= 0, got {self.jitter_ms}")

    def with_retries(self, retries: int) -> RetryPolicy:
        """Same delays, ``retries`` extra attempts after the first."""
        return replace(self, max_attempts=retries + 1)

    def delay_for_attempt(self, attempt: int) -> int | None:
        """
        Calculate the delay before the next attempt.

        Args:
            attempt: The attempt that just failed (1-indexed)

        Returns:
            Delay in milliseconds, or None if no attempts are left.

        Example:
            policy = RetryPolicy.STANDARD
            policy.delay_for_attempt(1)  # 1000
            policy.delay_for_attempt(2)  # 2000
            policy.delay_for_attempt(3)  # None
        """
        if attempt >= self.max_attempts:
            return None

        exponent = attempt - 1
        delay_ms = self.initial_delay_ms * (self.backoff_multiplier**exponent)
        return int(min(delay_ms, self.max_delay_ms))

    def jittered_delay(self, attempt: int, rng: random.Random | None = None) -> int | None:
        """``delay_for_attempt()`` plus a uniform random jitter."""
        delay_ms = self.delay_for_attempt(attempt)
        if delay_ms is None:
            return None
        if self.jitter_ms:
            delay_ms += int((rng or random).uniform(0, self.jitter_ms))
        return delay_ms

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(max_attempts={self.max_attempts}, "
            f"initial_delay_ms={self.initial_delay_ms}, "
            f"max_delay_ms={self.max_delay_ms}, "
            f"backoff_multiplier={self.backoff_multiplier}, "
            f"jitter_ms={self.jitter_ms})"
        )


RetryPolicy.NONE = RetryPolicy(
    max_attempts=1, initial_delay_ms=0, max_delay_ms=0, backoff_multiplier=1.0
)

RetryPolicy.STANDARD = RetryPolicy(
    max_attempts=3,
    initial_delay_ms=1000,
    max_delay_ms=10000,
    backoff_multiplier=2.0,
    jitter_ms=250,
)


class RetryableError(Exception):
    """
    Base class for errors that say whether they should be retried.

    Example:
        class BackendError(RetryableError):
            def __init__(self, message: str, is_retryable: bool = True):
                super().__init__(message)
                self._retryable = is_retryable

            def is_retryable(self) -> bool:
                return self._retryable
    """

    def is_retryable(self) -> bool:
        """True if the failure is transient and the call may be repeated."""
        return True


__all__ = ["RetryPolicy", "RetryableError"]
