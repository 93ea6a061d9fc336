"""
Request and token quotas of the multimodal API.

The monitor keeps minute and day counters in process. Counters start at
the usage a run log has recorded for the layer, so a restarted process
does not forget what it spent earlier today.

Example:
    ```python
    quota = QuotaMonitor(paid_tier=False)
    check = quota.can_make_request(estimated_tokens=2000)
    if not check.allowed:
        raise RateLimitedError(check.reason, retry_after=check.wait_time)
    quota.record_request(tokens_used=1800)
    ```
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

from pycgmb.models import LayerType
from pycgmb.storage.base import RunLog

logger = logging.getLogger(__name__)

MINUTE = 60.0
DAY = 24 * 60 * 60.0


@dataclass(frozen=True)
class QuotaLimits:
    requests_per_minute: int
    requests_per_day: int
    tokens_per_minute: int
    tokens_per_day: int


FREE_TIER = QuotaLimits(
    requests_per_minute=15,
    requests_per_day=1500,
    tokens_per_minute=32_000,
    tokens_per_day=50_000,
)

PAID_TIER = QuotaLimits(
    requests_per_minute=360,
    requests_per_day=30_000,
    tokens_per_minute=120_000,
    tokens_per_day=5_000_000,
)


class QuotaHealth(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class QuotaCheck:
    """
    Answer to ``can_make_request()``.

    Attributes:
        allowed: Whether the request fits in the remaining quota
        reason: Which limit would be exceeded
        wait_time: Seconds until that limit resets
        oversized: The request alone is larger than a limit and never fits
    """

    allowed: bool
    reason: str | None = None
    wait_time: float | None = None
    oversized: bool = False


@dataclass(frozen=True)
class QuotaStatus:
    """Usage as percentages of each limit."""

    requests_daily_percent: float
    requests_minute_percent: float
    tokens_daily_percent: float
    tokens_minute_percent: float

    @property
    def health(self) -> QuotaHealth:
        if (
            self.requests_daily_percent >= 90
            or self.tokens_daily_percent >= 90
            or self.requests_minute_percent >= 95
            or self.tokens_minute_percent >= 95
        ):
            return QuotaHealth.CRITICAL
        if (
            self.requests_daily_percent >= 80
            or self.tokens_daily_percent >= 80
            or self.requests_minute_percent >= 90
            or self.tokens_minute_percent >= 90
        ):
            return QuotaHealth.WARNING
        return QuotaHealth.HEALTHY


class QuotaMonitor:
    """
    Minute and day counters against free or paid tier limits.

    Args:
        paid_tier: Use paid tier limits
        limits: Explicit limits, overriding the tier
        clock: Seconds source (``time.monotonic`` by default)
    """

    def __init__(
        self,
        *,
        paid_tier: bool = False,
        limits: QuotaLimits | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.limits = limits or (PAID_TIER if paid_tier else FREE_TIER)
        self._clock = clock
        now = clock()
        self._day_started = now
        self._minute_started = now
        self.requests_today = 0
        self.tokens_today = 0
        self.requests_this_minute = 0
        self.tokens_this_minute = 0

    async def seed_from(self, run_log: RunLog, layer: LayerType = LayerType.AISTUDIO) -> None:
        """Start the counters from what ``run_log`` recorded for ``layer``."""
        now = datetime.now(UTC)
        day = await run_log.usage_since(now - timedelta(days=1), layer)
        minute = await run_log.usage_since(now - timedelta(minutes=1), layer)
        self._reset_if_needed()
        self.requests_today += day.requests
        self.tokens_today += day.tokens
        self.requests_this_minute += minute.requests
        self.tokens_this_minute += minute.tokens
        logger.debug(
            f"Quota seeded from run log: {day.requests} requests, {day.tokens} tokens today"
        )

    def can_make_request(self, estimated_tokens: int = 1000) -> QuotaCheck:
        self._reset_if_needed()
        limits = self.limits

        if estimated_tokens > min(limits.tokens_per_minute, limits.tokens_per_day):
            return QuotaCheck(
                False,
                f"Request of {estimated_tokens} tokens exceeds the token limit",
                oversized=True,
            )

        if self.requests_today >= limits.requests_per_day:
            return QuotaCheck(False, "Daily request limit exceeded", self.time_until_daily_reset())
        if self.tokens_today + estimated_tokens > limits.tokens_per_day:
            return QuotaCheck(
                False, "Daily token limit would be exceeded", self.time_until_daily_reset()
            )
        if self.requests_this_minute >= limits.requests_per_minute:
            return QuotaCheck(
                False, "Per-minute request limit exceeded", self.time_until_minute_reset()
            )
        if self.tokens_this_minute + estimated_tokens > limits.tokens_per_minute:
            return QuotaCheck(
                False, "Per-minute token limit would be exceeded", self.time_until_minute_reset()
            )
        return QuotaCheck(True)

    def record_request(self, tokens_used: int = 0) -> None:
        self._reset_if_needed()
        self.requests_today += 1
        self.requests_this_minute += 1
        self.tokens_today += tokens_used
        self.tokens_this_minute += tokens_used
        self._warn_if_close()

    def status(self) -> QuotaStatus:
        self._reset_if_needed()
        limits = self.limits
        return QuotaStatus(
            requests_daily_percent=self.requests_today / limits.requests_per_day * 100,
            requests_minute_percent=self.requests_this_minute / limits.requests_per_minute * 100,
            tokens_daily_percent=self.tokens_today / limits.tokens_per_day * 100,
            tokens_minute_percent=self.tokens_this_minute / limits.tokens_per_minute * 100,
        )

    def time_until_daily_reset(self) -> float:
        return max(0.0, self._day_started + DAY - self._clock())

    def time_until_minute_reset(self) -> float:
        return max(0.0, self._minute_started + MINUTE - self._clock())

    def _reset_if_needed(self) -> None:
        now = self._clock()
        if now - self._day_started >= DAY:
            self.requests_today = 0
            self.tokens_today = 0
            self._day_started = now
            logger.info("Daily quota counters reset")
        if now - self._minute_started >= MINUTE:
            self.requests_this_minute = 0
            self.tokens_this_minute = 0
            self._minute_started = now

    def _warn_if_close(self) -> None:
        status = self.status()
        limits = self.limits
        if status.requests_daily_percent >= 80:
            logger.warning(
                f"Quota warning: {self.requests_today}/{limits.requests_per_day} "
                "daily requests used"
            )
        if status.tokens_daily_percent >= 80:
            logger.warning(
                f"Quota warning: {self.tokens_today}/{limits.tokens_per_day} daily tokens used"
            )
        if status.requests_minute_percent >= 90:
            logger.warning(
                f"Rate limit close: {self.requests_this_minute}/{limits.requests_per_minute} "
                f"requests this minute, resets in {self.time_until_minute_reset():.0f}s"
            )


__all__ = [
    "FREE_TIER",
    "PAID_TIER",
    "QuotaCheck",
    "QuotaHealth",
    "QuotaLimits",
    "QuotaMonitor",
    "QuotaStatus",
]
