"""Tests for the multimodal API quota monitor."""

import pytest

from pycgmb.models import (
    ExecutionMode,
    LayerType,
    Step,
    StepResult,
    TaskGraph,
    WorkflowMetadata,
    WorkflowResult,
)
from pycgmb.quota import FREE_TIER, PAID_TIER, QuotaHealth, QuotaLimits, QuotaMonitor
from pycgmb.storage import InMemoryRunLog


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


SMALL = QuotaLimits(
    requests_per_minute=2,
    requests_per_day=5,
    tokens_per_minute=1000,
    tokens_per_day=3000,
)


def test_tier_selection():
    assert QuotaMonitor().limits == FREE_TIER
    assert QuotaMonitor(paid_tier=True).limits == PAID_TIER
    assert QuotaMonitor(limits=SMALL).limits == SMALL


def test_minute_request_limit_and_reset(clock):
    quota = QuotaMonitor(limits=SMALL, clock=clock)
    quota.record_request(10)
    quota.record_request(10)

    check = quota.can_make_request(estimated_tokens=10)

    assert not check.allowed
    assert check.reason == "Per-minute request limit exceeded"
    assert check.wait_time == pytest.approx(60.0)

    clock.advance(61)
    assert quota.can_make_request(estimated_tokens=10).allowed
    assert quota.requests_today == 2


def test_minute_token_limit(clock):
    quota = QuotaMonitor(limits=SMALL, clock=clock)
    quota.record_request(900)

    check = quota.can_make_request(estimated_tokens=200)

    assert not check.allowed
    assert check.reason == "Per-minute token limit would be exceeded"


def test_daily_limits_take_precedence(clock):
    quota = QuotaMonitor(limits=SMALL, clock=clock)
    for _ in range(5):
        quota.record_request(1)
        clock.advance(61)

    check = quota.can_make_request(estimated_tokens=1)

    assert not check.allowed
    assert check.reason == "Daily request limit exceeded"
    assert check.wait_time == pytest.approx(24 * 3600 - 5 * 61)


def test_daily_token_limit(clock):
    quota = QuotaMonitor(limits=SMALL, clock=clock)
    quota.record_request(900)
    clock.advance(61)
    quota.record_request(900)
    clock.advance(61)
    quota.record_request(900)

    check = quota.can_make_request(estimated_tokens=500)

    assert check.reason == "Daily token limit would be exceeded"


def test_request_larger_than_a_limit_never_fits(clock):
    quota = QuotaMonitor(limits=SMALL, clock=clock)

    check = quota.can_make_request(estimated_tokens=1001)

    assert not check.allowed
    assert check.oversized
    assert check.wait_time is None
    assert check.reason == "Request of 1001 tokens exceeds the token limit"
    assert quota.can_make_request(estimated_tokens=1000).allowed
    assert not quota.can_make_request(estimated_tokens=1000).oversized


def test_daily_reset(clock):
    quota = QuotaMonitor(limits=SMALL, clock=clock)
    quota.record_request(2000)

    clock.advance(24 * 3600)

    assert quota.can_make_request(estimated_tokens=1000).allowed
    assert quota.tokens_today == 0


def test_status_and_health(clock):
    quota = QuotaMonitor(limits=SMALL, clock=clock)
    assert quota.status().health is QuotaHealth.HEALTHY

    quota.record_request(100)
    status = quota.status()
    assert status.requests_minute_percent == 50.0
    assert status.requests_daily_percent == 20.0
    assert status.health is QuotaHealth.HEALTHY

    quota.record_request(100)
    assert quota.status().health is QuotaHealth.CRITICAL


def test_warning_health(clock):
    quota = QuotaMonitor(limits=QuotaLimits(100, 10, 100_000, 100_000), clock=clock)
    for _ in range(8):
        quota.record_request(0)

    assert quota.status().health is QuotaHealth.WARNING


@pytest.mark.asyncio
async def test_seed_from_run_log():
    run_log = InMemoryRunLog()
    graph = TaskGraph(steps=(Step("img", LayerType.AISTUDIO, "generate_image"),))
    result = WorkflowResult(
        run_id="r1",
        success=True,
        results={
            "img": StepResult.succeeded(
                "img", LayerType.AISTUDIO, {}, duration=1.0, attempts=2, tokens_used=1500
            )
        },
        metadata=WorkflowMetadata(
            total_duration=1.0, steps_completed=1, steps_failed=0, mode=ExecutionMode.SEQUENTIAL
        ),
    )
    await run_log.record_run("r1", graph, result)
    quota = QuotaMonitor()

    await quota.seed_from(run_log)

    assert quota.requests_today == 2
    assert quota.tokens_today == 1500
    assert quota.requests_this_minute == 2
