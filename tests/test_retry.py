"""Tests for RetryPolicy delay calculation."""

import random

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from pycgmb.models import RetryPolicy


def test_standard_policy_delays():
    policy = RetryPolicy.STANDARD

    assert policy.max_attempts == 3
    assert policy.delay_for_attempt(1) == 1000
    assert policy.delay_for_attempt(2) == 2000
    assert policy.delay_for_attempt(3) is None


def test_delay_is_capped():
    policy = RetryPolicy(
        max_attempts=10, initial_delay_ms=1000, max_delay_ms=3000, backoff_multiplier=2.0
    )

    assert [policy.delay_for_attempt(n) for n in range(1, 5)] == [1000, 2000, 3000, 3000]


def test_with_retries_counts_extra_attempts():
    assert RetryPolicy.STANDARD.with_retries(0).max_attempts == 1
    assert RetryPolicy.STANDARD.with_retries(4).max_attempts == 5
    assert RetryPolicy.STANDARD.with_retries(4).initial_delay_ms == 1000


def test_no_retry_policy():
    assert RetryPolicy.NONE.delay_for_attempt(1) is None


def test_invalid_policy_values():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0, initial_delay_ms=0, max_delay_ms=0, backoff_multiplier=1.0)
    with pytest.raises(ValueError):
        RetryPolicy(
            max_attempts=1, initial_delay_ms=0, max_delay_ms=0, backoff_multiplier=1.0, jitter_ms=-1
        )


def test_jitter_is_deterministic_with_seeded_rng():
    policy = RetryPolicy.STANDARD

    first = policy.jittered_delay(1, random.Random(7))
    second = policy.jittered_delay(1, random.Random(7))

    assert first == second


@pytest.mark.property
@given(
    attempt=st.integers(min_value=1, max_value=8),
    jitter=st.integers(min_value=0, max_value=500),
    seed=st.integers(min_value=0, max_value=2**32),
)
@settings(max_examples=200)
def test_jittered_delay_stays_within_bounds(attempt, jitter, seed):
    policy = RetryPolicy(
        max_attempts=10,
        initial_delay_ms=100,
        max_delay_ms=5000,
        backoff_multiplier=2.0,
        jitter_ms=jitter,
    )

    base = policy.delay_for_attempt(attempt)
    delay = policy.jittered_delay(attempt, random.Random(seed))

    assert base <= delay <= base + jitter
