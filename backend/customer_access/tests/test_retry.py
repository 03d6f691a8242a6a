"""
Tests for rebuild retry policy and backoff.
"""

from datetime import datetime, timezone

import pytest

from customer_access.config.rebuild_settings import RebuildSettings
from customer_access.errors import (
    ClosureSwapError,
    GraphReadError,
    RebuildTimeoutError,
    TenantIsolationError,
)
from customer_access.jobs.retry import (
    ErrorCategory,
    RetryPolicy,
    calculate_backoff,
    categorize_error,
    should_retry,
)


class TestCategorizeError:

    @pytest.mark.parametrize(
        "error, category",
        [
            (TenantIsolationError("cross tenant", tenant_id="t1"), ErrorCategory.TENANT_VIOLATION),
            (GraphReadError("store down"), ErrorCategory.GRAPH_READ),
            (ClosureSwapError("rolled back", user_id="A"), ErrorCategory.SWAP_FAILED),
            (RebuildTimeoutError("deadline"), ErrorCategory.TIMEOUT),
            (TimeoutError(), ErrorCategory.TIMEOUT),
            (RuntimeError("surprise"), ErrorCategory.UNKNOWN),
        ],
    )
    def test_mapping(self, error, category):
        assert categorize_error(error) == category


class TestCalculateBackoff:

    def test_first_retry_within_jitter(self):
        for _ in range(50):
            delay = calculate_backoff(0)
            assert 22.5 <= delay <= 37.5

    def test_grows_exponentially(self):
        policy = RetryPolicy(jitter_factor=0.0)

        assert calculate_backoff(0, policy) == 30.0
        assert calculate_backoff(1, policy) == 60.0
        assert calculate_backoff(2, policy) == 120.0

    def test_capped(self):
        policy = RetryPolicy(max_delay_seconds=100.0, jitter_factor=0.0)

        assert calculate_backoff(10, policy) == 100.0

    def test_minimum_one_second(self):
        policy = RetryPolicy(base_delay_seconds=0.01, jitter_factor=0.0)

        assert calculate_backoff(0, policy) == 1.0


class TestShouldRetry:

    def test_tenant_violation_never_retries(self):
        decision = should_retry(ErrorCategory.TENANT_VIOLATION, attempts_made=1)

        assert not decision.should_retry
        assert decision.move_to_dlq
        assert decision.next_retry_at is None

    def test_transient_error_retries(self):
        before = datetime.now(timezone.utc)

        decision = should_retry(ErrorCategory.GRAPH_READ, attempts_made=1)

        assert decision.should_retry
        assert not decision.move_to_dlq
        assert decision.next_retry_at > before
        assert "graph_read" in decision.reason

    def test_exhausted_attempts_go_to_dlq(self):
        decision = should_retry(ErrorCategory.TIMEOUT, attempts_made=4)

        assert not decision.should_retry
        assert decision.move_to_dlq

    def test_unknown_error_retries(self):
        decision = should_retry(ErrorCategory.UNKNOWN, attempts_made=2)

        assert decision.should_retry
        assert decision.reason.startswith("Unknown error")

    def test_policy_from_settings(self):
        policy = RetryPolicy.from_settings(RebuildSettings(max_attempts=2, base_delay_seconds=5.0))

        assert policy.max_attempts == 2
        assert policy.base_delay_seconds == 5.0
        assert should_retry(ErrorCategory.SWAP_FAILED, 2, policy).move_to_dlq
        assert should_retry(ErrorCategory.SWAP_FAILED, 1, policy).should_retry
