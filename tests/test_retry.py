"""Tests for the centralized retry policy."""

import pytest

from edge_deployer.config import RetryConfig
from edge_deployer.errors import FatalExecutorError, RetryExhaustedError
from edge_deployer.executor import ExecutorOperation
from edge_deployer.retry import RetryPolicy


class TestComputeDelay:
    def test_exponential_growth_capped(self):
        policy = RetryPolicy(base_delay=1.0, backoff_factor=2.0, max_delay=5.0, jitter=False)
        assert [policy.compute_delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_full_jitter_stays_in_range(self):
        policy = RetryPolicy(base_delay=2.0, backoff_factor=2.0, max_delay=30.0, jitter=True)
        for _ in range(50):
            assert 0.0 <= policy.compute_delay(3) <= 8.0

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestCall:
    def test_retries_transient_failure_then_succeeds(self, executor, policy):
        slept = []
        policy.sleep = slept.append
        executor.fail(ExecutorOperation.DEPLOY_ARTIFACT, "a.com", "503 Service Unavailable", retryable=True, times=2)
        retries = []

        result = policy.call(
            executor, ExecutorOperation.DEPLOY_ARTIFACT, "a.com", "production",
            {"worker_name": "a-com-data-service"},
            on_retry=lambda attempt, res, delay: retries.append(attempt),
        )

        assert result.success
        assert executor.count(ExecutorOperation.DEPLOY_ARTIFACT) == 3
        assert retries == [1, 2]
        assert len(slept) == 2

    def test_fatal_failure_is_not_retried(self, executor, policy):
        executor.fail(ExecutorOperation.DEPLOY_ARTIFACT, "a.com", "Unauthorized", retryable=False)
        with pytest.raises(FatalExecutorError) as info:
            policy.call(executor, ExecutorOperation.DEPLOY_ARTIFACT, "a.com", "production", {"worker_name": "w"})
        assert executor.count(ExecutorOperation.DEPLOY_ARTIFACT) == 1
        assert "Unauthorized" in info.value.message

    def test_retries_exhausted(self, executor, policy):
        executor.fail(ExecutorOperation.SET_SECRET, "a.com", "network timeout", retryable=True)
        with pytest.raises(RetryExhaustedError) as info:
            policy.call(executor, ExecutorOperation.SET_SECRET, "a.com", "production", {"name": "X", "value": "v"})
        assert info.value.attempts == 3
        assert info.value.retryable
        assert executor.count(ExecutorOperation.SET_SECRET) == 3


def test_from_config_and_with_attempts_keep_sleep():
    def fake_sleep(delay):
        pass

    policy = RetryPolicy.from_config(RetryConfig(max_attempts=4, base_delay=0.5), sleep=fake_sleep)
    derived = policy.with_attempts(6, base_delay=2.0)

    assert policy.max_attempts == 4
    assert derived.max_attempts == 6
    assert derived.base_delay == 2.0
    assert derived.sleep is fake_sleep
