"""Tests for retry helpers and backoff policies"""

import asyncio
import logging

import pytest

from conftest import SleepRecorder
from retry import ExponentialBackoff, LinearBackoff, clamp_attempts, retry_with_backoff


class FlakyOperation:
    """Fails `failures` times, then returns `result`."""

    def __init__(self, failures, result="ok"):
        self.failures = failures
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"failure {self.calls}")
        return self.result


class TestBackoffPolicies:
    """Tests for the two backoff curves"""

    def test_exponential_backoff(self):
        policy = ExponentialBackoff(base_delay_ms=1000)
        assert [policy.delay_ms(i) for i in range(4)] == [1000, 2000, 4000, 8000]

    def test_linear_backoff(self):
        policy = LinearBackoff(step_ms=500)
        assert [policy.delay_ms(n) for n in range(1, 4)] == [500, 1000, 1500]


class TestRetryWithBackoff:
    """Tests for retry_with_backoff"""

    def test_success_on_first_attempt_does_not_sleep(self):
        sleeper = SleepRecorder()
        operation = FlakyOperation(failures=0)
        assert asyncio.run(retry_with_backoff(operation, sleep=sleeper)) == "ok"
        assert operation.calls == 1
        assert sleeper.delays == []

    def test_two_failures_then_success(self):
        sleeper = SleepRecorder()
        operation = FlakyOperation(failures=2, result="image")
        result = asyncio.run(retry_with_backoff(operation, max_attempts=3, base_delay_ms=1000, sleep=sleeper))
        assert result == "image"
        assert operation.calls == 3
        assert sleeper.delays == [1.0, 2.0]

    def test_always_failing_raises_last_error(self):
        sleeper = SleepRecorder()
        operation = FlakyOperation(failures=10)
        with pytest.raises(RuntimeError, match="failure 3"):
            asyncio.run(retry_with_backoff(operation, max_attempts=3, base_delay_ms=1000, sleep=sleeper))
        assert operation.calls == 3
        assert sleeper.delays == [1.0, 2.0]

    def test_single_attempt_never_sleeps(self):
        sleeper = SleepRecorder()
        operation = FlakyOperation(failures=1)
        with pytest.raises(RuntimeError, match="failure 1"):
            asyncio.run(retry_with_backoff(operation, max_attempts=1, sleep=sleeper))
        assert sleeper.delays == []

    def test_invalid_max_attempts(self):
        with pytest.raises(ValueError):
            asyncio.run(retry_with_backoff(FlakyOperation(failures=0), max_attempts=0))

    def test_failed_attempts_are_logged(self, caplog):
        sleeper = SleepRecorder()
        operation = FlakyOperation(failures=1)
        with caplog.at_level(logging.WARNING, logger="retry"):
            asyncio.run(retry_with_backoff(operation, base_delay_ms=250, sleep=sleeper))
        assert any("Attempt 1 failed, retrying in 250ms" in record.getMessage() for record in caplog.records)


class TestClampAttempts:
    """Tests for batch attempt clamping"""

    def test_default_when_missing(self):
        assert clamp_attempts(None) == 3

    def test_clamped_into_range(self):
        assert clamp_attempts(0) == 1
        assert clamp_attempts(-4) == 1
        assert clamp_attempts(9) == 5
        assert clamp_attempts(2) == 2

    def test_non_numeric_uses_default(self):
        assert clamp_attempts("many") == 3
        assert clamp_attempts(True) == 3
        assert clamp_attempts([2]) == 3

    def test_fractional_counts_round_up(self):
        assert clamp_attempts(2.7) == 3
        assert clamp_attempts(1.0) == 1
        assert clamp_attempts(0.2) == 1
        assert clamp_attempts(float("nan")) == 3
        assert clamp_attempts(float("inf")) == 3
