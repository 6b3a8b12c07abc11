"""
Tests for relay backoff and saga retry delays.
"""

from datetime import datetime, timedelta, timezone

import pytest

from txoutbox.config import DEFAULT_RETRY_INTERVALS
from txoutbox.errors import SagaDefinitionError
from txoutbox.outbox.relay import calculate_next_attempt
from txoutbox.saga import RetryConfig, SagaStep, calculate_delay, order_steps

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestCalculateNextAttempt:
    """Test the relay backoff schedule."""

    def test_default_schedule(self):
        assert DEFAULT_RETRY_INTERVALS == [5, 15, 60, 300, 900]

    @pytest.mark.parametrize("attempts,seconds", [(1, 5), (2, 15), (3, 60), (4, 300), (5, 900)])
    def test_follows_schedule(self, attempts, seconds):
        next_attempt = calculate_next_attempt(attempts, NOW, DEFAULT_RETRY_INTERVALS)
        assert next_attempt == NOW + timedelta(seconds=seconds)

    def test_caps_at_last_interval(self):
        next_attempt = calculate_next_attempt(12, NOW, DEFAULT_RETRY_INTERVALS)
        assert next_attempt == NOW + timedelta(seconds=900)

    def test_empty_schedule_retries_immediately(self):
        assert calculate_next_attempt(3, NOW, []) == NOW


class TestCalculateDelay:
    """Test saga step retry delays."""

    def test_defaults(self):
        retry = RetryConfig()
        assert retry.max_attempts == 3
        assert retry.delay == 1.0
        assert retry.backoff_multiplier == 2.0
        assert retry.max_delay == 10.0

    def test_exponential(self):
        retry = RetryConfig(delay=1.0, backoff_multiplier=2.0, max_delay=100.0)
        assert [calculate_delay(a, retry) for a in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        retry = RetryConfig(delay=1.0, backoff_multiplier=2.0, max_delay=10.0)
        assert calculate_delay(5, retry) == 10.0
        assert calculate_delay(20, retry) == 10.0

    def test_constant_without_multiplier(self):
        retry = RetryConfig(delay=0.5, backoff_multiplier=1.0)
        assert calculate_delay(4, retry) == 0.5


async def _noop(input, context):
    return None


class TestOrderSteps:
    """Test saga step dependency ordering."""

    def test_dependency_order(self):
        steps = [
            SagaStep("notify", "Notify", _noop, dependencies=["render"]),
            SagaStep("render", "Render", _noop),
            SagaStep("archive", "Archive", _noop, dependencies=["render", "notify"]),
        ]
        assert [s.id for s in order_steps(steps)] == ["render", "notify", "archive"]

    def test_independent_steps_keep_declared_order(self):
        steps = [SagaStep("a", "A", _noop), SagaStep("b", "B", _noop), SagaStep("c", "C", _noop)]
        assert [s.id for s in order_steps(steps)] == ["a", "b", "c"]

    def test_cycle_detected(self):
        steps = [
            SagaStep("a", "A", _noop, dependencies=["b"]),
            SagaStep("b", "B", _noop, dependencies=["a"]),
        ]
        with pytest.raises(SagaDefinitionError, match="Circular"):
            order_steps(steps)
