"""
Retry policy: backoff bounds, classification and exhaustion.
"""
import asyncio

import pytest

from cohort_sync.exceptions import ApiError, DatabaseError
from cohort_sync.utils.retry import RetryContext, RetryPolicy, calculate_backoff, is_retryable_error


def _run(coro):
    """Run an async coroutine in a sync test."""
    return asyncio.run(coro)


class Flaky:
    """Fails `failures` times with `error`, then returns "ok"."""

    def __init__(self, failures, error):
        self.failures = failures
        self.error = error
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


FAST = RetryPolicy(max_attempts=4, base_delay=0.001, max_delay=0.005)


# ────────────────────────────────────────────
# BACKOFF
# ────────────────────────────────────────────


class TestBackoff:

    @pytest.mark.parametrize("attempt,raw", [(1, 2.0), (2, 4.0), (3, 8.0), (4, 16.0), (5, 30.0), (8, 30.0)])
    def test_delay_within_jitter_band(self, attempt, raw):
        for _ in range(50):
            delay = calculate_backoff(attempt, base_delay=2.0, max_delay=30.0)
            assert raw * 1.2 - 1e-9 <= delay <= raw * 1.3 + 1e-9

    def test_no_jitter(self):
        assert calculate_backoff(3, base_delay=1.0, max_delay=60.0, jitter_range=(0.0, 0.0)) == 4.0

    def test_max_total_delay_is_bounded(self):
        policy = RetryPolicy(max_attempts=6, base_delay=2.0, max_delay=30.0)
        # (2 + 4 + 8 + 16 + 30) * 1.3
        assert policy.max_total_delay() == pytest.approx(78.0)


class TestClassifier:

    def test_transient_api_codes(self):
        for code in ("timeout", "network", "http_status", "throttled"):
            assert is_retryable_error(ApiError("x", code=code))

    def test_fatal_api_codes(self):
        for code in ("graphql_error", "invalid_response", "env_missing"):
            assert not is_retryable_error(ApiError("x", code=code))

    def test_database_codes(self):
        assert is_retryable_error(DatabaseError("x", code="operational"))
        assert not is_retryable_error(DatabaseError("x", code="integrity"))

    def test_plain_exceptions(self):
        assert is_retryable_error(ConnectionError())
        assert not is_retryable_error(ValueError())


# ────────────────────────────────────────────
# EXECUTION
# ────────────────────────────────────────────


class TestRetryContext:

    def test_succeeds_after_transient_failures(self):
        func = Flaky(2, ApiError("reset", code="network"))
        ctx = RetryContext(FAST, "flaky")

        assert _run(ctx.execute(func)) == "ok"
        assert func.calls == 3
        assert ctx.stats.success
        assert ctx.stats.attempts == 3

    def test_exhaustion_raises_last_error(self):
        func = Flaky(10, ApiError("down", code="http_status", status_code=503))
        ctx = RetryContext(FAST, "always failing")

        with pytest.raises(ApiError) as exc:
            _run(ctx.execute(func))

        assert exc.value.status_code == 503
        assert func.calls == FAST.max_attempts
        assert not ctx.stats.success

    def test_non_retryable_is_not_retried(self):
        func = Flaky(1, DatabaseError("bad row", code="data"))
        with pytest.raises(DatabaseError):
            _run(RetryContext(FAST, "bad").execute(func))
        assert func.calls == 1

    def test_awaits_coroutines(self):
        attempts = []

        async def op(value):
            attempts.append(value)
            if len(attempts) < 2:
                raise ApiError("slow", code="timeout")
            return value * 2

        assert _run(RetryContext(FAST).execute(op, 21)) == 42
        assert len(attempts) == 2

    def test_execute_sync(self):
        func = Flaky(1, DatabaseError("locked", code="operational"))
        assert RetryContext(FAST, "sync").execute_sync(func) == "ok"
        assert func.calls == 2

    def test_custom_classifier(self):
        policy = RetryPolicy(max_attempts=3, base_delay=0.001, max_delay=0.001, is_retryable=lambda e: False)
        func = Flaky(1, ConnectionError("nope"))
        with pytest.raises(ConnectionError):
            _run(RetryContext(policy).execute(func))
        assert func.calls == 1
