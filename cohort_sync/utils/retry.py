"""
Retry utilities with exponential backoff.

One parameterized policy shared by the Shopify client (network/API errors)
and the batch writer (transient database errors). Each caller supplies its
own tuning and its own classifier deciding retryable vs terminal.
"""
import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple, Type
from cohort_sync.utils.logger import log


@dataclass
class RetryStats:
    """Tracks retry statistics for a single operation."""
    attempts: int = 0
    total_delay_seconds: float = 0.0
    last_error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    success: bool = False

    def record_attempt(self, error: Optional[Exception] = None, delay: float = 0.0):
        """Record a retry attempt."""
        self.attempts += 1
        self.total_delay_seconds += delay
        if error:
            error_str = f"{type(error).__name__}: {str(error)}"
            self.last_error = error_str
            self.errors.append(error_str)

    def mark_success(self):
        """Mark the operation as successful."""
        self.success = True

    def to_dict(self) -> dict:
        """Convert to dictionary for logging/storage."""
        return {
            "attempts": self.attempts,
            "total_delay_seconds": round(self.total_delay_seconds, 2),
            "success": self.success,
            "last_error": self.last_error,
            "errors": self.errors[:5]  # Cap at 5 errors
        }


# Default retryable exceptions (network errors)
DEFAULT_RETRYABLE_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    ConnectionError,
    TimeoutError,
    OSError,
)


def is_retryable_error(
    error: Exception,
    retryable_exceptions: Tuple[Type[Exception], ...] = DEFAULT_RETRYABLE_EXCEPTIONS,
) -> bool:
    """
    Default classifier.

    Errors exposing a `transient` flag (ApiError, DatabaseError) decide for
    themselves; otherwise the exception type decides.
    """
    transient = getattr(error, "transient", None)
    if transient is not None:
        return bool(transient)
    return isinstance(error, retryable_exceptions)


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter_range: Tuple[float, float] = (0.2, 0.3)
) -> float:
    """
    Calculate delay for exponential backoff.

    Args:
        attempt: Current attempt number (1-indexed)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap (applied before jitter)
        exponential_base: Multiplier per attempt
        jitter_range: Fraction of the delay added as random jitter

    Returns:
        Delay in seconds
    """
    delay = base_delay * (exponential_base ** (attempt - 1))
    delay = min(delay, max_delay)

    low, high = jitter_range
    if high > 0:
        delay += delay * random.uniform(low, high)

    return delay


@dataclass(frozen=True)
class RetryPolicy:
    """Tuning for one class of operation."""
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter_range: Tuple[float, float] = (0.2, 0.3)
    is_retryable: Callable[[Exception], bool] = is_retryable_error

    def delay_for(self, attempt: int) -> float:
        return calculate_backoff(
            attempt,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            exponential_base=self.exponential_base,
            jitter_range=self.jitter_range
        )

    def max_total_delay(self) -> float:
        """Upper bound on the sleep time of one fully exhausted operation."""
        high = self.jitter_range[1]
        return sum(
            min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay) * (1 + high)
            for attempt in range(1, self.max_attempts)
        )


class RetryContext:
    """
    Runs a callable under a RetryPolicy and keeps stats for the last run.

    Usage:
        ctx = RetryContext(policy, operation_name="fetch page")
        result = await ctx.execute(api_call, arg1, arg2)
        print(ctx.stats.to_dict())
    """

    def __init__(self, policy: RetryPolicy, operation_name: str = "operation"):
        self.policy = policy
        self.operation_name = operation_name
        self.stats = RetryStats()

    def _should_stop(self, attempt: int, error: Exception) -> bool:
        return attempt >= self.policy.max_attempts or not self.policy.is_retryable(error)

    async def execute(self, func: Callable, *args, **kwargs):
        """Execute an async (or sync) callable with retry logic."""
        self.stats = RetryStats()

        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                result = func(*args, **kwargs)
                if asyncio.iscoroutine(result):
                    result = await result

                self.stats.record_attempt()
                self.stats.mark_success()
                if attempt > 1:
                    log.info(
                        f"{self.operation_name} succeeded on attempt {attempt} "
                        f"after {self.stats.total_delay_seconds:.1f}s total delay"
                    )
                return result

            except Exception as e:
                if self._should_stop(attempt, e):
                    self.stats.record_attempt(error=e)
                    log.error(f"{self.operation_name} failed after {attempt} attempts: {e}")
                    raise

                delay = self.policy.delay_for(attempt)
                self.stats.record_attempt(error=e, delay=delay)
                log.warning(
                    f"{self.operation_name} attempt {attempt} failed: {e}. "
                    f"Retrying in {delay:.1f}s..."
                )
                await asyncio.sleep(delay)

        raise RuntimeError("Retry exhausted")

    def execute_sync(self, func: Callable, *args, **kwargs):
        """Same as execute() for blocking callables."""
        self.stats = RetryStats()

        for attempt in range(1, self.policy.max_attempts + 1):
            try:
                result = func(*args, **kwargs)
                self.stats.record_attempt()
                self.stats.mark_success()
                if attempt > 1:
                    log.info(f"{self.operation_name} succeeded on attempt {attempt}")
                return result

            except Exception as e:
                if self._should_stop(attempt, e):
                    self.stats.record_attempt(error=e)
                    log.error(f"{self.operation_name} failed after {attempt} attempts: {e}")
                    raise

                delay = self.policy.delay_for(attempt)
                self.stats.record_attempt(error=e, delay=delay)
                log.warning(
                    f"{self.operation_name} attempt {attempt} failed: {e}. "
                    f"Retrying in {delay:.1f}s..."
                )
                time.sleep(delay)

        raise RuntimeError("Retry exhausted")
