"""
Retry utilities with exponential backoff for connector calls and store writes.

The policy is an explicit object so the engine, connectors and notifiers can
share one retry helper instead of hand-rolling loops.
"""
import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from commerce_sync.config import get_settings
from commerce_sync.errors import RateLimitError, is_retryable
from commerce_sync.utils.logger import log


@dataclass
class RetryStats:
    """Tracks retry statistics for a single operation."""
    attempts: int = 0
    total_delay_seconds: float = 0.0
    last_error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    success: bool = False

    def record_attempt(self, error: Optional[Exception] = None, delay: float = 0.0):
        """Record an attempt."""
        self.attempts += 1
        self.total_delay_seconds += delay
        if error:
            error_str = f"{type(error).__name__}: {str(error)}"
            self.last_error = error_str
            self.errors.append(error_str)

    @property
    def retries(self) -> int:
        return max(self.attempts - 1, 0)

    def to_dict(self) -> dict:
        """Convert to dictionary for logging/storage."""
        return {
            "attempts": self.attempts,
            "retries": self.retries,
            "total_delay_seconds": round(self.total_delay_seconds, 2),
            "success": self.success,
            "last_error": self.last_error,
            "errors": self.errors[:5]  # Cap at 5 errors
        }


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry ceiling and backoff shape.

    max_attempts counts the first try. SYNC_RETRY_ATTEMPTS counts retries, so
    the settings-derived policy allows SYNC_RETRY_ATTEMPTS + 1 attempts.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    jitter: bool = False

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            max_attempts=max(0, settings.sync_retry_attempts) + 1,
            base_delay=settings.sync_retry_base_delay,
            max_delay=settings.sync_retry_max_delay,
            jitter=settings.sync_retry_jitter,
        )

    def delay_for(self, attempt: int, hint: Optional[float] = None) -> float:
        """
        Calculate delay before the next attempt.

        Args:
            attempt: Zero-indexed attempt that just failed
            hint: Platform supplied wait (rate limit Retry-After), seconds

        Returns:
            Delay in seconds: base_delay * 2^attempt, capped, never below hint
        """
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)

        # Add jitter (0-25% of delay)
        if self.jitter and delay > 0:
            delay += delay * random.uniform(0, 0.25)

        if hint:
            delay = max(delay, hint)

        return delay


async def retry_async(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    operation_name: str = "operation",
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Tuple[Any, RetryStats]:
    """
    Execute an async operation with retry logic.

    Only errors classified retryable by is_retryable() are retried; anything
    else (authentication failures, bad config) propagates on the first attempt.

    Args:
        operation: Zero-argument callable returning an awaitable
        policy: Retry ceiling and backoff
        operation_name: Name for logging
        on_retry: Callback called on each retry (attempt, error, delay)
        sleep: Awaitable sleep, replaceable in tests

    Returns:
        Tuple of (result, RetryStats)
    """
    stats = RetryStats()

    attempts = max(policy.max_attempts, 1)

    for attempt in range(attempts):
        try:
            result = await operation()
            stats.record_attempt()
            stats.success = True

            if attempt > 0:
                log.info(
                    f"{operation_name} succeeded on attempt {attempt + 1} "
                    f"after {stats.total_delay_seconds:.1f}s total delay"
                )

            return result, stats

        except Exception as e:
            if attempt + 1 >= attempts or not is_retryable(e):
                stats.record_attempt(error=e)
                if is_retryable(e):
                    log.error(f"{operation_name} failed after {attempt + 1} attempts: {e}")
                raise

            hint = e.retry_after if isinstance(e, RateLimitError) else None
            delay = policy.delay_for(attempt, hint=hint)
            stats.record_attempt(error=e, delay=delay)

            log.warning(
                f"{operation_name} attempt {attempt + 1} failed: {e}. "
                f"Retrying in {delay:.1f}s..."
            )

            if on_retry:
                on_retry(attempt + 1, e, delay)

            await sleep(delay)

    # Should not reach here
    raise RuntimeError("Retry exhausted")
