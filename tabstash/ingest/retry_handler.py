"""Retry handler with capped backoff for ingestion work.

``RetryHandler`` retries a failing coroutine a bounded number of times and
raises ``RetriesExhausted`` (chained to the last error) when attempts run
out. Two delay strategies are supported:

- ``linear``: ``base_delay * attempt`` (import sub-batches)
- ``exponential``: ``base_delay * exponential_base ** (attempt - 1)`` with
  optional +/-10% jitter (provider calls during enrichment)

Both are capped at ``max_delay``; sleeping goes through the injected clock.
"""

import random
from typing import Any, Callable, Optional

import structlog

from ..common.clock import Clock, SystemClock
from ..common.errors import RetriesExhausted

logger = structlog.get_logger("ingest.retry_handler")


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 4,
        base_delay: float = 2.0,
        max_delay: float = 10.0,
        strategy: str = "linear",
        exponential_base: float = 2.0,
        jitter: bool = False,
        retryable_exceptions: tuple = (Exception,),
        should_retry: Optional[Callable[[BaseException], bool]] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if strategy not in ("linear", "exponential"):
            raise ValueError(f"Unknown retry strategy: {strategy}")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.strategy = strategy
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions
        self.should_retry = should_retry


class RetryHandler:
    """Handles retry logic with capped backoff."""

    def __init__(self, config: RetryConfig, clock: Optional[Clock] = None):
        self.config = config
        self.clock = clock or SystemClock()

    async def execute_with_retry(
        self,
        func: Callable,
        *args,
        operation_name: str = "unknown",
        **kwargs
    ) -> Any:
        """Await ``func(*args, **kwargs)``, retrying retryable failures.

        Non-retryable exceptions propagate unchanged; running out of attempts
        raises ``RetriesExhausted``.
        """
        for attempt in range(1, self.config.max_attempts + 1):
            try:
                result = await func(*args, **kwargs)
            except self.config.retryable_exceptions as e:
                if self.config.should_retry and not self.config.should_retry(e):
                    raise

                if attempt == self.config.max_attempts:
                    logger.error(
                        "Operation failed after all retries",
                        operation=operation_name,
                        attempts=attempt,
                        error=str(e)
                    )
                    raise RetriesExhausted(
                        f"{operation_name} failed after {attempt} attempts: {e}",
                        attempts=attempt,
                    ) from e

                delay = self.calculate_delay(attempt)
                logger.warning(
                    "Operation failed, retrying",
                    operation=operation_name,
                    attempt=attempt,
                    total_attempts=self.config.max_attempts,
                    delay_seconds=round(delay, 3),
                    error=str(e)
                )
                await self.clock.sleep(delay)
            else:
                if attempt > 1:
                    logger.info(
                        "Operation succeeded after retry",
                        operation=operation_name,
                        attempt=attempt,
                        total_attempts=self.config.max_attempts
                    )
                return result

        raise RuntimeError("Retry logic error")

    def calculate_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        if self.config.strategy == "linear":
            delay = self.config.base_delay * attempt
        else:
            delay = self.config.base_delay * (self.config.exponential_base ** (attempt - 1))

        delay = min(delay, self.config.max_delay)

        if self.config.jitter:
            jitter_range = delay * 0.1
            delay += random.uniform(-jitter_range, jitter_range)

        return max(delay, 0.0)
