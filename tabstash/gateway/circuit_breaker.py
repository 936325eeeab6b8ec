"""Circuit breaker for calls to external providers.

Wraps the embedding provider so a sustained outage short-circuits straight to
the deterministic fallback instead of spending rate-limit capacity on calls
that keep failing.
"""

import asyncio
import inspect
from enum import Enum
from typing import Any, Callable, Dict, Optional

import structlog

from ..common.clock import Clock, SystemClock
from ..common.errors import CircuitBreakerError

logger = structlog.get_logger("circuit_breaker")


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, reject calls
    HALF_OPEN = "half_open"  # Probing whether the provider recovered


class CircuitBreaker:
    """Circuit breaker for external service calls."""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        expected_exception: type = Exception,
        name: str = "circuit_breaker",
        clock: Optional[Clock] = None,
    ):
        """Configure a circuit breaker.

        Parameters
        - failure_threshold: Consecutive failures before opening the breaker
        - recovery_timeout: Seconds to wait before a HALF_OPEN trial call
        - expected_exception: Exception type(s) treated as failures
        - name: Identifier for logs
        - clock: Time source (defaults to ``SystemClock``)
        """
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self.name = name
        self.clock = clock or SystemClock()

        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = CircuitBreakerState.CLOSED
        self._lock = asyncio.Lock()

    async def call(self, func: Callable, *args, **kwargs) -> Any:
        """Execute ``func`` with circuit breaker protection.

        Raises ``CircuitBreakerError`` without calling ``func`` while open.
        """
        async with self._lock:
            if self.state == CircuitBreakerState.OPEN:
                if self._should_attempt_reset():
                    self.state = CircuitBreakerState.HALF_OPEN
                    logger.info("Circuit breaker transitioning to HALF_OPEN", name=self.name)
                else:
                    logger.debug("Circuit breaker is OPEN, rejecting call", name=self.name)
                    raise CircuitBreakerError(f"Circuit breaker {self.name} is open")

        try:
            if inspect.iscoroutinefunction(func):
                result = await func(*args, **kwargs)
            else:
                result = func(*args, **kwargs)
        except self.expected_exception:
            await self._on_failure()
            raise

        await self._on_success()
        return result

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_time is None:
            return True
        return (self.clock.now() - self.last_failure_time) >= self.recovery_timeout

    async def _on_success(self) -> None:
        async with self._lock:
            if self.state == CircuitBreakerState.HALF_OPEN:
                self.state = CircuitBreakerState.CLOSED
                logger.info("Circuit breaker reset to CLOSED", name=self.name)
            self.failure_count = 0

    async def _on_failure(self) -> None:
        async with self._lock:
            self.failure_count += 1
            self.last_failure_time = self.clock.now()

            # A failed trial call reopens immediately.
            if self.state == CircuitBreakerState.HALF_OPEN or self.failure_count >= self.failure_threshold:
                if self.state != CircuitBreakerState.OPEN:
                    logger.warning(
                        "Circuit breaker opened due to failures",
                        name=self.name,
                        failure_count=self.failure_count,
                        threshold=self.failure_threshold
                    )
                self.state = CircuitBreakerState.OPEN

    def get_state(self) -> CircuitBreakerState:
        return self.state

    def get_stats(self) -> Dict[str, Any]:
        """Get circuit breaker statistics."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
        }

    async def force_open(self) -> None:
        """Force circuit breaker to open state."""
        async with self._lock:
            self.state = CircuitBreakerState.OPEN
            self.last_failure_time = self.clock.now()
            logger.warning("Circuit breaker forced to OPEN", name=self.name)

    async def force_close(self) -> None:
        """Force circuit breaker to closed state."""
        async with self._lock:
            self.state = CircuitBreakerState.CLOSED
            self.failure_count = 0
            self.last_failure_time = None
            logger.info("Circuit breaker forced to CLOSED", name=self.name)
