"""Rate-limited gateway for outbound calls to paid third-party APIs.

Every call to an external provider (embeddings, generative text, screenshots,
content extraction) is funnelled through a named service queue. Each service
keeps a sliding 60 second window of dispatch timestamps and a priority queue
of pending operations, and a single drain task per service dispatches
operations no faster than the configured requests-per-minute.

Highlights
- Higher priority first, FIFO within a priority tier
- An operation's failure reaches only its own caller
- ``clear()`` rejects everything pending with ``QueueClearedError``
- All timing goes through an injectable ``Clock``

Usage
- ``gateway = RateLimitGateway.from_config(GatewayConfig())``
- ``result = await gateway.enqueue("jina-embeddings", lambda: call(), priority=2)``
"""

import asyncio
import heapq
import itertools
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

import structlog

from ..common.clock import Clock, SystemClock
from ..common.config import GatewayConfig
from ..common.errors import QueueClearedError, RateLimitBackoff
from ..common.metrics import MetricsCollector

logger = structlog.get_logger("gateway.rate_limiter")

Operation = Callable[[], Awaitable[Any]]


@dataclass
class RateLimitedRequest:
    """A pending operation owned by a service queue until dispatched."""

    request_id: str
    priority: int
    operation: Operation
    enqueued_at: float
    future: asyncio.Future = field(repr=False)


@dataclass
class ServiceStatus:
    """Point-in-time view of one service queue."""

    service_name: str
    queue_length: int
    requests_in_last_minute: int
    requests_per_minute: int
    is_processing: bool
    next_request_in: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service_name": self.service_name,
            "queue_length": self.queue_length,
            "requests_in_last_minute": self.requests_in_last_minute,
            "requests_per_minute": self.requests_per_minute,
            "is_processing": self.is_processing,
            "next_request_in": round(self.next_request_in, 3),
        }


class ServiceWindow:
    """Sliding-window limiter plus priority queue for a single service."""

    def __init__(
        self,
        service_name: str,
        requests_per_minute: int,
        clock: Clock,
        window_seconds: float = 60.0,
        safety_margin: float = 0.1,
        inter_request_delay: float = 0.1,
        metrics: Optional[MetricsCollector] = None,
    ):
        if requests_per_minute <= 0:
            raise ValueError(f"requests_per_minute must be positive for {service_name}")

        self.service_name = service_name
        self.requests_per_minute = requests_per_minute
        self.clock = clock
        self.window_seconds = window_seconds
        self.safety_margin = safety_margin
        self.inter_request_delay = inter_request_delay
        self.metrics = metrics

        self._pending: List[Tuple[int, int, RateLimitedRequest]] = []
        self._history: Deque[float] = deque()
        self._sequence = itertools.count(1)
        self._drain_task: Optional[asyncio.Task] = None
        self.is_processing = False

    def submit(self, operation: Operation, priority: int = 0) -> asyncio.Future:
        """Queue ``operation`` and return the future that will carry its result."""
        seq = next(self._sequence)
        future = asyncio.get_running_loop().create_future()
        request = RateLimitedRequest(
            request_id=f"{self.service_name}-{seq}",
            priority=priority,
            operation=operation,
            enqueued_at=self.clock.now(),
            future=future,
        )
        # Negated priority for a max-heap; seq keeps FIFO order within a tier.
        heapq.heappush(self._pending, (-priority, seq, request))
        self._update_queue_depth()

        logger.debug(
            "Request queued",
            service=self.service_name,
            request_id=request.request_id,
            priority=priority,
            queue_length=len(self._pending),
        )

        if self._drain_task is None:
            self._drain_task = asyncio.create_task(self._drain())
        return future

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._history and self._history[0] <= cutoff:
            self._history.popleft()

    def _try_acquire(self) -> float:
        """Record a dispatch slot and return its timestamp.

        Raises ``RateLimitBackoff`` when the window is full.
        """
        now = self.clock.now()
        self._prune(now)
        if len(self._history) >= self.requests_per_minute:
            oldest = self._history[0]
            wait = self.window_seconds - (now - oldest) + self.safety_margin
            raise RateLimitBackoff(self.service_name, wait)
        self._history.append(now)
        return now

    def _discard_abandoned(self) -> None:
        """Drop queued requests whose caller stopped waiting."""
        while self._pending and self._pending[0][2].future.done():
            _, _, request = heapq.heappop(self._pending)
            logger.debug("Skipping abandoned request", service=self.service_name, request_id=request.request_id)

    async def _drain(self) -> None:
        self.is_processing = True
        try:
            while True:
                self._discard_abandoned()
                if not self._pending:
                    break

                try:
                    self._try_acquire()
                except RateLimitBackoff as backoff:
                    if self.metrics:
                        self.metrics.record_gateway_wait(self.service_name)
                    logger.info(
                        "Rate limit reached, waiting for a free slot",
                        service=self.service_name,
                        wait_seconds=round(backoff.wait_seconds, 3),
                        queue_length=len(self._pending),
                    )
                    await self.clock.sleep(backoff.wait_seconds)
                    continue

                _, _, request = heapq.heappop(self._pending)
                self._update_queue_depth()
                await self._dispatch(request)
                await self.clock.sleep(self.inter_request_delay)
        finally:
            self.is_processing = False
            self._drain_task = None

    async def _dispatch(self, request: RateLimitedRequest) -> None:
        try:
            result = await request.operation()
        except asyncio.CancelledError:
            if not request.future.done():
                request.future.cancel()
            raise
        except Exception as e:
            logger.warning(
                "Rate-limited operation failed",
                service=self.service_name,
                request_id=request.request_id,
                error=str(e),
            )
            if self.metrics:
                self.metrics.record_gateway_dispatch(self.service_name, "error")
            if not request.future.done():
                request.future.set_exception(e)
            return

        if self.metrics:
            self.metrics.record_gateway_dispatch(self.service_name, "ok")
        if not request.future.done():
            request.future.set_result(result)

    def get_status(self) -> ServiceStatus:
        now = self.clock.now()
        self._prune(now)
        if len(self._history) >= self.requests_per_minute:
            next_request_in = max(0.0, self.window_seconds - (now - self._history[0]))
        else:
            next_request_in = 0.0

        return ServiceStatus(
            service_name=self.service_name,
            queue_length=len(self._pending),
            requests_in_last_minute=len(self._history),
            requests_per_minute=self.requests_per_minute,
            is_processing=self.is_processing,
            next_request_in=next_request_in,
        )

    def clear(self) -> int:
        """Reject every pending request; in-flight operations keep running."""
        cleared = 0
        while self._pending:
            _, _, request = heapq.heappop(self._pending)
            if not request.future.done():
                request.future.set_exception(QueueClearedError("Request cancelled due to queue clear"))
                cleared += 1
        self._update_queue_depth()
        logger.info("Service queue cleared", service=self.service_name, cleared=cleared)
        return cleared

    async def close(self) -> None:
        self.clear()
        task = self._drain_task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _update_queue_depth(self) -> None:
        if self.metrics:
            self.metrics.set_gateway_queue_depth(self.service_name, len(self._pending))


class RateLimitGateway:
    """Registry of named, independently rate-limited service queues."""

    def __init__(
        self,
        rate_limits: Dict[str, int],
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsCollector] = None,
        window_seconds: float = 60.0,
        safety_margin: float = 0.1,
        inter_request_delay: float = 0.1,
    ):
        """Create the gateway.

        Parameters
        - rate_limits: Mapping of service name to requests per minute
        - clock: Time source (defaults to ``SystemClock``)
        - metrics: Optional collector for dispatch/wait/queue metrics
        - window_seconds: Length of the sliding window
        - safety_margin: Extra wait added when the window is full
        - inter_request_delay: Pause after every dispatch
        """
        self.clock = clock or SystemClock()
        self.metrics = metrics
        self.window_seconds = window_seconds
        self.safety_margin = safety_margin
        self.inter_request_delay = inter_request_delay
        self._services: Dict[str, ServiceWindow] = {}

        for name, rpm in rate_limits.items():
            self.register_service(name, rpm)

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        clock: Optional[Clock] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> "RateLimitGateway":
        return cls(
            rate_limits=config.tabstash_rate_limits,
            clock=clock,
            metrics=metrics,
            window_seconds=config.tabstash_rate_window_seconds,
            safety_margin=config.tabstash_rate_safety_margin_seconds,
            inter_request_delay=config.tabstash_rate_inter_request_delay_seconds,
        )

    def register_service(self, service_name: str, requests_per_minute: int) -> ServiceWindow:
        """Register (or re-limit) a service queue."""
        existing = self._services.get(service_name)
        if existing is not None:
            existing.requests_per_minute = requests_per_minute
            return existing

        window = ServiceWindow(
            service_name=service_name,
            requests_per_minute=requests_per_minute,
            clock=self.clock,
            window_seconds=self.window_seconds,
            safety_margin=self.safety_margin,
            inter_request_delay=self.inter_request_delay,
            metrics=self.metrics,
        )
        self._services[service_name] = window
        logger.info("Gateway service registered", service=service_name, requests_per_minute=requests_per_minute)
        return window

    @property
    def services(self) -> List[str]:
        return list(self._services)

    def _get_window(self, service_name: str) -> ServiceWindow:
        try:
            return self._services[service_name]
        except KeyError:
            raise ValueError(f"Unknown rate-limited service: {service_name}") from None

    async def enqueue(self, service_name: str, operation: Operation, priority: int = 0) -> Any:
        """Run ``operation`` once the service's limiter allows it.

        Returns the operation's result or raises its exception. Raises
        ``QueueClearedError`` if the queue is cleared first and ``ValueError``
        for an unknown service.
        """
        window = self._get_window(service_name)
        return await window.submit(operation, priority)

    def get_status(self, service_name: str) -> ServiceStatus:
        return self._get_window(service_name).get_status()

    def get_all_status(self) -> Dict[str, ServiceStatus]:
        return {name: window.get_status() for name, window in self._services.items()}

    def clear(self, service_name: str) -> int:
        return self._get_window(service_name).clear()

    def clear_all(self) -> int:
        return sum(window.clear() for window in self._services.values())

    async def close(self) -> None:
        """Reject pending work and stop every drain task."""
        for window in self._services.values():
            await window.close()
        logger.info("Rate-limited gateway closed")
