"""Time source used by every component that waits or timestamps.

Components take a ``Clock`` instead of calling ``time``/``asyncio.sleep``
directly so tests can run rate windows, retry backoff and job retention in
virtual time.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone


class Clock(ABC):
    """Monotonic time, wall time and sleeping."""

    @abstractmethod
    def now(self) -> float:
        """Monotonic seconds; only differences are meaningful."""
        pass

    @abstractmethod
    def wall_time(self) -> datetime:
        """Current UTC time for display (``started_at`` and friends)."""
        pass

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        pass


class SystemClock(Clock):
    """Real clock backed by ``time.monotonic`` and ``asyncio.sleep``."""

    def now(self) -> float:
        return time.monotonic()

    def wall_time(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))
