"""Exception hierarchy shared across tabstash components.

Only two of these ever surface to users as a job failure
(``RetriesExhausted`` and ``JobCancelled``); the rest are absorbed by the
component that raised them and turned into a wait, a fallback or a counted
partial failure.
"""

from typing import List, Optional


class TabstashError(Exception):
    """Base exception for tabstash."""
    pass


class RateLimitBackoff(TabstashError):
    """A gateway service has no free slot; wait ``wait_seconds`` and retry."""

    def __init__(self, service_name: str, wait_seconds: float):
        super().__init__(f"Rate limit reached for {service_name}, waiting {wait_seconds:.2f}s")
        self.service_name = service_name
        self.wait_seconds = wait_seconds


class QueueClearedError(TabstashError):
    """Pending gateway request rejected because its queue was cleared."""
    pass


class CircuitBreakerError(TabstashError):
    """Circuit breaker is open."""
    pass


class ExternalAPIError(TabstashError):
    """An external provider call failed (network, non-2xx, malformed body)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PartialBatchFailure(TabstashError):
    """Some records of a sub-batch failed; the job continues."""

    def __init__(self, message: str, failed_count: int, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.failed_count = failed_count
        self.errors = errors or []


class RetriesExhausted(TabstashError):
    """A sub-batch kept failing after every allowed retry."""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


class JobCancelled(TabstashError):
    """The job was cancelled by its owner while a worker was running it."""
    pass


class JobNotFoundError(TabstashError):
    """No job is known under the given id."""
    pass


class StoreError(TabstashError):
    """Base exception for tab store operations."""
    pass


class StoreConnectionError(StoreError):
    """Could not connect to the tab store."""
    pass


class StoreQueryError(StoreError):
    """A tab store query failed."""
    pass
