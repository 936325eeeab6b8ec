"""Outbound call protection for third-party APIs.

Primary components:
- ``rate_limiter``: ``RateLimitGateway`` with one sliding-window queue per
  external service.
- ``circuit_breaker``: ``CircuitBreaker`` used around flaky providers.
"""

from .circuit_breaker import CircuitBreaker, CircuitBreakerState
from .rate_limiter import RateLimitGateway, ServiceStatus

__all__ = ["CircuitBreaker", "CircuitBreakerState", "RateLimitGateway", "ServiceStatus"]
