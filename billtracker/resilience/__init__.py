"""Resilience layer for the bill tracker.

This module provides:
- Per-dependency circuit breakers
- Retry with exponential backoff and jitter
- Last-known-good fallback payloads
- Timeout wrappers
- A protected-call pipeline composing all of the above
"""

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from .executor import ProtectedResult, ResilientExecutor, ResultSource
from .fallback import FallbackStore, mark_stale
from .retry import RetryManager, RetryOptions, calculate_backoff
from .timeout import with_async_timeout

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    "RetryManager",
    "RetryOptions",
    "calculate_backoff",
    "FallbackStore",
    "mark_stale",
    "with_async_timeout",
    "ResilientExecutor",
    "ProtectedResult",
    "ResultSource",
]
