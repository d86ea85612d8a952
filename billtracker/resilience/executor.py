"""Protected calls against an external dependency.

Composes the resilience pieces in a fixed order:

    cache hit -> breaker.execute(retry.execute_with_retry(operation))
              -> on success: populate cache and fallback
              -> on failure: stale fallback -> degraded payload -> ServiceUnavailableError

The breaker always wraps the retry loop, so a call rejected while the circuit
is open never counts as a fresh failure.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from ..cache.result_cache import ResultCache
from ..errors import ErrorKind, ServiceUnavailableError, classify_error
from ..monitoring.metrics import fallback_served_total
from .circuit_breaker import CircuitBreaker
from .fallback import DEFAULT_STALE_MESSAGE, FallbackStore, mark_stale
from .retry import RetryManager, RetryOptions

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Caller mistakes propagate instead of being masked by stale data
PROPAGATED_KINDS = frozenset({ErrorKind.VALIDATION_ERROR, ErrorKind.NOT_FOUND})


class ResultSource(str, Enum):
    """Where a protected result came from."""

    LIVE = "LIVE"
    CACHE = "CACHE"
    FALLBACK = "FALLBACK"
    DEGRADED = "DEGRADED"


@dataclass
class ProtectedResult(Generic[T]):
    """Result of a protected call."""

    value: T
    source: ResultSource

    @property
    def stale(self) -> bool:
        return self.source in (ResultSource.FALLBACK, ResultSource.DEGRADED)


class ResilientExecutor:
    """Runs operations for one dependency through cache, breaker, retry and fallback."""

    def __init__(
        self,
        breaker: CircuitBreaker,
        retry_manager: RetryManager,
        fallback_store: FallbackStore,
        cache: Optional[ResultCache] = None,
    ):
        self.breaker = breaker
        self.retry_manager = retry_manager
        self.fallback_store = fallback_store
        self.cache = cache

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        key: str,
        *,
        cache_key: Optional[str] = None,
        retry_options: Optional[RetryOptions] = None,
        degraded: Optional[Callable[[BaseException], Any]] = None,
        stale_message: str = DEFAULT_STALE_MESSAGE,
    ) -> ProtectedResult:
        """Run an operation with full protection.

        Args:
            operation: Zero-argument callable performing the network call
            key: Operation key for retry bookkeeping and the fallback store
            cache_key: Result cache key; no caching when omitted
            retry_options: Retry options for this dependency
            degraded: Builds a placeholder payload from the final error
            stale_message: Note attached to payloads served from the fallback store

        Returns:
            ProtectedResult with the value and its source

        Raises:
            AppError: Validation and not-found errors, unchanged
            ServiceUnavailableError: When every layer failed and no placeholder exists
        """
        if self.cache is not None and cache_key is not None:
            cached = self.cache.get(cache_key)
            if cached is not None:
                return ProtectedResult(cached, ResultSource.CACHE)

        try:
            value = await self.breaker.execute(
                lambda: self.retry_manager.execute_with_retry(operation, key, retry_options)
            )
        except Exception as e:
            if classify_error(e) in PROPAGATED_KINDS:
                raise
            return self._recover(key, e, degraded, stale_message)

        if self.cache is not None and cache_key is not None:
            self.cache.set(cache_key, value)
        self.fallback_store.set_fallback(key, value)
        return ProtectedResult(value, ResultSource.LIVE)

    def _recover(
        self,
        key: str,
        error: Exception,
        degraded: Optional[Callable[[BaseException], Any]],
        stale_message: str,
    ) -> ProtectedResult:
        logger.error(f"{self.breaker.name} call failed for {key}: {error}")

        fallback = self.fallback_store.get_fallback(key)
        if fallback is not None:
            logger.warning(f"Serving stale fallback for {key}")
            fallback_served_total.labels(source="fallback").inc()
            return ProtectedResult(mark_stale(fallback, stale_message), ResultSource.FALLBACK)

        if degraded is not None:
            logger.warning(f"Serving degraded payload for {key}")
            fallback_served_total.labels(source="degraded").inc()
            return ProtectedResult(degraded(error), ResultSource.DEGRADED)

        raise ServiceUnavailableError(
            f"Service {self.breaker.name} temporarily unavailable",
            context={"key": key, "cause": type(error).__name__},
        ) from error
