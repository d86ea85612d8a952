"""Client-side request coordination.

Sits between the UI and the network and provides:
- Result cache short-circuit for non-mutating requests
- Deduplication of identical in-flight requests
- A bounded FIFO dispatch queue with a concurrency limit and minimum spacing
- A hard per-request timeout
- Rolling latency and hit/failure counters
"""

import asyncio
import functools
import json
import logging
import time
from collections import deque
from dataclasses import dataclass, field, fields, replace
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

import httpx

from ..cache.result_cache import ResultCache
from ..errors import RateLimitError, RequestTimeoutError
from ..monitoring.metrics import (
    coordinator_latency_seconds,
    coordinator_queue_depth,
    coordinator_requests_total,
)
from ..resilience.retry import RetryManager, RetryOptions
from ..resilience.timeout import CLIENT_REQUEST_TIMEOUT, with_async_timeout

logger = logging.getLogger(__name__)

Fetcher = Callable[[str, dict[str, Any]], Awaitable[Any]]

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


@dataclass
class CoordinatorConfig:
    """Configuration for the request coordinator."""

    max_concurrent_requests: int = 3
    request_spacing: float = 0.1  # Minimum seconds between dispatches
    request_timeout: float = CLIENT_REQUEST_TIMEOUT
    max_queue_size: int = 100  # Requests waiting beyond this are rejected
    latency_window: int = 100  # Latencies kept for the rolling average


@dataclass
class CacheOptions:
    """Per-call cache behavior."""

    cache_type: str = "default"
    cache_params: dict[str, Any] = field(default_factory=dict)
    bypass_cache: bool = False
    cache_ttl: Optional[float] = None


@dataclass
class QueuedRequest:
    """A request waiting for, or holding, a dispatch slot."""

    signature: str
    url: str
    options: dict[str, Any]
    enqueued_at: float
    future: asyncio.Future
    cache_key: Optional[str] = None
    cache_ttl: Optional[float] = None


@dataclass
class CoordinatorMetrics:
    """Process-lifetime request counters."""

    latency_window: int = 100
    total_requests: int = 0
    cached_requests: int = 0
    deduplicated_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    response_times: deque = field(init=False)

    def __post_init__(self):
        self.response_times = deque(maxlen=self.latency_window)

    def record_latency(self, seconds: float) -> None:
        self.response_times.append(seconds)

    @property
    def average_response_time(self) -> float:
        if not self.response_times:
            return 0.0
        return sum(self.response_times) / len(self.response_times)

    @property
    def hit_rate(self) -> float:
        saved = self.cached_requests + self.deduplicated_requests
        seen = self.total_requests + saved
        return round(saved / seen * 100, 2) if seen else 0.0

    def snapshot(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "cached_requests": self.cached_requests,
            "deduplicated_requests": self.deduplicated_requests,
            "failed_requests": self.failed_requests,
            "rejected_requests": self.rejected_requests,
            "average_response_time": self.average_response_time,
            "hit_rate": self.hit_rate,
        }


@dataclass
class BatchItem:
    """One request in a batch."""

    url: str
    options: dict[str, Any] = field(default_factory=dict)
    cache_options: Optional[CacheOptions] = None


@dataclass
class BatchResult:
    """Outcome of a batch: results aligned with the input, errors by index."""

    results: list[Any]
    errors: list[tuple[int, BaseException]]

    @property
    def success_count(self) -> int:
        return len(self.results) - len(self.errors)

    @property
    def error_count(self) -> int:
        return len(self.errors)


class RequestCoordinator:
    """Coordinates client requests to the backend.

    Usage:
        coordinator = RequestCoordinator(HttpxFetcher(), cache=client_cache)
        bills = await coordinator.optimized_fetch(
            "/api/bills", cache_options=CacheOptions(cache_type="bills")
        )
    """

    def __init__(
        self,
        fetcher: Fetcher,
        cache: Optional[ResultCache] = None,
        config: Optional[CoordinatorConfig] = None,
        retry_manager: Optional[RetryManager] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize the coordinator.

        Args:
            fetcher: Network adapter called as ``fetcher(url, options)``
            cache: Client result cache
            config: Coordinator configuration
            retry_manager: Used by ``retry_request``
            clock: Monotonic time source in seconds
            sleep: Coroutine used to wait out the dispatch spacing
        """
        self._fetcher = fetcher
        self.cache = cache
        self.config = config or CoordinatorConfig()
        self.retry_manager = retry_manager or RetryManager()
        self._clock = clock
        self._sleep = sleep
        self.metrics = CoordinatorMetrics(self.config.latency_window)

        self._queue: deque[QueuedRequest] = deque()
        self._pending: dict[str, asyncio.Future] = {}
        self._active = 0
        self._last_dispatch: Optional[float] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._slot_freed = asyncio.Event()
        self._tasks: set[asyncio.Task] = set()

    @staticmethod
    def request_url(url: str, params: Optional[dict[str, Any]] = None) -> str:
        """URL with query params merged in sorted order."""
        if not params:
            return url
        return str(httpx.URL(url).copy_merge_params(dict(sorted(params.items()))))

    @classmethod
    def generate_signature(cls, url: str, options: Optional[dict[str, Any]] = None) -> str:
        """Identity of a request for deduplication: ``"{method}:{url}:{body}"``.

        ``url`` includes the request's query params.
        """
        options = options or {}
        url = cls.request_url(url, options.get("params"))
        method = options.get("method", "GET").upper()
        body = options.get("body") or ""
        if isinstance(body, bytes):
            body = body.decode("utf-8", "replace")
        elif not isinstance(body, str):
            body = json.dumps(body, sort_keys=True, default=str)
        return f"{method}:{url}:{body}"

    @property
    def active_requests(self) -> int:
        return self._active

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def pending_requests(self) -> int:
        return len(self._pending)

    async def optimized_fetch(
        self,
        url: str,
        options: Optional[dict[str, Any]] = None,
        cache_options: Optional[CacheOptions] = None,
    ) -> Any:
        """Fetch through the cache, dedup map and dispatch queue.

        Args:
            url: Request URL
            options: ``method``, ``body``, ``headers`` and ``params``
            cache_options: Cache behavior for this call

        Returns:
            Decoded response

        Raises:
            RequestTimeoutError: If the request exceeded the per-request timeout
            RateLimitError: If the dispatch queue is full
            AppError: Classified failure from the network adapter
        """
        options = dict(options or {})
        cache_options = cache_options or CacheOptions()
        method = options.get("method", "GET").upper()

        cache_key = None
        if self.cache is not None and method not in MUTATING_METHODS:
            cache_key = self.cache.generate_key(
                cache_options.cache_type,
                {"url": self.request_url(url, options.get("params")), **cache_options.cache_params},
            )
            if not cache_options.bypass_cache:
                cached = self.cache.get(cache_key)
                if cached is not None:
                    self.metrics.cached_requests += 1
                    coordinator_requests_total.labels(outcome="cached").inc()
                    return cached

        signature = self.generate_signature(url, options)
        pending = self._pending.get(signature)
        if pending is not None:
            self.metrics.deduplicated_requests += 1
            coordinator_requests_total.labels(outcome="deduplicated").inc()
            logger.debug(f"Request deduplicated: {url}")
            return await asyncio.shield(pending)

        future = self._enqueue(signature, url, options, cache_key, cache_options.cache_ttl)
        return await asyncio.shield(future)

    def _enqueue(
        self,
        signature: str,
        url: str,
        options: dict[str, Any],
        cache_key: Optional[str],
        cache_ttl: Optional[float],
    ) -> asyncio.Future:
        if len(self._queue) >= self.config.max_queue_size:
            self.metrics.rejected_requests += 1
            coordinator_requests_total.labels(outcome="rejected").inc()
            logger.warning(f"Request queue full, rejecting {url}")
            raise RateLimitError(
                f"Request queue full ({self.config.max_queue_size} waiting)",
                context={"url": url},
            )

        future = asyncio.get_running_loop().create_future()
        self._pending[signature] = future
        future.add_done_callback(functools.partial(self._settle, signature))

        self._queue.append(
            QueuedRequest(
                signature=signature,
                url=url,
                options=options,
                enqueued_at=self._clock(),
                future=future,
                cache_key=cache_key,
                cache_ttl=cache_ttl,
            )
        )
        coordinator_queue_depth.set(len(self._queue))
        self._ensure_dispatcher()
        return future

    def _settle(self, signature: str, future: asyncio.Future) -> None:
        if self._pending.get(signature) is future:
            del self._pending[signature]
        if not future.cancelled():
            # Mark retrieved; every awaiting caller still receives the error
            future.exception()

    def _ensure_dispatcher(self) -> None:
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.get_running_loop().create_task(self._dispatch_loop())

    async def _dispatch_loop(self) -> None:
        while self._queue:
            if self._active >= self.config.max_concurrent_requests:
                self._slot_freed.clear()
                await self._slot_freed.wait()
                continue

            if self._last_dispatch is not None:
                wait = self.config.request_spacing - (self._clock() - self._last_dispatch)
                if wait > 0:
                    await self._sleep(wait)
                    continue

            request = self._queue.popleft()
            coordinator_queue_depth.set(len(self._queue))
            if request.future.done():
                continue

            self._active += 1
            self._last_dispatch = self._clock()
            self.metrics.total_requests += 1
            task = asyncio.get_running_loop().create_task(self._run(request))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, request: QueuedRequest) -> None:
        try:
            result = await with_async_timeout(
                self._fetcher(request.url, request.options),
                self.config.request_timeout,
                f"Request to {request.url} timed out",
            )
        except asyncio.CancelledError:
            request.future.cancel()
            raise
        except Exception as e:
            self.metrics.failed_requests += 1
            outcome = "timeout" if isinstance(e, RequestTimeoutError) else "failed"
            coordinator_requests_total.labels(outcome=outcome).inc()
            logger.error(f"Request failed for {request.url}: {e}")
            if not request.future.done():
                request.future.set_exception(e)
        else:
            latency = self._clock() - request.enqueued_at
            self.metrics.record_latency(latency)
            coordinator_latency_seconds.observe(latency)
            coordinator_requests_total.labels(outcome="success").inc()
            if self.cache is not None and request.cache_key is not None:
                self.cache.set(request.cache_key, result, request.cache_ttl)
            if not request.future.done():
                request.future.set_result(result)
        finally:
            self._active -= 1
            self._slot_freed.set()

    async def batch_requests(
        self,
        items: Sequence[Union[BatchItem, str]],
        max_concurrent: int = 3,
        delay_between_batches: float = 0.2,
        fail_fast: bool = False,
    ) -> BatchResult:
        """Run requests in sequential groups.

        Each group of at most ``max_concurrent`` items is awaited in full before
        the next one starts.

        Args:
            items: Batch items or plain URLs
            max_concurrent: Group size
            delay_between_batches: Seconds to wait between groups
            fail_fast: Raise the first error instead of collecting it

        Returns:
            BatchResult with results aligned to ``items``
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")

        batch_items = [BatchItem(url=i) if isinstance(i, str) else i for i in items]
        results: list[Any] = [None] * len(batch_items)
        errors: list[tuple[int, BaseException]] = []

        for start in range(0, len(batch_items), max_concurrent):
            group = batch_items[start : start + max_concurrent]
            outcomes = await asyncio.gather(
                *(self._batch_item(start + i, item, fail_fast) for i, item in enumerate(group))
            )
            for index, result, error in outcomes:
                if error is not None:
                    errors.append((index, error))
                else:
                    results[index] = result

            if start + max_concurrent < len(batch_items):
                await asyncio.sleep(delay_between_batches)

        return BatchResult(results=results, errors=errors)

    async def _batch_item(
        self, index: int, item: BatchItem, fail_fast: bool
    ) -> tuple[int, Any, Optional[BaseException]]:
        try:
            result = await self.optimized_fetch(item.url, item.options, item.cache_options)
        except Exception as e:
            if fail_fast:
                raise
            return index, None, e
        return index, result, None

    async def prefetch(self, urls: Sequence[str], priority: str = "low") -> BatchResult:
        """Warm the cache for URLs the user is likely to open next."""
        max_concurrent = 5 if priority == "high" else 2
        return await self.batch_requests(list(urls), max_concurrent=max_concurrent)

    async def retry_request(
        self,
        url: str,
        options: Optional[dict[str, Any]] = None,
        retry_options: Optional[RetryOptions] = None,
        cache_options: Optional[CacheOptions] = None,
    ) -> Any:
        """``optimized_fetch`` with retries for transient failures."""
        return await self.retry_manager.execute_with_retry(
            lambda: self.optimized_fetch(url, options, cache_options),
            self.generate_signature(url, options),
            retry_options,
        )

    def cancel_all_requests(self) -> int:
        """Drop every queued request and clear the dedup map.

        Requests already dispatched keep running until they finish or time out.

        Returns:
            Number of queued requests dropped
        """
        dropped = 0
        while self._queue:
            request = self._queue.popleft()
            if not request.future.done():
                request.future.cancel()
                dropped += 1
        self._pending.clear()
        coordinator_queue_depth.set(0)
        logger.info(f"All pending requests cancelled ({dropped} dropped)")
        return dropped

    def configure(self, **settings) -> None:
        """Update coordinator settings (fields of CoordinatorConfig)."""
        known = {f.name for f in fields(CoordinatorConfig)}
        unknown = set(settings) - known
        if unknown:
            raise ValueError(f"Unknown coordinator settings: {sorted(unknown)}")
        self.config = replace(self.config, **settings)
        if "latency_window" in settings:
            self.metrics.response_times = deque(
                self.metrics.response_times, maxlen=self.config.latency_window
            )
        logger.info(f"Request coordinator configured: {settings}")

    def get_metrics(self) -> dict[str, Any]:
        return {
            **self.metrics.snapshot(),
            "active_requests": self._active,
            "queue_length": len(self._queue),
            "pending_requests": len(self._pending),
        }

    def reset_metrics(self) -> None:
        self.metrics = CoordinatorMetrics(self.config.latency_window)

    async def aclose(self) -> None:
        """Cancel queued and in-flight work and close the fetcher."""
        self.cancel_all_requests()
        tasks = list(self._tasks)
        if self._dispatcher is not None:
            tasks.append(self._dispatcher)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        close = getattr(self._fetcher, "aclose", None)
        if close is not None:
            await close()
