"""Tests for client-side request coordination."""

import asyncio

import pytest
from unittest.mock import AsyncMock

from billtracker.cache.result_cache import ResultCache
from billtracker.client.coordinator import (
    BatchItem,
    CacheOptions,
    CoordinatorConfig,
    RequestCoordinator,
)
from billtracker.errors import NetworkError, RateLimitError, RequestTimeoutError
from billtracker.resilience.retry import RetryManager

FAST = CoordinatorConfig(request_spacing=0)


class GatedFetcher:
    """Fetcher whose calls block until the gate opens."""

    def __init__(self):
        self.gate = asyncio.Event()
        self.calls = []
        self.active = 0
        self.max_active = 0

    async def __call__(self, url, options):
        self.calls.append(url)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await self.gate.wait()
        finally:
            self.active -= 1
        if url.endswith("/bad"):
            raise NetworkError("connection reset")
        return {"url": url}


async def settle():
    """Let queued tasks run until they block."""
    for _ in range(10):
        await asyncio.sleep(0)


class TestDeduplication:
    """Test identical in-flight requests share one network call."""

    @pytest.mark.asyncio
    async def test_identical_requests_share_call(self):
        """Test concurrent identical requests trigger one fetch."""
        fetcher = GatedFetcher()
        coordinator = RequestCoordinator(fetcher, config=FAST)

        first = asyncio.create_task(coordinator.optimized_fetch("/api/bills"))
        second = asyncio.create_task(coordinator.optimized_fetch("/api/bills"))
        await settle()
        assert coordinator.pending_requests == 1

        fetcher.gate.set()
        assert await first == {"url": "/api/bills"}
        assert await second == {"url": "/api/bills"}

        assert fetcher.calls == ["/api/bills"]
        assert coordinator.metrics.deduplicated_requests == 1
        assert coordinator.pending_requests == 0

    @pytest.mark.asyncio
    async def test_error_reaches_every_waiter(self):
        """Test a failed shared call fails every caller."""
        fetcher = GatedFetcher()
        coordinator = RequestCoordinator(fetcher, config=FAST)

        tasks = [asyncio.create_task(coordinator.optimized_fetch("/api/bad")) for _ in range(3)]
        await settle()
        fetcher.gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, NetworkError) for r in results)
        assert len(fetcher.calls) == 1
        assert coordinator.metrics.failed_requests == 1

    @pytest.mark.asyncio
    async def test_different_bodies_not_deduplicated(self):
        """Test signature includes method and body."""
        fetcher = GatedFetcher()
        coordinator = RequestCoordinator(fetcher, config=FAST)

        tasks = [
            asyncio.create_task(coordinator.optimized_fetch("/api/search", {"method": "POST", "body": {"q": q}}))
            for q in ("water", "schools")
        ]
        await settle()
        fetcher.gate.set()
        await asyncio.gather(*tasks)

        assert len(fetcher.calls) == 2

    @pytest.mark.asyncio
    async def test_different_params_not_deduplicated(self):
        """Test concurrent GETs for different pages each get their own response."""
        fetcher = AsyncMock(side_effect=lambda url, options: {"page": options["params"]["page"]})
        coordinator = RequestCoordinator(fetcher, config=FAST)

        first, second = await asyncio.gather(
            coordinator.optimized_fetch("/api/bills", {"params": {"page": 1}}),
            coordinator.optimized_fetch("/api/bills", {"params": {"page": 2}}),
        )

        assert first == {"page": 1}
        assert second == {"page": 2}
        assert fetcher.await_count == 2
        assert coordinator.metrics.deduplicated_requests == 0

    def test_signature(self):
        """Test request identity string."""
        assert RequestCoordinator.generate_signature("/api/bills") == "GET:/api/bills:"
        assert (
            RequestCoordinator.generate_signature("/a", {"method": "post", "body": {"b": 2, "a": 1}})
            == 'POST:/a:{"a": 1, "b": 2}'
        )

    def test_signature_includes_sorted_params(self):
        """Test query params are part of the identity regardless of order."""
        signature = RequestCoordinator.generate_signature(
            "/api/bills", {"params": {"session": "89R", "page": 2}}
        )

        assert signature == "GET:/api/bills?page=2&session=89R:"
        assert signature == RequestCoordinator.generate_signature(
            "/api/bills", {"params": {"page": 2, "session": "89R"}}
        )


class TestDispatch:
    """Test concurrency limit, queue bound and timeouts."""

    @pytest.mark.asyncio
    async def test_concurrency_limit(self):
        """Test no more than max_concurrent_requests run at once."""
        fetcher = GatedFetcher()
        coordinator = RequestCoordinator(
            fetcher, config=CoordinatorConfig(max_concurrent_requests=2, request_spacing=0)
        )

        tasks = [asyncio.create_task(coordinator.optimized_fetch(f"/api/bills/{i}")) for i in range(5)]
        await settle()
        assert coordinator.active_requests == 2
        assert coordinator.queue_length == 3

        fetcher.gate.set()
        await asyncio.gather(*tasks)

        assert fetcher.max_active == 2
        assert len(fetcher.calls) == 5
        assert coordinator.active_requests == 0

    @pytest.mark.asyncio
    async def test_fifo_order(self):
        """Test queued requests are dispatched in arrival order."""
        fetcher = GatedFetcher()
        fetcher.gate.set()
        coordinator = RequestCoordinator(
            fetcher, config=CoordinatorConfig(max_concurrent_requests=1, request_spacing=0)
        )

        urls = [f"/api/bills/{i}" for i in range(4)]
        await asyncio.gather(*(coordinator.optimized_fetch(u) for u in urls))

        assert fetcher.calls == urls

    @pytest.mark.asyncio
    async def test_request_spacing(self, clock):
        """Test successive dispatches are at least request_spacing apart."""
        started = []
        sleeps = []

        async def fetcher(url, options):
            started.append(clock())
            return {"url": url}

        async def fake_sleep(delay):
            sleeps.append(delay)
            # Let dispatched requests reach the fetcher before time moves
            await settle()
            clock.advance(delay)

        coordinator = RequestCoordinator(
            fetcher,
            config=CoordinatorConfig(max_concurrent_requests=3, request_spacing=0.5),
            clock=clock,
            sleep=fake_sleep,
        )

        await asyncio.gather(*(coordinator.optimized_fetch(f"/api/bills/{i}") for i in range(3)))

        assert len(started) == 3
        assert all(later - earlier >= 0.5 for earlier, later in zip(started, started[1:]))
        assert sleeps == [0.5, 0.5]

    @pytest.mark.asyncio
    async def test_full_queue_rejects(self):
        """Test backpressure when the queue is full."""
        fetcher = GatedFetcher()
        coordinator = RequestCoordinator(
            fetcher,
            config=CoordinatorConfig(max_concurrent_requests=1, request_spacing=0, max_queue_size=1),
        )

        first = asyncio.create_task(coordinator.optimized_fetch("/a"))
        await settle()
        second = asyncio.create_task(coordinator.optimized_fetch("/b"))
        await settle()
        assert coordinator.queue_length == 1

        with pytest.raises(RateLimitError):
            await coordinator.optimized_fetch("/c")
        assert coordinator.metrics.rejected_requests == 1

        fetcher.gate.set()
        assert await first == {"url": "/a"}
        assert await second == {"url": "/b"}

    @pytest.mark.asyncio
    async def test_request_timeout(self):
        """Test slow requests fail with a timeout error."""

        async def slow(url, options):
            await asyncio.sleep(1)

        coordinator = RequestCoordinator(
            slow, config=CoordinatorConfig(request_spacing=0, request_timeout=0.01)
        )

        with pytest.raises(RequestTimeoutError):
            await coordinator.optimized_fetch("/api/bills")

        assert coordinator.metrics.failed_requests == 1
        assert coordinator.active_requests == 0

    @pytest.mark.asyncio
    async def test_cancel_all_requests(self):
        """Test queued requests are dropped and their callers cancelled."""
        fetcher = GatedFetcher()
        coordinator = RequestCoordinator(
            fetcher, config=CoordinatorConfig(max_concurrent_requests=1, request_spacing=0)
        )

        running = asyncio.create_task(coordinator.optimized_fetch("/a"))
        await settle()
        queued = [asyncio.create_task(coordinator.optimized_fetch(u)) for u in ("/b", "/c")]
        await settle()

        assert coordinator.cancel_all_requests() == 2
        assert coordinator.queue_length == 0
        assert coordinator.pending_requests == 0

        for task in queued:
            with pytest.raises(asyncio.CancelledError):
                await task

        fetcher.gate.set()
        assert await running == {"url": "/a"}
        assert fetcher.calls == ["/a"]


class TestCaching:
    """Test the client cache short-circuit."""

    @pytest.mark.asyncio
    async def test_get_served_from_cache(self, clock):
        """Test repeated GETs hit the cache under the lookup key."""
        fetcher = AsyncMock(return_value=[{"id": "hb1"}])
        cache = ResultCache(clock=clock)
        coordinator = RequestCoordinator(fetcher, cache=cache, config=FAST)
        options = CacheOptions(cache_type="bills")

        await coordinator.optimized_fetch("/api/bills", cache_options=options)
        result = await coordinator.optimized_fetch("/api/bills", cache_options=options)

        assert result == [{"id": "hb1"}]
        assert fetcher.await_count == 1
        assert coordinator.metrics.cached_requests == 1
        assert cache.has(ResultCache.generate_key("bills", {"url": "/api/bills"}))

    @pytest.mark.asyncio
    async def test_params_cached_separately(self, clock):
        """Test a cached page is not served for a different page."""
        fetcher = AsyncMock(side_effect=lambda url, options: {"page": options["params"]["page"]})
        cache = ResultCache(clock=clock)
        coordinator = RequestCoordinator(fetcher, cache=cache, config=FAST)

        page_one = await coordinator.optimized_fetch("/api/bills", {"params": {"page": 1}})
        page_two = await coordinator.optimized_fetch("/api/bills", {"params": {"page": 2}})
        again = await coordinator.optimized_fetch("/api/bills", {"params": {"page": 2}})

        assert page_one == {"page": 1}
        assert page_two == {"page": 2}
        assert again == {"page": 2}
        assert fetcher.await_count == 2
        assert cache.has(ResultCache.generate_key("default", {"url": "/api/bills?page=2"}))

    @pytest.mark.asyncio
    async def test_bypass_cache(self, clock):
        """Test bypass skips the lookup but refreshes the entry."""
        fetcher = AsyncMock(side_effect=[["old"], ["new"]])
        cache = ResultCache(clock=clock)
        coordinator = RequestCoordinator(fetcher, cache=cache, config=FAST)

        await coordinator.optimized_fetch("/api/bills")
        result = await coordinator.optimized_fetch("/api/bills", cache_options=CacheOptions(bypass_cache=True))

        assert result == ["new"]
        assert await coordinator.optimized_fetch("/api/bills") == ["new"]

    @pytest.mark.asyncio
    async def test_mutations_not_cached(self, clock):
        """Test POST requests bypass the cache entirely."""
        fetcher = AsyncMock(return_value={"saved": True})
        cache = ResultCache(clock=clock)
        coordinator = RequestCoordinator(fetcher, cache=cache, config=FAST)

        for _ in range(2):
            await coordinator.optimized_fetch("/api/bills", {"method": "POST", "body": {"id": "hb1"}})

        assert fetcher.await_count == 2
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_hit_rate(self, clock):
        """Test hit rate counts cached and deduplicated requests."""
        coordinator = RequestCoordinator(
            AsyncMock(return_value=[]), cache=ResultCache(clock=clock), config=FAST
        )

        await coordinator.optimized_fetch("/api/bills")
        await coordinator.optimized_fetch("/api/bills")

        metrics = coordinator.get_metrics()
        assert metrics["total_requests"] == 1
        assert metrics["cached_requests"] == 1
        assert metrics["hit_rate"] == 50.0
        assert metrics["average_response_time"] >= 0


class TestBatching:
    """Test batch, prefetch and retry helpers."""

    @staticmethod
    async def fetcher(url, options):
        if url == "/bad":
            raise NetworkError("down")
        return url.upper()

    @pytest.mark.asyncio
    async def test_batch_collects_errors(self):
        """Test results align with inputs and errors are indexed."""
        coordinator = RequestCoordinator(self.fetcher, config=FAST)

        result = await coordinator.batch_requests(
            ["/a", BatchItem(url="/bad"), "/c"], max_concurrent=2, delay_between_batches=0
        )

        assert result.results == ["/A", None, "/C"]
        assert [index for index, _ in result.errors] == [1]
        assert isinstance(result.errors[0][1], NetworkError)
        assert result.success_count == 2
        assert result.error_count == 1

    @pytest.mark.asyncio
    async def test_batch_fail_fast(self):
        """Test fail_fast raises the first error."""
        coordinator = RequestCoordinator(self.fetcher, config=FAST)

        with pytest.raises(NetworkError):
            await coordinator.batch_requests(["/bad", "/a"], fail_fast=True)

    @pytest.mark.asyncio
    async def test_batch_invalid_group_size(self):
        """Test group size must be positive."""
        coordinator = RequestCoordinator(self.fetcher, config=FAST)
        with pytest.raises(ValueError):
            await coordinator.batch_requests(["/a"], max_concurrent=0)

    @pytest.mark.asyncio
    async def test_prefetch(self):
        """Test prefetch fetches every URL."""
        coordinator = RequestCoordinator(self.fetcher, config=FAST)
        result = await coordinator.prefetch(["/a", "/b", "/c"], priority="high")
        assert result.results == ["/A", "/B", "/C"]

    @pytest.mark.asyncio
    async def test_retry_request(self, instant_sleep):
        """Test transient failures are retried through the coordinator."""
        fetcher = AsyncMock(side_effect=[NetworkError("reset"), {"ok": True}])
        coordinator = RequestCoordinator(
            fetcher, config=FAST, retry_manager=RetryManager(sleep=instant_sleep)
        )

        assert await coordinator.retry_request("/api/bills") == {"ok": True}
        assert fetcher.await_count == 2


class TestConfiguration:
    """Test runtime configuration and lifecycle."""

    def test_configure(self):
        """Test known settings are applied."""
        coordinator = RequestCoordinator(AsyncMock())
        coordinator.configure(max_concurrent_requests=5, latency_window=10)

        assert coordinator.config.max_concurrent_requests == 5
        assert coordinator.metrics.response_times.maxlen == 10

    def test_configure_unknown_setting(self):
        """Test unknown settings are rejected."""
        with pytest.raises(ValueError):
            RequestCoordinator(AsyncMock()).configure(max_parallel=5)

    def test_latency_window_bounded(self):
        """Test the rolling latency window keeps the newest samples."""
        coordinator = RequestCoordinator(AsyncMock(), config=CoordinatorConfig(latency_window=3))
        for latency in (1.0, 2.0, 3.0, 4.0):
            coordinator.metrics.record_latency(latency)

        assert list(coordinator.metrics.response_times) == [2.0, 3.0, 4.0]
        assert coordinator.metrics.average_response_time == 3.0

        coordinator.reset_metrics()
        assert coordinator.get_metrics()["total_requests"] == 0

    @pytest.mark.asyncio
    async def test_aclose_closes_fetcher(self):
        """Test shutdown closes the network adapter."""
        fetcher = AsyncMock(return_value={})
        coordinator = RequestCoordinator(fetcher, config=FAST)
        await coordinator.optimized_fetch("/api/bills")

        await coordinator.aclose()

        fetcher.aclose.assert_awaited_once()
