"""Composition root: builds the process-wide resilience services from settings."""

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import httpx
from anthropic import AsyncAnthropic

from .cache.persistent import FileSnapshotStorage, PersistentResultCache
from .cache.result_cache import CacheRegistry, ResultCache
from .client.coordinator import CoordinatorConfig, RequestCoordinator
from .client.http import HttpxFetcher
from .config import Settings
from .errors import error_response
from .resilience.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from .resilience.executor import ResilientExecutor
from .resilience.fallback import FallbackStore
from .resilience.retry import RetryManager, RetryOptions
from .services.news import NewsService
from .services.summary import SummaryService

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

SCRAPER = "scraper"
AI_SERVICE = "ai_service"
NEWS_SERVICE = "news_service"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for the process."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


@dataclass
class ResilienceServices:
    """Everything the server side shares across requests."""

    settings: Settings
    breakers: CircuitBreakerRegistry
    retry_manager: RetryManager
    fallback_store: FallbackStore
    caches: CacheRegistry
    scraper: ResilientExecutor
    summary_service: SummaryService
    news_service: NewsService

    def start(self) -> None:
        """Start background cache sweeps on the running loop."""
        self.caches.start()
        logger.info("Resilience services started")

    async def stop(self) -> None:
        """Stop background work and close network clients."""
        await self.caches.stop()
        await self.news_service.fetcher.aclose()
        await self.summary_service.aclose()
        logger.info("Resilience services stopped")

    def error_response(self, exc: BaseException) -> tuple[int, dict[str, Any]]:
        """Status and body for a failed request, with internals only in debug mode."""
        return error_response(exc, debug=self.settings.debug)

    def health(self) -> dict[str, Any]:
        """Health report: ``healthy`` only while every breaker is closed."""
        statuses = self.breakers.get_all_status()
        degraded = [name for name, s in statuses.items() if s["state"] != CircuitState.CLOSED.value]
        return {
            "status": "degraded" if degraded else "healthy",
            "degraded_services": degraded,
            "circuit_breakers": statuses,
            "cache": self.caches.get_stats(),
            "fallback_entries": len(self.fallback_store),
        }


def build_services(
    settings: Optional[Settings] = None,
    *,
    anthropic_client: Optional[AsyncAnthropic] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ResilienceServices:
    """Build the server-side services.

    Args:
        settings: Settings (read from the environment when omitted)
        anthropic_client: Client for the AI summarizer
        http_client: Client for the news API
        clock: Wall-clock time source shared by breakers, caches and the fallback store
        sleep: Coroutine used for retry backoff

    Returns:
        Wired ResilienceServices
    """
    settings = settings or Settings()

    breakers = CircuitBreakerRegistry(clock=clock)
    scraper_breaker = breakers.register(
        SCRAPER,
        CircuitBreakerConfig(
            failure_threshold=settings.scraper_failure_threshold,
            reset_timeout=settings.scraper_reset_timeout,
        ),
    )
    ai_breaker = breakers.register(
        AI_SERVICE,
        CircuitBreakerConfig(
            failure_threshold=settings.ai_failure_threshold,
            reset_timeout=settings.ai_reset_timeout,
        ),
    )
    news_breaker = breakers.register(
        NEWS_SERVICE,
        CircuitBreakerConfig(
            failure_threshold=settings.news_failure_threshold,
            reset_timeout=settings.news_reset_timeout,
        ),
    )

    retry_manager = RetryManager(
        RetryOptions(
            max_retries=settings.retry_max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        ),
        sleep=sleep,
    )
    fallback_store = FallbackStore(ttl=settings.fallback_ttl, clock=clock)
    caches = CacheRegistry(
        max_entries=settings.cache_max_entries,
        cleanup_interval=settings.cache_cleanup_interval,
        clock=clock,
    )

    summary_service = SummaryService(
        ResilientExecutor(ai_breaker, retry_manager, fallback_store, caches.summary),
        client=anthropic_client,
        api_key=settings.anthropic_api_key,
        model=settings.claude_model,
        timeout=settings.ai_request_timeout,
        max_tokens=settings.summary_max_tokens,
    )
    news_service = NewsService(
        ResilientExecutor(news_breaker, retry_manager, fallback_store, caches.news),
        fetcher=HttpxFetcher(http_client, dependency=NEWS_SERVICE, timeout=settings.news_request_timeout),
        api_key=settings.news_api_key,
        api_url=settings.news_api_url,
        max_articles=settings.news_max_articles,
        timeout=settings.news_request_timeout,
    )

    return ResilienceServices(
        settings=settings,
        breakers=breakers,
        retry_manager=retry_manager,
        fallback_store=fallback_store,
        caches=caches,
        scraper=ResilientExecutor(scraper_breaker, retry_manager, fallback_store, caches.response),
        summary_service=summary_service,
        news_service=news_service,
    )


def build_client_coordinator(
    settings: Optional[Settings] = None,
    fetcher: Optional[HttpxFetcher] = None,
    clock: Callable[[], float] = time.time,
) -> RequestCoordinator:
    """Build the client-side request coordinator.

    The client cache persists its snapshot when ``cache_snapshot_dir`` is set.
    """
    settings = settings or Settings()

    cache: ResultCache
    if settings.cache_snapshot_dir:
        cache = PersistentResultCache(
            FileSnapshotStorage(Path(settings.cache_snapshot_dir)),
            max_entries=settings.cache_max_entries,
            default_ttl=settings.cache_default_ttl,
            cleanup_interval=settings.cache_cleanup_interval,
            clock=clock,
        )
    else:
        cache = ResultCache(
            "client",
            max_entries=settings.cache_max_entries,
            default_ttl=settings.cache_default_ttl,
            cleanup_interval=settings.cache_cleanup_interval,
            clock=clock,
        )

    return RequestCoordinator(
        fetcher or HttpxFetcher(dependency="api", timeout=settings.request_timeout),
        cache=cache,
        config=CoordinatorConfig(
            max_concurrent_requests=settings.max_concurrent_requests,
            request_spacing=settings.request_spacing,
            request_timeout=settings.request_timeout,
            max_queue_size=settings.max_queue_size,
        ),
    )
