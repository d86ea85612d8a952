"""Tests for the AI summary service."""

import asyncio

import anthropic
import httpx
import pytest
from unittest.mock import AsyncMock, Mock, patch

from billtracker.cache.result_cache import ResultCache
from billtracker.errors import (
    ErrorKind,
    ValidationError,
)
from billtracker.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from billtracker.resilience.executor import ResilientExecutor, ResultSource
from billtracker.resilience.fallback import FallbackStore
from billtracker.resilience.retry import RetryManager
from billtracker.services.summary import STALE_MESSAGE, SummaryService, classify_anthropic_error

REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def status_error(cls, status_code):
    return cls("error", response=httpx.Response(status_code, request=REQUEST), body=None)


@pytest.fixture
def anthropic_client():
    """Mock Anthropic client returning one text block."""
    client = Mock()
    client.messages.create = AsyncMock(
        return_value=Mock(content=[Mock(text="HB 12 funds school broadband.")])
    )
    return client


@pytest.fixture
def make_service(clock, instant_sleep, anthropic_client):
    """Factory for summary services on simulated time."""

    def factory(cache=True):
        executor = ResilientExecutor(
            CircuitBreaker("ai_service-test", CircuitBreakerConfig(failure_threshold=5), clock=clock),
            RetryManager(sleep=instant_sleep),
            FallbackStore(clock=clock),
            ResultCache("summary", default_ttl=1800, clock=clock) if cache else None,
        )
        return SummaryService(executor, client=anthropic_client, model="claude-test", timeout=1.0)

    return factory


class TestGenerateSummary:
    """Test summary generation through the protected pipeline."""

    @pytest.mark.asyncio
    async def test_live_summary(self, make_service, anthropic_client, sample_bill):
        """Test a successful model call."""
        service = make_service()

        result = await service.generate_summary("hb12", sample_bill["billText"])

        assert result.value == "HB 12 funds school broadband."
        assert result.source == ResultSource.LIVE
        kwargs = anthropic_client.messages.create.await_args.kwargs
        assert kwargs["model"] == "claude-test"
        assert sample_bill["billText"] in kwargs["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_repeat_served_from_cache(self, make_service, anthropic_client, sample_bill):
        """Test the summary cache short-circuits the second call."""
        service = make_service()

        await service.generate_summary("hb12", sample_bill["billText"])
        result = await service.generate_summary("hb12", sample_bill["billText"])

        assert result.source == ResultSource.CACHE
        assert anthropic_client.messages.create.await_count == 1

    @pytest.mark.asyncio
    async def test_reading_levels_cached_separately(self, make_service, anthropic_client, sample_bill):
        """Test each reading level has its own cache entry."""
        service = make_service()

        await service.generate_summary("hb12", sample_bill["billText"], "high-level")
        await service.generate_summary("hb12", sample_bill["billText"], "detailed")

        assert anthropic_client.messages.create.await_count == 2
        assert service.clear_cache("hb12") == 2

    @pytest.mark.asyncio
    async def test_invalid_input(self, make_service, anthropic_client, sample_bill):
        """Test validation errors are raised before any call."""
        service = make_service()

        with pytest.raises(ValidationError):
            await service.generate_summary("hb12", sample_bill["billText"], "expert")
        with pytest.raises(ValidationError):
            await service.generate_summary("hb12", "")

        anthropic_client.messages.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stale_fallback_after_outage(self, make_service, anthropic_client, sample_bill):
        """Test last good summary is served with a note."""
        service = make_service()
        await service.generate_summary("hb12", sample_bill["billText"])
        service.clear_cache("hb12")

        anthropic_client.messages.create.side_effect = anthropic.APIConnectionError(request=REQUEST)
        result = await service.generate_summary("hb12", sample_bill["billText"])

        assert result.source == ResultSource.FALLBACK
        assert result.value == f"HB 12 funds school broadband. [Note: {STALE_MESSAGE}]"
        # 1 success + 4 attempts with max_retries=3
        assert anthropic_client.messages.create.await_count == 5

    @pytest.mark.asyncio
    async def test_degraded_summary_from_bill_text(self, make_service, anthropic_client, sample_bill):
        """Test leading sentences are used when nothing was stored."""
        service = make_service()
        anthropic_client.messages.create.side_effect = status_error(anthropic.RateLimitError, 429)

        result = await service.generate_summary("hb12", sample_bill["billText"])

        assert result.source == ResultSource.DEGRADED
        assert result.value == (
            "This Act establishes a grant program for public school broadband access. "
            "The agency shall award grants to districts with limited connectivity."
        )

    @pytest.mark.asyncio
    async def test_empty_response_not_retried(self, make_service, anthropic_client, sample_bill):
        """Test an empty model response is an upstream error."""
        service = make_service()
        anthropic_client.messages.create.return_value = Mock(content=[])

        result = await service.generate_summary("hb12", sample_bill["billText"])

        assert result.source == ResultSource.DEGRADED
        assert anthropic_client.messages.create.await_count == 1

    @pytest.mark.asyncio
    async def test_timeout_counts_one_breaker_failure(self, make_service, anthropic_client, sample_bill):
        """Test slow model calls time out, retry, then degrade."""

        async def slow(**kwargs):
            await asyncio.sleep(1)

        anthropic_client.messages.create.side_effect = slow
        service = make_service()
        service.timeout = 0.01

        result = await service.generate_summary("hb12", sample_bill["billText"])

        assert result.source == ResultSource.DEGRADED
        assert service.executor.breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_clear_all_summaries(self, make_service, sample_bill):
        """Test clearing every cached summary."""
        service = make_service()
        await service.generate_summary("hb12", sample_bill["billText"])
        await service.generate_summary("sb3", sample_bill["billText"])

        assert service.clear_cache() == 2

    def test_clear_cache_without_cache(self, make_service):
        """Test clearing when caching is disabled."""
        assert make_service(cache=False).clear_cache() == 0

    def test_client_created_lazily(self):
        """Test the Anthropic client is built on first use."""
        executor = ResilientExecutor(CircuitBreaker("lazy"), RetryManager(), FallbackStore())
        with patch("billtracker.services.summary.AsyncAnthropic") as mock_anthropic:
            service = SummaryService(executor, api_key="test-api-key")
            mock_anthropic.assert_not_called()

            assert service._get_client() is mock_anthropic.return_value
            mock_anthropic.assert_called_once_with(api_key="test-api-key")


class TestClassifyAnthropicError:
    """Test Anthropic SDK errors map to the taxonomy."""

    @pytest.mark.parametrize(
        "error,kind",
        [
            (anthropic.APITimeoutError(request=REQUEST), ErrorKind.TIMEOUT),
            (anthropic.APIConnectionError(request=REQUEST), ErrorKind.NETWORK_ERROR),
            (status_error(anthropic.RateLimitError, 429), ErrorKind.RATE_LIMIT),
            (status_error(anthropic.APIStatusError, 529), ErrorKind.SERVICE_UNAVAILABLE),
            (status_error(anthropic.InternalServerError, 500), ErrorKind.SERVICE_UNAVAILABLE),
            (status_error(anthropic.BadRequestError, 400), ErrorKind.UPSTREAM_ERROR),
            (status_error(anthropic.AuthenticationError, 401), ErrorKind.UPSTREAM_ERROR),
        ],
    )
    def test_classification(self, error, kind):
        """Test each SDK error class."""
        classified = classify_anthropic_error(error)
        assert classified.kind == kind
        assert classified.context["dependency"] == "ai_service"
