"""AI bill summaries through the Anthropic API, protected by the resilience layer."""

import logging
from typing import Optional

import anthropic
from anthropic import AsyncAnthropic

from ..cache.result_cache import ResultCache
from ..errors import (
    AppError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
    ServiceUnavailableError,
    UpstreamError,
    ValidationError,
)
from ..resilience.executor import ProtectedResult, ResilientExecutor
from ..resilience.fallback import generate_fallback_summary
from ..resilience.retry import RetryOptions
from ..resilience.timeout import AI_SERVICE_TIMEOUT, with_async_timeout

logger = logging.getLogger(__name__)

DEPENDENCY = "ai_service"
STALE_MESSAGE = "This summary may be outdated due to AI service issues"

READING_LEVELS = {
    "high-level": (
        "Summarize this bill in 2-3 plain-language sentences for a general audience. "
        "Focus on what the bill would change."
    ),
    "detailed": (
        "Summarize this bill in detail for an informed reader. Cover its main provisions, "
        "who it affects, and notable definitions or deadlines."
    ),
}


def classify_anthropic_error(exc: anthropic.APIError) -> AppError:
    """Map an Anthropic SDK exception to the error taxonomy."""
    message = str(exc) or type(exc).__name__
    context = {"dependency": DEPENDENCY, "cause": type(exc).__name__}

    # APITimeoutError subclasses APIConnectionError
    if isinstance(exc, anthropic.APITimeoutError):
        return RequestTimeoutError(message, context=context)
    if isinstance(exc, anthropic.APIConnectionError):
        return NetworkError(message, context=context)
    if isinstance(exc, anthropic.RateLimitError):
        return RateLimitError(message, context=context)
    if isinstance(exc, anthropic.APIStatusError) and exc.status_code in (500, 502, 503, 504, 529):
        return ServiceUnavailableError(message, context=context)
    return UpstreamError(message, dependency=DEPENDENCY, context=context)


class SummaryService:
    """Generates bill summaries with caching, retries and graceful degradation."""

    def __init__(
        self,
        executor: ResilientExecutor,
        client: Optional[AsyncAnthropic] = None,
        api_key: str = "",
        model: str = "claude-3-5-sonnet-20241022",
        timeout: float = AI_SERVICE_TIMEOUT,
        max_tokens: int = 1024,
        retry_options: Optional[RetryOptions] = None,
    ):
        """Initialize summary service.

        Args:
            executor: Protected-call pipeline for the AI dependency
            client: Anthropic client (created on first use when omitted)
            api_key: Anthropic API key for a created client
            model: Model name
            timeout: Per-call timeout in seconds
            max_tokens: Response token limit
            retry_options: Retry options for AI calls
        """
        self.executor = executor
        self._owns_client = client is None
        self._client = client
        self._api_key = api_key
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.retry_options = retry_options or executor.retry_manager.options(
            max_retries=3, base_delay=2.0
        )

    @property
    def cache(self) -> Optional[ResultCache]:
        return self.executor.cache

    def _get_client(self) -> AsyncAnthropic:
        if self._client is None:
            self._client = AsyncAnthropic(api_key=self._api_key)
        return self._client

    async def aclose(self) -> None:
        """Close the Anthropic client if this service created it."""
        if self._owns_client and self._client is not None:
            await self._client.close()
            self._client = None

    @staticmethod
    def cache_key(bill_id: str, reading_level: str) -> str:
        return ResultCache.generate_key("summary", {"billId": bill_id, "readingLevel": reading_level})

    async def generate_summary(
        self,
        bill_id: str,
        bill_text: str,
        reading_level: str = "high-level",
    ) -> ProtectedResult:
        """Generate or retrieve a summary for a bill.

        Args:
            bill_id: Bill identifier
            bill_text: Full bill text
            reading_level: ``high-level`` or ``detailed``

        Returns:
            ProtectedResult whose value is the summary text

        Raises:
            ValidationError: If inputs are missing or the reading level is unknown
        """
        if not bill_id or not bill_text:
            raise ValidationError("Bill ID and text are required")
        if reading_level not in READING_LEVELS:
            raise ValidationError(f"Invalid reading level: {reading_level}")

        result = await self.executor.run(
            lambda: self._call_model(bill_text, reading_level),
            f"summary-{bill_id}-{reading_level}",
            cache_key=self.cache_key(bill_id, reading_level),
            retry_options=self.retry_options,
            degraded=lambda error: generate_fallback_summary(bill_text, reading_level),
            stale_message=STALE_MESSAGE,
        )
        logger.info(f"Summary for bill {bill_id} ({reading_level}) served from {result.source.value}")
        return result

    async def _call_model(self, bill_text: str, reading_level: str) -> str:
        prompt = f"{READING_LEVELS[reading_level]}\n\nBill text:\n{bill_text}"
        try:
            response = await with_async_timeout(
                self._get_client().messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    messages=[{"role": "user", "content": prompt}],
                ),
                self.timeout,
                "AI summary request timed out",
            )
        except anthropic.APIError as e:
            raise classify_anthropic_error(e) from e

        summary = "".join(getattr(block, "text", "") for block in response.content).strip()
        if not summary:
            raise UpstreamError("AI service returned an empty summary", dependency=DEPENDENCY)
        return summary

    def clear_cache(self, bill_id: Optional[str] = None) -> int:
        """Drop cached summaries for one bill, or all summaries.

        Returns:
            Number of entries removed
        """
        if self.cache is None:
            return 0
        if bill_id is None:
            return self.cache.clear_by_type("summary")
        return sum(self.cache.delete(self.cache_key(bill_id, level)) for level in READING_LEVELS)
