"""Retry with exponential backoff.

Provides automatic retry for transient failures with:
- Configurable retry count
- Exponential backoff with additive jitter
- Pluggable retry predicate (defaults to transient error kinds)
- Per-key cumulative attempt counters for introspection
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Optional, TypeVar

from ..errors import is_retryable
from ..monitoring.metrics import retry_attempts_total

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryOptions:
    """Configuration for retry behavior."""

    max_retries: int = 3  # Retries after the first attempt
    base_delay: float = 1.0  # Base delay in seconds
    max_delay: float = 30.0  # Maximum delay in seconds
    jitter: float = 1.0  # Upper bound of the random delay added, in seconds
    retry_condition: Callable[[BaseException], bool] = field(default=is_retryable)


def calculate_backoff(attempt: int, options: RetryOptions) -> float:
    """Calculate backoff delay for a retry attempt.

    Args:
        attempt: Current attempt number (0-indexed)
        options: Retry options

    Returns:
        Delay in seconds
    """
    delay = options.base_delay * (2**attempt) + random.uniform(0, options.jitter)
    return min(delay, options.max_delay)


class RetryManager:
    """Executes operations with bounded retries.

    Attempt counters are bookkeeping only. Concurrent calls sharing a key run
    independently; compose with the request coordinator when a key needs
    single-flight semantics.
    """

    def __init__(
        self,
        default_options: Optional[RetryOptions] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize retry manager.

        Args:
            default_options: Options used when a call passes none
            sleep: Coroutine used for backoff delays
        """
        self.default_options = default_options or RetryOptions()
        self._sleep = sleep
        self._attempts: dict[str, int] = {}

    def options(self, **overrides) -> RetryOptions:
        """Build options from the defaults with some fields overridden."""
        return replace(self.default_options, **overrides)

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        key: str,
        options: Optional[RetryOptions] = None,
    ) -> T:
        """Execute an operation, retrying transient failures.

        Args:
            operation: Zero-argument callable returning an awaitable
            key: Operation key for attempt bookkeeping
            options: Retry options (defaults to the manager's)

        Returns:
            The operation's result

        Raises:
            Exception: The last error, unchanged, once retries are exhausted
                or the retry condition rejects it
        """
        opts = options or self.default_options
        previous_attempts = self._attempts.get(key, 0)

        for attempt in range(opts.max_retries + 1):
            try:
                result = await operation()
            except Exception as e:
                if not opts.retry_condition(e):
                    self._attempts[key] = previous_attempts + attempt + 1
                    retry_attempts_total.labels(outcome="non_retryable").inc()
                    logger.warning(f"Non-retryable error for {key}: {e}")
                    raise

                if attempt == opts.max_retries:
                    self._attempts[key] = previous_attempts + attempt + 1
                    retry_attempts_total.labels(outcome="exhausted").inc()
                    logger.error(f"All {opts.max_retries + 1} attempts failed for {key}: {e}")
                    raise

                delay = calculate_backoff(attempt, opts)
                retry_attempts_total.labels(outcome="retried").inc()
                logger.warning(
                    f"Attempt {attempt + 1}/{opts.max_retries + 1} failed for {key}: {e}. "
                    f"Retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
            else:
                self._attempts.pop(key, None)
                retry_attempts_total.labels(outcome="success").inc()
                return result

        # range() always runs at least once and every branch returns or raises
        raise RuntimeError("unreachable")

    def get_retry_count(self, key: str) -> int:
        """Cumulative failed attempts recorded for a key since its last success."""
        return self._attempts.get(key, 0)

    def reset_retry_count(self, key: str) -> None:
        self._attempts.pop(key, None)

    def tracked_keys(self) -> list[str]:
        return list(self._attempts)
