"""Timeout wrappers for external calls."""

import asyncio
import logging
from typing import Awaitable, TypeVar

from ..errors import RequestTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Pre-configured timeouts for the guarded dependencies
AI_SERVICE_TIMEOUT = 30.0
NEWS_SERVICE_TIMEOUT = 15.0
CLIENT_REQUEST_TIMEOUT = 15.0


async def with_async_timeout(
    coro: Awaitable[T],
    timeout_seconds: float,
    error_message: str = "Operation timed out",
) -> T:
    """Execute a coroutine with a hard timeout.

    The coroutine is cancelled when the timeout expires.

    Args:
        coro: Awaitable to execute
        timeout_seconds: Timeout in seconds
        error_message: Error message prefix for the timeout

    Returns:
        Awaitable result

    Raises:
        RequestTimeoutError: If the timeout is exceeded
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout_seconds)
    except asyncio.TimeoutError:
        logger.warning(f"{error_message} after {timeout_seconds}s")
        raise RequestTimeoutError(
            f"{error_message} after {timeout_seconds}s",
            timeout=timeout_seconds,
        ) from None
