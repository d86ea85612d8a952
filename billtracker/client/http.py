"""HTTP network adapter.

All transport, status and decoding failures are classified here, once, into
the error taxonomy. Callers above this boundary only see ``AppError``.
"""

import logging
from typing import Any, Optional

import httpx

from ..errors import to_app_error

logger = logging.getLogger(__name__)


class HttpxFetcher:
    """Performs a request and decodes the JSON response.

    Usage:
        fetcher = HttpxFetcher()
        data = await fetcher("https://example.org/api/bills", {"method": "GET"})
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        dependency: str = "api",
        timeout: float = 30.0,
    ):
        """Initialize the fetcher.

        Args:
            client: Shared client (one is created when omitted)
            dependency: Name used when classifying unknown failures
            timeout: Transport timeout for a created client
        """
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
        )
        self.dependency = dependency

    async def __call__(self, url: str, options: Optional[dict[str, Any]] = None) -> Any:
        options = options or {}
        method = options.get("method", "GET").upper()
        body = options.get("body")
        try:
            response = await self._client.request(
                method,
                url,
                content=body if isinstance(body, (str, bytes)) else None,
                json=body if body is not None and not isinstance(body, (str, bytes)) else None,
                headers=options.get("headers"),
                params=options.get("params"),
            )
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            error = to_app_error(e, dependency=self.dependency)
            logger.debug(f"{method} {url} failed: {error.kind.value}")
            raise error from e

    async def aclose(self) -> None:
        """Close the HTTP client if this fetcher created it."""
        if self._owns_client:
            await self._client.aclose()
