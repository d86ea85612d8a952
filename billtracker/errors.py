"""Error taxonomy for the bill tracker resilience layer.

Every failure that crosses a network adapter is classified exactly once into an
``ErrorKind``. Everything downstream (retry predicates, fallback decisions,
HTTP status mapping) switches on the kind instead of inspecting messages.
"""

import asyncio
import socket
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import httpx


class ErrorKind(str, Enum):
    """Closed set of error kinds."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMIT = "RATE_LIMIT"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    SERVER_ERROR = "SERVER_ERROR"  # Unclassified / programming errors


HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.RATE_LIMIT: 429,
    ErrorKind.TIMEOUT: 408,
    ErrorKind.NETWORK_ERROR: 502,
    ErrorKind.SERVICE_UNAVAILABLE: 503,
    ErrorKind.UPSTREAM_ERROR: 503,
    ErrorKind.SERVER_ERROR: 500,
}

USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.VALIDATION_ERROR: "The request contains invalid data. Please check your input and try again.",
    ErrorKind.NOT_FOUND: "The requested resource was not found.",
    ErrorKind.RATE_LIMIT: "Too many requests. Please wait a moment and try again.",
    ErrorKind.TIMEOUT: "The request timed out. Please try again.",
    ErrorKind.NETWORK_ERROR: "Network error occurred. Please check your connection and try again.",
    ErrorKind.SERVICE_UNAVAILABLE: "The service is temporarily unavailable. Please try again later.",
    ErrorKind.UPSTREAM_ERROR: "An external service is temporarily unavailable. Please try again later.",
    ErrorKind.SERVER_ERROR: "An internal server error occurred. Please try again later.",
}

RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.NETWORK_ERROR,
        ErrorKind.TIMEOUT,
        ErrorKind.SERVICE_UNAVAILABLE,
        ErrorKind.RATE_LIMIT,
    }
)


class AppError(Exception):
    """Base error carrying a classified kind and optional context."""

    kind: ErrorKind = ErrorKind.SERVER_ERROR

    def __init__(
        self,
        message: str = "",
        kind: Optional[ErrorKind] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        if kind is not None:
            self.kind = kind
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.kind]

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self.kind]

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_dict(self, debug: bool = False) -> dict[str, Any]:
        """Serialize for a client-facing error body.

        Args:
            debug: Include the internal message and context

        Returns:
            JSON-serializable dictionary
        """
        body: dict[str, Any] = {
            "success": False,
            "error": self.user_message,
            "type": self.kind.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if debug:
            body["message"] = str(self)
            body["context"] = self.context
        return body


class ValidationError(AppError):
    kind = ErrorKind.VALIDATION_ERROR


class NotFoundError(AppError):
    kind = ErrorKind.NOT_FOUND


class RateLimitError(AppError):
    kind = ErrorKind.RATE_LIMIT

    def __init__(self, message: str = "", retry_after: float = 0.0, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class RequestTimeoutError(AppError):
    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str = "", timeout: float = 0.0, **kwargs):
        super().__init__(message, **kwargs)
        self.timeout = timeout


class NetworkError(AppError):
    kind = ErrorKind.NETWORK_ERROR


class ServiceUnavailableError(AppError):
    kind = ErrorKind.SERVICE_UNAVAILABLE


class CircuitOpenError(ServiceUnavailableError):
    """Raised by a circuit breaker that is rejecting calls."""


class UpstreamError(AppError):
    kind = ErrorKind.UPSTREAM_ERROR

    def __init__(self, message: str = "", dependency: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.dependency = dependency


_KIND_TO_ERROR: dict[ErrorKind, type[AppError]] = {
    ErrorKind.VALIDATION_ERROR: ValidationError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.RATE_LIMIT: RateLimitError,
    ErrorKind.TIMEOUT: RequestTimeoutError,
    ErrorKind.NETWORK_ERROR: NetworkError,
    ErrorKind.SERVICE_UNAVAILABLE: ServiceUnavailableError,
    ErrorKind.UPSTREAM_ERROR: UpstreamError,
    ErrorKind.SERVER_ERROR: AppError,
}


def _classify_status(status_code: int) -> ErrorKind:
    if status_code == 429:
        return ErrorKind.RATE_LIMIT
    if status_code in (502, 503, 504):
        return ErrorKind.SERVICE_UNAVAILABLE
    if status_code == 404:
        return ErrorKind.NOT_FOUND
    if status_code in (400, 422):
        return ErrorKind.VALIDATION_ERROR
    return ErrorKind.UPSTREAM_ERROR


def classify_error(exc: BaseException) -> ErrorKind:
    """Classify an exception into an ErrorKind.

    Args:
        exc: Exception raised by a dependency or adapter

    Returns:
        The matching error kind
    """
    if isinstance(exc, AppError):
        return exc.kind
    if isinstance(exc, httpx.TimeoutException):
        return ErrorKind.TIMEOUT
    if isinstance(exc, httpx.HTTPStatusError):
        return _classify_status(exc.response.status_code)
    if isinstance(exc, httpx.TransportError):
        return ErrorKind.NETWORK_ERROR
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT
    # Connection reset/refused and DNS lookup failures
    if isinstance(exc, (ConnectionError, socket.gaierror)):
        return ErrorKind.NETWORK_ERROR
    return ErrorKind.SERVER_ERROR


def is_retryable(exc: BaseException) -> bool:
    """Default retry predicate: true for transient error kinds."""
    return classify_error(exc) in RETRYABLE_KINDS


def to_app_error(exc: BaseException, dependency: Optional[str] = None) -> AppError:
    """Wrap an arbitrary exception in the AppError subclass for its kind.

    AppError instances are returned unchanged.
    """
    if isinstance(exc, AppError):
        return exc

    kind = classify_error(exc)
    if kind == ErrorKind.SERVER_ERROR and dependency is not None:
        kind = ErrorKind.UPSTREAM_ERROR

    context: dict[str, Any] = {"cause": type(exc).__name__}
    if dependency is not None:
        context["dependency"] = dependency
    message = str(exc) or type(exc).__name__

    error_cls = _KIND_TO_ERROR[kind]
    if error_cls is UpstreamError:
        return UpstreamError(message, dependency=dependency, context=context)
    return error_cls(message, kind=kind, context=context)


def error_response(exc: BaseException, debug: bool = False) -> tuple[int, dict[str, Any]]:
    """Map an exception to an HTTP status and JSON body.

    Args:
        exc: Any exception
        debug: Include internal details in the body

    Returns:
        Tuple of (status_code, body)
    """
    error = to_app_error(exc)
    return error.status_code, error.to_dict(debug=debug)
