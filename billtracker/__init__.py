"""Bill tracker: resilience and request optimization for a legislative bill tracker."""

__version__ = "0.1.0"

from .bootstrap import ResilienceServices, build_client_coordinator, build_services
from .client import RequestCoordinator
from .resilience import CircuitBreaker, FallbackStore, ResilientExecutor, RetryManager
from .services import NewsService, SummaryService

__all__ = [
    "ResilienceServices",
    "build_services",
    "build_client_coordinator",
    "RequestCoordinator",
    "CircuitBreaker",
    "RetryManager",
    "FallbackStore",
    "ResilientExecutor",
    "SummaryService",
    "NewsService",
]
