"""Client-side request optimization.

This module provides:
- RequestCoordinator: dedup, bounded FIFO dispatch, spacing and timeouts
- HttpxFetcher: the network adapter that classifies failures
"""

from .coordinator import (
    BatchItem,
    BatchResult,
    CacheOptions,
    CoordinatorConfig,
    CoordinatorMetrics,
    RequestCoordinator,
)
from .http import HttpxFetcher

__all__ = [
    "RequestCoordinator",
    "CoordinatorConfig",
    "CoordinatorMetrics",
    "CacheOptions",
    "BatchItem",
    "BatchResult",
    "HttpxFetcher",
]
