"""Monitoring module for the bill tracker resilience layer.

This module provides:
- Prometheus-style metrics for breakers, retries, caches and the request coordinator
- Text exposition via ``generate_metrics``
"""

from .metrics import (
    Counter,
    Gauge,
    Histogram,
    cache_evictions_total,
    cache_operations_total,
    circuit_breaker_rejections,
    circuit_breaker_transitions,
    coordinator_latency_seconds,
    coordinator_queue_depth,
    coordinator_requests_total,
    fallback_served_total,
    generate_metrics,
    retry_attempts_total,
)

__all__ = [
    "Counter",
    "Gauge",
    "Histogram",
    "circuit_breaker_transitions",
    "circuit_breaker_rejections",
    "retry_attempts_total",
    "fallback_served_total",
    "cache_operations_total",
    "cache_evictions_total",
    "coordinator_requests_total",
    "coordinator_latency_seconds",
    "coordinator_queue_depth",
    "generate_metrics",
]
