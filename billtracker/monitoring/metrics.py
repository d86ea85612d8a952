"""Prometheus-style metrics for the bill tracker resilience layer.

Metrics exposed in Prometheus text format through ``generate_metrics()``:
- Circuit breaker metrics: transitions and rejections per breaker
- Retry metrics: retry attempts by outcome
- Cache metrics: hits/misses/sets per cache, evictions
- Fallback metrics: stale and degraded responses served
- Coordinator metrics: requests by outcome, latency, queue depth
"""

import logging
import threading
from typing import Optional

logger = logging.getLogger(__name__)


# =============================================================================
# Metric Classes (Lightweight implementation without prometheus_client dependency)
# =============================================================================


class _Metric:
    """Shared label handling for all metric types."""

    metric_type = "untyped"

    def __init__(self, name: str, description: str, labels: Optional[list[str]] = None):
        self.name = name
        self.description = description
        self._label_names = labels or []
        self._lock = threading.Lock()

    def _label_values(self, kwargs: dict) -> tuple:
        return tuple(str(kwargs.get(l, "")) for l in self._label_names)

    def _format_labels(self, label_values: tuple, extra: str = "") -> str:
        parts = [f'{l}="{v}"' for l, v in zip(self._label_names, label_values)]
        if extra:
            parts.append(extra)
        return "{" + ",".join(parts) + "}" if parts else ""

    def _header(self) -> list[str]:
        return [
            f"# HELP {self.name} {self.description}",
            f"# TYPE {self.name} {self.metric_type}",
        ]


class Counter(_Metric):
    """A counter metric that can only increase."""

    metric_type = "counter"

    def __init__(self, name: str, description: str, labels: Optional[list[str]] = None):
        super().__init__(name, description, labels)
        self._values: dict[tuple, float] = {}

    def labels(self, **kwargs) -> "_BoundCounter":
        """Return a counter with specific labels."""
        return _BoundCounter(self, self._label_values(kwargs))

    def inc(self, value: float = 1.0) -> None:
        """Increment the counter."""
        self._inc((), value)

    def _inc(self, label_values: tuple, value: float) -> None:
        if value < 0:
            raise ValueError("Counters can only increase")
        with self._lock:
            self._values[label_values] = self._values.get(label_values, 0) + value

    def get(self, **kwargs) -> float:
        """Get the current value for a label set."""
        with self._lock:
            return self._values.get(self._label_values(kwargs), 0)

    def get_all(self) -> dict[tuple, float]:
        """Get all values."""
        with self._lock:
            return self._values.copy()

    def to_prometheus(self) -> str:
        """Format as Prometheus text."""
        lines = self._header()
        with self._lock:
            for label_values, value in self._values.items():
                lines.append(f"{self.name}{self._format_labels(label_values)} {value}")
        return "\n".join(lines)


class _BoundCounter:
    def __init__(self, parent: Counter, label_values: tuple):
        self._parent = parent
        self._label_values = label_values

    def inc(self, value: float = 1.0) -> None:
        self._parent._inc(self._label_values, value)


class Gauge(_Metric):
    """A gauge metric that can increase or decrease."""

    metric_type = "gauge"

    def __init__(self, name: str, description: str, labels: Optional[list[str]] = None):
        super().__init__(name, description, labels)
        self._values: dict[tuple, float] = {}

    def labels(self, **kwargs) -> "_BoundGauge":
        """Return a gauge with specific labels."""
        return _BoundGauge(self, self._label_values(kwargs))

    def set(self, value: float) -> None:
        """Set the gauge value."""
        self._set((), value)

    def inc(self, value: float = 1.0) -> None:
        self._add((), value)

    def dec(self, value: float = 1.0) -> None:
        self._add((), -value)

    def _set(self, label_values: tuple, value: float) -> None:
        with self._lock:
            self._values[label_values] = value

    def _add(self, label_values: tuple, value: float) -> None:
        with self._lock:
            self._values[label_values] = self._values.get(label_values, 0) + value

    def get(self, **kwargs) -> float:
        with self._lock:
            return self._values.get(self._label_values(kwargs), 0)

    def get_all(self) -> dict[tuple, float]:
        """Get all values."""
        with self._lock:
            return self._values.copy()

    def to_prometheus(self) -> str:
        """Format as Prometheus text."""
        lines = self._header()
        with self._lock:
            for label_values, value in self._values.items():
                lines.append(f"{self.name}{self._format_labels(label_values)} {value}")
        return "\n".join(lines)


class _BoundGauge:
    def __init__(self, parent: Gauge, label_values: tuple):
        self._parent = parent
        self._label_values = label_values

    def set(self, value: float) -> None:
        self._parent._set(self._label_values, value)

    def inc(self, value: float = 1.0) -> None:
        self._parent._add(self._label_values, value)

    def dec(self, value: float = 1.0) -> None:
        self._parent._add(self._label_values, -value)


class Histogram(_Metric):
    """A histogram metric for tracking distributions."""

    metric_type = "histogram"
    DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)

    def __init__(
        self,
        name: str,
        description: str,
        labels: Optional[list[str]] = None,
        buckets: Optional[tuple] = None,
    ):
        super().__init__(name, description, labels)
        self.buckets = buckets or self.DEFAULT_BUCKETS
        self._observations: dict[tuple, list[float]] = {}

    def labels(self, **kwargs) -> "_BoundHistogram":
        """Return a histogram with specific labels."""
        return _BoundHistogram(self, self._label_values(kwargs))

    def observe(self, value: float) -> None:
        """Record an observation."""
        self._observe((), value)

    def _observe(self, label_values: tuple, value: float) -> None:
        with self._lock:
            self._observations.setdefault(label_values, []).append(value)

    def get_all(self) -> dict[tuple, list[float]]:
        """Get all observations."""
        with self._lock:
            return {k: v.copy() for k, v in self._observations.items()}

    def to_prometheus(self) -> str:
        """Format as Prometheus text."""
        lines = self._header()
        with self._lock:
            for label_values, observations in self._observations.items():
                for bucket in self.buckets:
                    bucket_count = sum(1 for o in observations if o <= bucket)
                    labels = self._format_labels(label_values, f'le="{bucket}"')
                    lines.append(f"{self.name}_bucket{labels} {bucket_count}")
                labels = self._format_labels(label_values, 'le="+Inf"')
                lines.append(f"{self.name}_bucket{labels} {len(observations)}")
                plain = self._format_labels(label_values)
                lines.append(f"{self.name}_sum{plain} {sum(observations)}")
                lines.append(f"{self.name}_count{plain} {len(observations)}")
        return "\n".join(lines)


class _BoundHistogram:
    def __init__(self, parent: Histogram, label_values: tuple):
        self._parent = parent
        self._label_values = label_values

    def observe(self, value: float) -> None:
        self._parent._observe(self._label_values, value)


# =============================================================================
# Circuit Breaker Metrics
# =============================================================================

circuit_breaker_transitions = Counter(
    name="billtracker_circuit_breaker_transitions_total",
    description="Circuit breaker state transitions",
    labels=["breaker", "state"],
)

circuit_breaker_rejections = Counter(
    name="billtracker_circuit_breaker_rejections_total",
    description="Calls rejected while a circuit breaker was open",
    labels=["breaker"],
)


# =============================================================================
# Retry / Fallback Metrics
# =============================================================================

retry_attempts_total = Counter(
    name="billtracker_retry_attempts_total",
    description="Operation attempts made by the retry manager",
    labels=["outcome"],
)

fallback_served_total = Counter(
    name="billtracker_fallback_served_total",
    description="Responses served from fallback or degraded payloads",
    labels=["source"],
)


# =============================================================================
# Cache Metrics
# =============================================================================

cache_operations_total = Counter(
    name="billtracker_cache_operations_total",
    description="Cache lookups and writes",
    labels=["cache", "result"],
)

cache_evictions_total = Counter(
    name="billtracker_cache_evictions_total",
    description="Entries evicted to respect the cache capacity",
    labels=["cache"],
)


# =============================================================================
# Request Coordinator Metrics
# =============================================================================

coordinator_requests_total = Counter(
    name="billtracker_coordinator_requests_total",
    description="Requests seen by the request coordinator",
    labels=["outcome"],
)

coordinator_latency_seconds = Histogram(
    name="billtracker_coordinator_latency_seconds",
    description="Dispatched request latency in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0),
)

coordinator_queue_depth = Gauge(
    name="billtracker_coordinator_queue_depth",
    description="Requests waiting for a dispatch slot",
)


# =============================================================================
# Metrics Registry
# =============================================================================

_ALL_METRICS = [
    circuit_breaker_transitions,
    circuit_breaker_rejections,
    retry_attempts_total,
    fallback_served_total,
    cache_operations_total,
    cache_evictions_total,
    coordinator_requests_total,
    coordinator_latency_seconds,
    coordinator_queue_depth,
]


def generate_metrics() -> str:
    """Generate all metrics in Prometheus text format."""
    output = []
    for metric in _ALL_METRICS:
        prometheus_text = metric.to_prometheus()
        if prometheus_text.strip():
            output.append(prometheus_text)
    return "\n\n".join(output)
