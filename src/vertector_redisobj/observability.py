"""
Observability module for the Redis object stores.

Provides:
- OpenTelemetry distributed tracing
- Enhanced metrics with percentile latencies
- Prometheus exposition on a private registry
"""

import threading
import time
import logging
import statistics
from typing import Any, Optional
from collections import defaultdict, deque
from contextlib import contextmanager
from enum import Enum

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource, SERVICE_NAME
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

logger = logging.getLogger(__name__)


# ============================================================================
# OpenTelemetry Tracing
# ============================================================================

class TracingProvider(str, Enum):
    """Supported tracing providers."""
    NONE = "none"
    OPENTELEMETRY = "opentelemetry"


class Tracer:
    """
    Tracing interface over the OpenTelemetry API.

    Spans go to whatever tracer provider is installed globally; call
    configure_tracing() to install an SDK provider with an exporter.
    """

    def __init__(self, service_name: str = "vertector-redisobj", enabled: bool = True):
        self.service_name = service_name
        self.enabled = enabled
        self._tracer = trace.get_tracer(__name__) if enabled else None
        self._provider_type = TracingProvider.OPENTELEMETRY if enabled else TracingProvider.NONE

    @contextmanager
    def span(self, name: str, attributes: Optional[dict[str, Any]] = None):
        """
        Create a traced span for an operation.

        Args:
            name: Span name (e.g., "redisobj.write", "redisobj.read")
            attributes: Span attributes (metadata)

        Yields:
            The span, or None when tracing is disabled
        """
        if not self.enabled or self._tracer is None:
            yield None
            return

        with self._tracer.start_as_current_span(
            name,
            record_exception=False,
            set_status_on_exception=False,
        ) as span:
            if attributes:
                for key, value in attributes.items():
                    span.set_attribute(key, value if isinstance(value, (str, int, float, bool)) else str(value))

            try:
                yield span
                span.set_status(trace.Status(trace.StatusCode.OK))
            except Exception as e:
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                span.record_exception(e)
                raise


def configure_tracing(
    service_name: str = "vertector-redisobj",
    exporter: Optional[SpanExporter] = None,
) -> TracerProvider:
    """
    Install an OpenTelemetry SDK tracer provider.

    Args:
        service_name: Service name resource attribute
        exporter: Span exporter (default: console)

    Returns:
        The installed provider
    """
    provider = TracerProvider(resource=Resource(attributes={SERVICE_NAME: service_name}))
    provider.add_span_processor(BatchSpanProcessor(exporter or ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    logger.info(f"OpenTelemetry tracing initialized for {service_name}")
    return provider


# ============================================================================
# Enhanced Metrics
# ============================================================================

class PercentileTracker:
    """
    Track percentile latencies (p50, p95, p99) efficiently.

    Uses a sliding window to avoid unbounded memory growth.
    """

    def __init__(self, window_size: int = 1000, percentiles: list[float] = None):
        """
        Initialize percentile tracker.

        Args:
            window_size: Number of recent samples to keep
            percentiles: Percentiles to track (e.g., [0.5, 0.95, 0.99])
        """
        self.window_size = window_size
        self.percentiles = percentiles or [0.5, 0.95, 0.99]
        self.samples = deque(maxlen=window_size)

    def record(self, value: float):
        """Record a sample."""
        self.samples.append(value)

    def get_percentiles(self) -> dict[str, float]:
        """
        Calculate percentile values.

        Returns:
            Dictionary with keys like "p50", "p95", "p99"
        """
        if not self.samples:
            return {f"p{int(p*100)}": 0.0 for p in self.percentiles}

        if len(self.samples) == 1:
            only = self.samples[0]
            return {f"p{int(p*100)}": only for p in self.percentiles}

        cut_points = statistics.quantiles(self.samples, n=100, method='inclusive')
        return {
            f"p{int(p*100)}": cut_points[min(max(int(p * 100) - 1, 0), 98)]
            for p in self.percentiles
        }

    def get_stats(self) -> dict[str, Any]:
        """
        Get comprehensive statistics.

        Returns:
            Dictionary with percentiles, avg, min, max, count
        """
        if not self.samples:
            return {
                "count": 0,
                "avg": 0.0,
                "min": 0.0,
                "max": 0.0,
                **{f"p{int(p*100)}": 0.0 for p in self.percentiles}
            }

        return {
            "count": len(self.samples),
            "avg": statistics.mean(self.samples),
            "min": min(self.samples),
            "max": max(self.samples),
            **self.get_percentiles()
        }


class EnhancedMetrics:
    """
    Store metrics with percentile latencies and Prometheus export.

    Tracks:
    - Latency percentiles per operation (write, read)
    - Operation and error counts
    - Freshness gate hits (unchanged boundaries) and misses
    - Commands queued per data pipeline
    - Plan compilations

    Safe to share between threads.
    """

    def __init__(self, service_name: str = "redisobj", percentiles: list[float] = None):
        """
        Initialize metrics tracker.

        Args:
            service_name: Service name, used as the Prometheus metric prefix
            percentiles: Percentiles to track (default: [0.5, 0.95, 0.99])
        """
        self.service_name = service_name
        self.percentiles = percentiles or [0.5, 0.95, 0.99]
        self._lock = threading.Lock()
        self.reset()

    def _init_prometheus(self):
        prefix = self.service_name.replace("-", "_")
        self.registry = CollectorRegistry()
        self._operations_total = Counter(
            f"{prefix}_operations", "Store operations", ["operation"], registry=self.registry
        )
        self._errors_total = Counter(
            f"{prefix}_errors", "Failed store operations", ["operation", "error_type"], registry=self.registry
        )
        self._latency_seconds = Histogram(
            f"{prefix}_operation_latency_seconds", "Store operation latency", ["operation"], registry=self.registry
        )
        self._freshness_total = Counter(
            f"{prefix}_freshness_checks", "Freshness gate outcomes", ["outcome"], registry=self.registry
        )
        self._pipeline_commands_total = Counter(
            f"{prefix}_pipeline_commands", "Commands sent in data pipelines", ["operation"], registry=self.registry
        )
        self._compilations_total = Counter(
            f"{prefix}_plan_compilations", "Record plans compiled", registry=self.registry
        )

    def record_latency(self, operation: str, latency_ms: float):
        """Record operation latency in milliseconds."""
        with self._lock:
            self.latencies[operation].record(latency_ms)
            self.operation_counts[operation] += 1
        self._operations_total.labels(operation=operation).inc()
        self._latency_seconds.labels(operation=operation).observe(latency_ms / 1000)

    def record_error(self, operation: str, error_type: str = "unknown"):
        """Record operation error."""
        with self._lock:
            self.error_counts[operation] += 1
            self.error_types[error_type] += 1
        self._errors_total.labels(operation=operation, error_type=error_type).inc()

    def record_query(self, operation: str, latency_ms: float, success: bool = True, error_type: str | None = None):
        """
        Record a completed store call.

        Args:
            operation: Operation type ('write' or 'read')
            latency_ms: Call latency in milliseconds
            success: Whether the call succeeded
            error_type: Type of error if the call failed
        """
        self.record_latency(operation, latency_ms)
        if not success:
            self.record_error(operation, error_type or "unknown")

    def record_freshness(self, hits: int, misses: int):
        """Record freshness gate outcomes for one call."""
        with self._lock:
            self.cache_hits += hits
            self.cache_misses += misses
        if hits:
            self._freshness_total.labels(outcome="hit").inc(hits)
        if misses:
            self._freshness_total.labels(outcome="miss").inc(misses)

    def record_pipeline(self, operation: str, commands: int):
        """Record the size of a data pipeline."""
        with self._lock:
            self.pipeline_count += 1
            self.pipeline_command_count += commands
        self._pipeline_commands_total.labels(operation=operation).inc(commands)

    def record_compilation(self):
        """Record a plan compilation."""
        with self._lock:
            self.plan_compilations += 1
        self._compilations_total.inc()

    def get_latency_stats(self, operation: str) -> dict[str, Any]:
        """Get latency statistics for a specific operation."""
        with self._lock:
            return self.latencies[operation].get_stats()

    def get_all_stats(self) -> dict[str, Any]:
        """
        Get all metrics.

        Returns:
            Comprehensive metrics dictionary
        """
        with self._lock:
            elapsed_seconds = time.time() - self.start_time

            total_operations = sum(self.operation_counts.values())
            total_errors = sum(self.error_counts.values())

            total_checks = self.cache_hits + self.cache_misses
            cache_hit_rate = (
                self.cache_hits / total_checks
                if total_checks > 0
                else 0.0
            )

            error_rate = (
                total_errors / total_operations
                if total_operations > 0
                else 0.0
            )

            return {
                "uptime_seconds": elapsed_seconds,
                "operations": {
                    "total": total_operations,
                    "rate_per_sec": total_operations / elapsed_seconds if elapsed_seconds > 0 else 0.0,
                    "by_type": dict(self.operation_counts),
                },
                "errors": {
                    "total": total_errors,
                    "rate": error_rate,
                    "by_type": dict(self.error_counts),
                    "by_error": dict(self.error_types),
                },
                "latencies": {
                    operation: tracker.get_stats()
                    for operation, tracker in self.latencies.items()
                },
                "cache": {
                    "hits": self.cache_hits,
                    "misses": self.cache_misses,
                    "hit_rate": cache_hit_rate,
                },
                "pipelines": {
                    "count": self.pipeline_count,
                    "commands": self.pipeline_command_count,
                },
                "plans": {
                    "compilations": self.plan_compilations,
                },
            }

    def reset(self):
        """Reset all metrics, including the Prometheus registry."""
        with self._lock:
            self.latencies: dict[str, PercentileTracker] = defaultdict(
                lambda: PercentileTracker(percentiles=self.percentiles)
            )
            self.operation_counts: dict[str, int] = defaultdict(int)
            self.error_counts: dict[str, int] = defaultdict(int)
            self.error_types: dict[str, int] = defaultdict(int)
            self.cache_hits = 0
            self.cache_misses = 0
            self.pipeline_count = 0
            self.pipeline_command_count = 0
            self.plan_compilations = 0
            self.start_time = time.time()
            self._init_prometheus()

    def export_prometheus(self) -> str:
        """
        Export metrics in Prometheus text format.

        Returns:
            Prometheus exposition text
        """
        return generate_latest(self.registry).decode("utf-8")
