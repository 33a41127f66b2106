"""
Observability module for the key router.

Provides:
- Per-operation latency percentiles and error counts
- Prometheus exposition through a per-connector registry
- OpenTelemetry spans around put/fetch/remove
- Alert history for critical conditions
"""

import logging
import statistics
import time
from collections import defaultdict, deque
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from opentelemetry import trace
from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

logger = logging.getLogger(__name__)


# ============================================================================
# Metrics
# ============================================================================

class PercentileTracker:
    """
    Track percentile latencies (p50, p95, p99) over a sliding window.
    """

    def __init__(self, window_size: int = 1000, percentiles: list[float] | None = None):
        self.window_size = window_size
        self.percentiles = percentiles or [0.5, 0.95, 0.99]
        self.samples: deque[float] = deque(maxlen=window_size)

    def record(self, value: float):
        self.samples.append(value)

    def get_percentiles(self) -> dict[str, float]:
        """
        Returns:
            Dictionary with keys like "p50", "p95", "p99"
        """
        if not self.samples:
            return {f"p{int(p * 100)}": 0.0 for p in self.percentiles}

        if len(self.samples) == 1:
            only = self.samples[0]
            return {f"p{int(p * 100)}": only for p in self.percentiles}

        cut_points = statistics.quantiles(self.samples, n=100, method="inclusive")
        return {
            f"p{int(p * 100)}": (
                max(self.samples) if p >= 1.0 else cut_points[max(int(p * 100) - 1, 0)]
            )
            for p in self.percentiles
        }

    def get_stats(self) -> dict[str, Any]:
        if not self.samples:
            return {"count": 0, "avg": 0.0, "min": 0.0, "max": 0.0, **self.get_percentiles()}

        return {
            "count": len(self.samples),
            "avg": statistics.mean(self.samples),
            "min": min(self.samples),
            "max": max(self.samples),
            **self.get_percentiles(),
        }


class EnhancedMetrics:
    """
    Metrics for routed operations.

    Tracks:
    - Latency percentiles per operation (put, fetch, remove)
    - Error counts per operation and error type
    - Schema cache hits and misses
    - Tables created by the provisioner
    """

    def __init__(self, service_name: str = "keyrouter", percentiles: list[float] | None = None):
        self.service_name = service_name
        self.percentiles = percentiles or [0.5, 0.95, 0.99]

        self.latencies: dict[str, PercentileTracker] = defaultdict(
            lambda: PercentileTracker(percentiles=self.percentiles)
        )
        self.operation_counts: dict[str, int] = defaultdict(int)
        self.error_counts: dict[str, int] = defaultdict(int)
        self.error_types: dict[str, int] = defaultdict(int)

        self.cache_hits = 0
        self.cache_misses = 0
        self.provisioned_tables = 0

        self.start_time = time.time()

        # One registry per instance so connectors in one process do not share series
        self.registry = CollectorRegistry()
        self._operations = Counter(
            "keyrouter_operations", "Routed operations", ["operation"], registry=self.registry
        )
        self._errors = Counter(
            "keyrouter_errors", "Failed routed operations", ["operation", "error_type"], registry=self.registry
        )
        self._latency = Histogram(
            "keyrouter_operation_latency_seconds", "Routed operation latency", ["operation"], registry=self.registry
        )
        self._schema_cache = Counter(
            "keyrouter_schema_cache_lookups", "Schema cache lookups", ["result"], registry=self.registry
        )
        self._provisioned = Counter(
            "keyrouter_tables_provisioned", "Tables created on demand", registry=self.registry
        )

    def record_operation(
        self,
        operation: str,
        latency_ms: float,
        success: bool = True,
        error_type: str | None = None,
    ):
        """
        Record a routed operation.

        Args:
            operation: Operation type (e.g., 'put', 'fetch', 'remove')
            latency_ms: Latency in milliseconds
            success: Whether the operation succeeded
            error_type: Exception class name if it failed
        """
        self.latencies[operation].record(latency_ms)
        self.operation_counts[operation] += 1
        self._operations.labels(operation=operation).inc()
        self._latency.labels(operation=operation).observe(latency_ms / 1000)

        if not success:
            self.error_counts[operation] += 1
            error_type = error_type or "unknown"
            self.error_types[error_type] += 1
            self._errors.labels(operation=operation, error_type=error_type).inc()

    def record_cache_hit(self):
        self.cache_hits += 1
        self._schema_cache.labels(result="hit").inc()

    def record_cache_miss(self):
        self.cache_misses += 1
        self._schema_cache.labels(result="miss").inc()

    def record_provisioned_table(self):
        self.provisioned_tables += 1
        self._provisioned.inc()

    def get_latency_stats(self, operation: str) -> dict[str, Any]:
        return self.latencies[operation].get_stats()

    def get_all_stats(self) -> dict[str, Any]:
        elapsed_seconds = time.time() - self.start_time
        total_operations = sum(self.operation_counts.values())
        total_errors = sum(self.error_counts.values())
        total_lookups = self.cache_hits + self.cache_misses

        return {
            "uptime_seconds": elapsed_seconds,
            "operations": {
                "total": total_operations,
                "rate_per_sec": total_operations / elapsed_seconds if elapsed_seconds > 0 else 0.0,
                "by_type": dict(self.operation_counts),
            },
            "errors": {
                "total": total_errors,
                "rate": total_errors / total_operations if total_operations > 0 else 0.0,
                "by_operation": dict(self.error_counts),
                "by_type": dict(self.error_types),
            },
            "latencies": {
                operation: tracker.get_stats()
                for operation, tracker in self.latencies.items()
            },
            "schema_cache": {
                "hits": self.cache_hits,
                "misses": self.cache_misses,
                "hit_rate": self.cache_hits / total_lookups if total_lookups > 0 else 0.0,
            },
            "provisioned_tables": self.provisioned_tables,
        }

    def reset(self):
        """Reset in-process counters. Prometheus counters are monotonic and are kept."""
        self.latencies.clear()
        self.operation_counts.clear()
        self.error_counts.clear()
        self.error_types.clear()
        self.cache_hits = 0
        self.cache_misses = 0
        self.provisioned_tables = 0
        self.start_time = time.time()

    def export_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        return generate_latest(self.registry).decode("utf-8")


# ============================================================================
# OpenTelemetry Tracing
# ============================================================================

class Tracer:
    """
    Thin wrapper around an OpenTelemetry tracer.

    Spans are no-ops when disabled. With ``install_provider`` an SDK
    TracerProvider exporting to the console is installed if none is set.
    """

    def __init__(
        self,
        service_name: str = "keyrouter",
        enabled: bool = True,
        install_provider: bool = False,
    ):
        self.service_name = service_name
        self.enabled = enabled
        self._tracer = None

        if enabled:
            if install_provider:
                self._install_sdk_provider()
            self._tracer = trace.get_tracer(__name__)

    def _install_sdk_provider(self):
        from opentelemetry.sdk.resources import SERVICE_NAME, Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

        if isinstance(trace.get_tracer_provider(), TracerProvider):
            logger.info("Using existing OpenTelemetry tracer provider")
            return

        provider = TracerProvider(resource=Resource(attributes={SERVICE_NAME: self.service_name}))
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        trace.set_tracer_provider(provider)
        logger.info(f"OpenTelemetry tracing initialized for {self.service_name}")

    @asynccontextmanager
    async def span(self, name: str, attributes: Optional[dict[str, Any]] = None):
        """
        Create a traced span for an operation.

        Args:
            name: Span name (e.g., "keyrouter.put")
            attributes: Span attributes
        """
        if not self.enabled or self._tracer is None:
            yield None
            return

        with self._tracer.start_as_current_span(name, record_exception=False, set_status_on_exception=False) as span:
            for key, value in (attributes or {}).items():
                span.set_attribute(key, value if isinstance(value, (str, int, float, bool)) else str(value))

            try:
                yield span
                span.set_status(trace.Status(trace.StatusCode.OK))
            except Exception as e:
                span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
                span.record_exception(e)
                raise


# ============================================================================
# Alerting
# ============================================================================

class AlertSeverity(str, Enum):
    """Alert severity levels."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertManager:
    """
    Keeps a bounded history of alerts and logs them immediately.

    Raised for conditions an operator must look at: a failed startup
    connection, or a fully bound key matching more than one row.
    """

    def __init__(self, max_history_size: int = 100):
        self.alert_history: list[dict[str, Any]] = []
        self.max_history_size = max_history_size

    def trigger_alert(
        self,
        severity: AlertSeverity,
        message: str,
        context: Optional[dict[str, Any]] = None,
    ):
        alert_record = {
            "severity": severity.value,
            "message": message,
            "context": context or {},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

        self.alert_history.append(alert_record)
        if len(self.alert_history) > self.max_history_size:
            self.alert_history = self.alert_history[-self.max_history_size:]

        logger.log(
            logging.CRITICAL if severity == AlertSeverity.CRITICAL else logging.WARNING,
            f"ALERT [{severity.value}]: {message} - {context}"
        )

    def get_recent_alerts(self, limit: int = 10) -> list[dict[str, Any]]:
        """Most recent alerts first."""
        return list(reversed(self.alert_history[-limit:]))

    def clear_history(self):
        self.alert_history.clear()
