"""
Shared metrics configuration for the scriptable endpoint runtime.
"""

from typing import Dict, Any, Optional
import threading

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._setup_runtime_metrics()

    def _setup_runtime_metrics(self):
        """Set up code-execution and admission-control metrics."""
        self._metrics["executions_total"] = Counter(
            "executions_total",
            "Total user code executions",
            ["language", "outcome"],
            registry=self.registry
        )

        self._metrics["execution_duration_seconds"] = Histogram(
            "execution_duration_seconds",
            "User code execution duration in seconds",
            ["language"],
            registry=self.registry
        )

        self._metrics["admission_rejections_total"] = Counter(
            "admission_rejections_total",
            "Requests rejected before execution",
            ["reason"],
            registry=self.registry
        )

        self._metrics["rate_limit_entries"] = Gauge(
            "rate_limit_entries",
            "Live fixed-window rate limit entries",
            registry=self.registry
        )

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_execution(self, language: str, outcome: str, duration: float):
        """Record one user code execution."""
        self._metrics["executions_total"].labels(language=language, outcome=outcome).inc()
        self._metrics["execution_duration_seconds"].labels(language=language).observe(duration)

    def record_rejection(self, reason: str):
        """Record a request stopped by admission control."""
        self._metrics["admission_rejections_total"].labels(reason=reason).inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        if labels:
            metric = metric.labels(**labels)
        metric.set(value)


_collectors: Dict[str, MetricsCollector] = {}
_collectors_lock = threading.Lock()


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service.

    Collectors are cached per service name unless an explicit registry is
    given, so building several apps in one process does not register the same
    series twice.
    """
    if registry is not None:
        return MetricsCollector(service_name, registry)
    with _collectors_lock:
        collector = _collectors.get(service_name)
        if collector is None:
            collector = MetricsCollector(service_name)
            _collectors[service_name] = collector
        return collector
