"""
Prometheus metrics for the booking lifecycle engine.

Service timings come from the @measure_operation decorator; the domain
counters below are fed directly by the lifecycle, gateway and sweep code.
"""

from threading import Lock
from time import monotonic
from typing import Optional, cast

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "consultcore_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "consultcore_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "consultcore_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

booking_transitions_total = Counter(
    "consultcore_booking_transitions_total",
    "Booking status transitions applied",
    ["from_status", "to_status", "trigger"],
    registry=REGISTRY,
)

booking_lock_total = Counter(
    "consultcore_booking_lock_total",
    "Booking lock operations by outcome",
    ["action", "outcome"],
    registry=REGISTRY,
)

gateway_calls_total = Counter(
    "consultcore_gateway_calls_total",
    "Payment gateway calls by outcome",
    ["gateway", "operation", "outcome"],
    registry=REGISTRY,
)

gateway_call_duration_seconds = Histogram(
    "consultcore_gateway_call_duration_seconds",
    "Payment gateway call duration in seconds",
    ["gateway", "operation"],
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

refunds_total = Counter(
    "consultcore_refunds_total",
    "Refund attempts on cancellation by outcome",
    ["gateway", "outcome"],
    registry=REGISTRY,
)

sweep_actions_total = Counter(
    "consultcore_sweep_actions_total",
    "Lifecycle sweep actions by kind and outcome",
    ["action", "outcome"],
    registry=REGISTRY,
)

sweep_duration_seconds = Histogram(
    "consultcore_sweep_duration_seconds",
    "Lifecycle sweep duration in seconds",
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 240.0),
)

outbox_dispatch_total = Counter(
    "consultcore_outbox_dispatch_total",
    "Lifecycle outbox events by delivery outcome",
    ["event_type", "status"],
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

    _cache_lock: Lock = Lock()
    _cache_payload: Optional[bytes] = None
    _cache_ts: Optional[float] = None
    _cache_ttl_seconds: float = 1.0

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """Record service operation metrics from @measure_operation decorator."""
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_transition(from_status: str, to_status: str, trigger: str) -> None:
        booking_transitions_total.labels(
            from_status=from_status, to_status=to_status, trigger=trigger
        ).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_booking_lock(action: str, outcome: str) -> None:
        booking_lock_total.labels(action=action, outcome=outcome).inc()

    @staticmethod
    def record_gateway_call(gateway: str, operation: str, outcome: str, duration: float) -> None:
        gateway_calls_total.labels(gateway=gateway, operation=operation, outcome=outcome).inc()
        gateway_call_duration_seconds.labels(gateway=gateway, operation=operation).observe(
            max(duration, 0.0)
        )
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_refund(gateway: str, outcome: str) -> None:
        refunds_total.labels(gateway=gateway, outcome=outcome).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_sweep_action(action: str, outcome: str) -> None:
        sweep_actions_total.labels(action=action, outcome=outcome).inc()

    @staticmethod
    def observe_sweep(duration: float) -> None:
        sweep_duration_seconds.observe(max(duration, 0.0))
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def record_outbox_outcome(event_type: str, status: str) -> None:
        outbox_dispatch_total.labels(event_type=event_type, status=status).inc()

    @staticmethod
    def get_metrics() -> bytes:
        """Generate Prometheus metrics in exposition format."""
        now = monotonic()
        payload = PrometheusMetrics._cache_payload
        ts = PrometheusMetrics._cache_ts
        if payload is not None and ts is not None and (now - ts) <= PrometheusMetrics._cache_ttl_seconds:
            return payload

        with PrometheusMetrics._cache_lock:
            PrometheusMetrics._cache_payload = cast(bytes, generate_latest(REGISTRY))
            PrometheusMetrics._cache_ts = monotonic()
            return PrometheusMetrics._cache_payload

    @staticmethod
    def get_content_type() -> str:
        return cast(str, CONTENT_TYPE_LATEST)

    @staticmethod
    def _invalidate_cache() -> None:
        with PrometheusMetrics._cache_lock:
            PrometheusMetrics._cache_ts = None
            PrometheusMetrics._cache_payload = None


# Singleton instance
prometheus_metrics = PrometheusMetrics()
