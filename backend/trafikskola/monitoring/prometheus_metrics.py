# backend/trafikskola/monitoring/prometheus_metrics.py
"""
Prometheus metrics for the booking backend.

Service timings come from the @measure_operation decorator; the remaining
counters are recorded explicitly at the points where the booking engine
makes a decision worth watching (rejections, allocator fallbacks, gateway
outcomes, slot locks).
"""

from typing import Optional

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
    "trafikskola_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "trafikskola_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "trafikskola_errors_total",
    "Total number of errors by type",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

booking_outcomes_total = Counter(
    "trafikskola_booking_outcomes_total",
    "Booking creation outcomes by payment method and result",
    ["payment_method", "outcome"],
    registry=REGISTRY,
)

teacher_allocations_total = Counter(
    "trafikskola_teacher_allocations_total",
    "Teacher allocation results by strategy",
    ["strategy"],
    registry=REGISTRY,
)

gateway_requests_total = Counter(
    "trafikskola_gateway_requests_total",
    "Payment gateway calls by operation and outcome",
    ["operation", "outcome"],
    registry=REGISTRY,
)

slot_lock_events_total = Counter(
    "trafikskola_slot_lock_events_total",
    "Slot lock acquire/release events",
    ["action", "result"],
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Thin recording facade so callers never touch metric objects directly."""

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def record_booking_outcome(payment_method: str, outcome: str) -> None:
        booking_outcomes_total.labels(payment_method=payment_method, outcome=outcome).inc()

    @staticmethod
    def record_teacher_allocation(strategy: str) -> None:
        teacher_allocations_total.labels(strategy=strategy).inc()

    @staticmethod
    def record_gateway_request(operation: str, outcome: str) -> None:
        gateway_requests_total.labels(operation=operation, outcome=outcome).inc()

    @staticmethod
    def record_slot_lock(action: str, result: str) -> None:
        slot_lock_events_total.labels(action=action, result=result).inc()

    @staticmethod
    def get_metrics() -> bytes:
        return generate_latest(REGISTRY)


prometheus_metrics = PrometheusMetrics()

__all__ = ["CONTENT_TYPE_LATEST", "REGISTRY", "prometheus_metrics", "PrometheusMetrics"]
