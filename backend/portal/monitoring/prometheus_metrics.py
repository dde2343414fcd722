"""
Prometheus metrics for the nutrition portal.

Service operations are recorded by ``@BaseService.measure_operation``; the mail
dispatcher and the scheduled sweeps record their own domain counters.
"""

from threading import Lock
from typing import Optional, cast

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Custom registry keeps the exposition free of default process collectors
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "portal_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "portal_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "portal_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

mail_queue_total = Counter(
    "portal_mail_queue_total",
    "Mail queue entries by terminal status",
    ["status", "event_type"],
    registry=REGISTRY,
)

mail_queue_attempt_total = Counter(
    "portal_mail_queue_attempt_total",
    "Number of mail delivery attempts",
    ["event_type"],
    registry=REGISTRY,
)

mail_dispatch_seconds = Histogram(
    "portal_mail_dispatch_seconds",
    "Email provider dispatch duration in seconds",
    ["event_type"],
    registry=REGISTRY,
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

invoices_created_total = Counter(
    "portal_invoices_created_total",
    "Invoices created by type",
    ["invoice_type"],
    registry=REGISTRY,
)

sweep_records_total = Counter(
    "portal_sweep_records_total",
    "Records processed by scheduled sweeps",
    ["sweep", "outcome"],
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

    _lock: Lock = Lock()

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'AppointmentService')
            operation: Operation/method name (e.g., 'book_appointment')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Type of error if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def record_mail_attempt(event_type: str) -> None:
        mail_queue_attempt_total.labels(event_type=event_type).inc()

    @staticmethod
    def record_mail_outcome(event_type: str, status: str) -> None:
        mail_queue_total.labels(status=status, event_type=event_type).inc()

    @staticmethod
    def observe_mail_dispatch(event_type: str, duration: float) -> None:
        mail_dispatch_seconds.labels(event_type=event_type).observe(max(duration, 0.0))

    @staticmethod
    def inc_invoice_created(invoice_type: str) -> None:
        invoices_created_total.labels(invoice_type=invoice_type).inc()

    @staticmethod
    def inc_sweep_record(sweep: str, outcome: str) -> None:
        sweep_records_total.labels(sweep=sweep, outcome=outcome).inc()

    @staticmethod
    def get_metrics() -> bytes:
        """Generate Prometheus metrics in exposition format."""
        with PrometheusMetrics._lock:
            return cast(bytes, generate_latest(REGISTRY))

    @staticmethod
    def get_content_type() -> str:
        return cast(str, CONTENT_TYPE_LATEST)


# Singleton instance
prometheus_metrics = PrometheusMetrics()
