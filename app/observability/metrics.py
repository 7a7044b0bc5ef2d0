"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    KIND = "kind"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class GenerationMetrics:
    """
    Centralized metrics for the generation API.

    Covers:
    - HTTP requests (rate, duration, in-flight)
    - Generations (admissions, outcomes, end-to-end duration, poll attempts)
    - Job platform calls (submit / poll outcomes)
    - Billing (charges, charged amounts, transaction-log failures)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "generation_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "generation_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "generation_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            # Synchronous generation requests can block for minutes
            buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0, 60.0, 120.0, 300.0, 600.0),
        )

        # ====================================================================
        # Generation Metrics
        # ====================================================================
        self.generations_admitted_total = Counter(
            "generation_admitted_total",
            "Generations that passed pricing and balance admission",
            [MetricLabels.KIND],
        )

        self.generations_rejected_total = Counter(
            "generation_rejected_total",
            "Generations rejected before any record was created",
            [MetricLabels.KIND, "reason"],
        )

        self.generation_outcomes_total = Counter(
            "generation_outcomes_total",
            "Terminal generation outcomes",
            [MetricLabels.KIND, MetricLabels.OUTCOME],
        )

        self.generation_duration_seconds = Histogram(
            "generation_duration_seconds",
            "Time from submission to terminal outcome",
            [MetricLabels.KIND],
            buckets=(30.0, 60.0, 90.0, 120.0, 180.0, 240.0, 300.0, 420.0, 600.0),
        )

        self.poll_attempts = Histogram(
            "generation_poll_attempts",
            "Poll attempts needed to reach a terminal outcome",
            [MetricLabels.KIND],
            buckets=(1, 2, 3, 5, 8, 10, 12, 15, 20),
        )

        self.generations_in_progress = Gauge(
            "generation_in_progress",
            "Generations currently being polled",
            [MetricLabels.KIND],
        )

        # ====================================================================
        # Job Platform Metrics
        # ====================================================================
        self.job_platform_requests_total = Counter(
            "generation_job_platform_requests_total",
            "Requests to the job platform",
            [MetricLabels.OPERATION, "success"],
        )

        # ====================================================================
        # Billing Metrics
        # ====================================================================
        self.charges_total = Counter(
            "generation_charges_total",
            "Debits attempted after successful generations",
            [MetricLabels.KIND, "success"],
        )

        self.charge_amount = Histogram(
            "generation_charge_amount",
            "Charged amounts in currency units",
            [MetricLabels.KIND],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 10.0),
        )

        self.transaction_log_failures_total = Counter(
            "generation_transaction_log_failures_total",
            "Ledger transaction rows that could not be appended after a balance change",
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "generation_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_rejection(self, kind: str, reason: str) -> None:
        """Record a generation rejected at admission."""
        self.generations_rejected_total.labels(kind=kind, reason=reason).inc()

    def record_outcome(
        self, kind: str, outcome: str, duration: float | None = None, attempts: int | None = None
    ) -> None:
        """Record a terminal generation outcome."""
        self.generation_outcomes_total.labels(kind=kind, outcome=outcome).inc()
        if duration is not None:
            self.generation_duration_seconds.labels(kind=kind).observe(duration)
        if attempts:
            self.poll_attempts.labels(kind=kind).observe(attempts)

    def record_job_platform_request(self, operation: str, success: bool) -> None:
        """Record a submit or poll call to the job platform."""
        self.job_platform_requests_total.labels(operation=operation, success=str(success)).inc()

    def record_charge(self, kind: str, success: bool, amount: float) -> None:
        """Record a post-generation debit."""
        self.charges_total.labels(kind=kind, success=str(success)).inc()
        if success:
            self.charge_amount.labels(kind=kind).observe(amount)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = GenerationMetrics()
