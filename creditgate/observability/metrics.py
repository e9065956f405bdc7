"""
Metrics Collection with Prometheus.

Exposes gateway, ledger and payment metrics for monitoring.
"""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

from creditgate.config import settings


class GatewayMetrics:
    """
    Centralized metrics for the CreditGate API.

    Covers:
    - HTTP requests (rate, duration, in-flight)
    - Gateway outcomes and rejection reasons
    - Key verification and rate limiting
    - Ledger debits and credits
    - Payment webhooks and reconciliation
    - Upstream extraction latency
    - Usage recorder queue health
    """

    def __init__(self) -> None:
        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info("creditgate_service", "Service information")
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
            "creditgate_http_requests_total",
            "Total HTTP requests",
            ["endpoint", "method", "status_code"],
        )

        self.http_request_duration_seconds = Histogram(
            "creditgate_http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["endpoint", "method"],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.http_requests_in_progress = Gauge(
            "creditgate_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            ["method"],
        )

        # ====================================================================
        # Gateway Pipeline Metrics
        # ====================================================================
        self.gateway_requests_total = Counter(
            "creditgate_gateway_requests_total",
            "Gateway requests by final outcome",
            ["platform", "outcome"],
        )

        self.gateway_rejections_total = Counter(
            "creditgate_gateway_rejections_total",
            "Gateway rejections by reason code and stage",
            ["reason", "stage"],
        )

        # ====================================================================
        # Key Verification Metrics
        # ====================================================================
        self.key_verifications_total = Counter(
            "creditgate_key_verifications_total",
            "API key verifications by result",
            ["result"],
        )

        self.key_verification_duration_seconds = Histogram(
            "creditgate_key_verification_duration_seconds",
            "API key verification duration in seconds",
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
        )

        self.key_candidates = Histogram(
            "creditgate_key_candidates",
            "Candidate keys sharing a lookup prefix per verification",
            buckets=(0, 1, 2, 3, 5, 10),
        )

        # ====================================================================
        # Rate Limit Metrics
        # ====================================================================
        self.rate_limit_decisions_total = Counter(
            "creditgate_rate_limit_decisions_total",
            "Rate limiter decisions",
            ["stage", "allowed"],
        )

        self.rate_limit_backend_fallbacks_total = Counter(
            "creditgate_rate_limit_backend_fallbacks_total",
            "Rate limit checks answered by the in-process window because Redis failed",
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.ledger_operations_total = Counter(
            "creditgate_ledger_operations_total",
            "Ledger mutations by operation, kind and result",
            ["operation", "kind", "success"],
        )

        self.ledger_operation_duration_seconds = Histogram(
            "creditgate_ledger_operation_duration_seconds",
            "Ledger mutation duration in seconds (includes row lock wait)",
            ["operation"],
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
        )

        self.credits_debited_total = Counter(
            "creditgate_credits_debited_total",
            "Credits debited for served requests",
        )

        self.credits_granted_total = Counter(
            "creditgate_credits_granted_total",
            "Credits granted by kind",
            ["kind"],
        )

        self.accounts_created_total = Counter(
            "creditgate_accounts_created_total",
            "Total accounts created",
        )

        # ====================================================================
        # Payment Metrics
        # ====================================================================
        self.webhook_events_total = Counter(
            "creditgate_webhook_events_total",
            "Payment webhook events by type and result",
            ["event_type", "result"],
        )

        self.webhook_signature_failures_total = Counter(
            "creditgate_webhook_signature_failures_total",
            "Webhook deliveries rejected for failed authenticity checks",
        )

        self.purchases_reconciled_total = Counter(
            "creditgate_purchases_reconciled_total",
            "Payment events reconciled by result",
            ["result"],
        )

        # ====================================================================
        # Upstream Metrics
        # ====================================================================
        self.upstream_request_duration_seconds = Histogram(
            "creditgate_upstream_request_duration_seconds",
            "Content extraction call duration in seconds",
            ["platform", "result"],
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0),
        )

        # ====================================================================
        # Usage Recorder Metrics
        # ====================================================================
        self.usage_queue_depth = Gauge(
            "creditgate_usage_queue_depth",
            "Entries waiting in the usage recorder queue",
        )

        self.usage_entries_written_total = Counter(
            "creditgate_usage_entries_written_total",
            "Usage entries persisted",
        )

        self.usage_entries_dropped_total = Counter(
            "creditgate_usage_entries_dropped_total",
            "Usage entries dropped because the queue was full",
        )

        self.usage_write_failures_total = Counter(
            "creditgate_usage_write_failures_total",
            "Usage recorder batch write failures",
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "creditgate_errors_total",
            "Total errors by type",
            ["error_type", "operation"],
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

    def record_gateway_outcome(self, platform: str, outcome: str) -> None:
        self.gateway_requests_total.labels(platform=platform, outcome=outcome).inc()

    def record_rejection(self, reason: str, stage: str) -> None:
        self.gateway_rejections_total.labels(reason=reason, stage=stage).inc()

    def record_key_verification(self, result: str, candidates: int, duration: float) -> None:
        """Record key verification metrics."""
        self.key_verifications_total.labels(result=result).inc()
        self.key_candidates.observe(candidates)
        self.key_verification_duration_seconds.observe(duration)

    def record_rate_limit(self, stage: str, allowed: bool) -> None:
        self.rate_limit_decisions_total.labels(stage=stage, allowed=str(allowed)).inc()

    def record_ledger_operation(
        self, operation: str, kind: str, success: bool, amount: int, duration: float
    ) -> None:
        """Record a ledger debit or credit."""
        self.ledger_operations_total.labels(
            operation=operation, kind=kind, success=str(success)
        ).inc()
        self.ledger_operation_duration_seconds.labels(operation=operation).observe(duration)
        if success:
            if operation == "debit":
                self.credits_debited_total.inc(amount)
            else:
                self.credits_granted_total.labels(kind=kind).inc(amount)

    def record_webhook_event(self, event_type: str, result: str) -> None:
        self.webhook_events_total.labels(event_type=event_type, result=result).inc()

    def record_upstream_call(self, platform: str, result: str, duration: float) -> None:
        self.upstream_request_duration_seconds.labels(platform=platform, result=result).observe(
            duration
        )

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = GatewayMetrics()


class track_duration:
    """
    Context manager measuring elapsed wall time.

    Usage:
        with track_duration() as timer:
            ...  # work
        metrics.record_upstream_call("tiktok", "success", timer.elapsed)
    """

    def __init__(self) -> None:
        self.start_time: float = 0.0
        self.end_time: float | None = None

    @property
    def elapsed(self) -> float:
        """Seconds since entry; frozen once the block exits."""
        end = self.end_time if self.end_time is not None else time.perf_counter()
        return end - self.start_time

    def __enter__(self) -> "track_duration":
        self.start_time = time.perf_counter()
        self.end_time = None
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        self.end_time = time.perf_counter()
