"""
Metrics Collection with Prometheus.

Exposes generation pipeline and system metrics for monitoring.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

from timeline_ai.config import settings


class GenerationMetrics:
    """
    Centralized metrics for the Timeline AI generation API.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Pipeline stages (outcome, duration)
    - Provider calls (rate, retries, failures)
    - Content cache lookups (hit, miss, expired)
    - Credits (deducted amounts, insufficient-credit rejections)
    - Likeness classifier and prompt sanitizer decisions
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "timeline_ai_service",
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
            "timeline_ai_http_requests_total",
            "Total HTTP requests",
            ["endpoint", "method", "status_code"],
        )

        self.http_request_duration_seconds = Histogram(
            "timeline_ai_http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["endpoint", "method"],
            buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
        )

        self.http_requests_in_progress = Gauge(
            "timeline_ai_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            ["endpoint", "method"],
        )

        # ====================================================================
        # Pipeline Metrics
        # ====================================================================
        self.stage_runs_total = Counter(
            "timeline_ai_stage_runs_total",
            "Pipeline stage executions by outcome",
            ["stage", "outcome"],
        )

        self.stage_duration_seconds = Histogram(
            "timeline_ai_stage_duration_seconds",
            "Pipeline stage duration in seconds",
            ["stage"],
            buckets=(0.01, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0),
        )

        self.provider_calls_total = Counter(
            "timeline_ai_provider_calls_total",
            "Generation provider calls by kind and outcome",
            ["kind", "outcome"],
        )

        self.provider_retries_total = Counter(
            "timeline_ai_provider_retries_total",
            "Provider call retries by stage",
            ["stage"],
        )

        # ====================================================================
        # Cache Metrics
        # ====================================================================
        self.cache_lookups_total = Counter(
            "timeline_ai_cache_lookups_total",
            "Content cache lookups by result",
            ["result"],
        )

        # ====================================================================
        # Credit Metrics
        # ====================================================================
        self.credits_deducted_total = Counter(
            "timeline_ai_credits_deducted_total",
            "Credits deducted by action",
            ["action"],
        )

        self.credits_added_total = Counter(
            "timeline_ai_credits_added_total",
            "Credits added to balances",
        )

        self.insufficient_credits_total = Counter(
            "timeline_ai_insufficient_credits_total",
            "Deductions rejected for insufficient balance",
            ["action"],
        )

        # ====================================================================
        # Likeness Safety Metrics
        # ====================================================================
        self.likeness_assessments_total = Counter(
            "timeline_ai_likeness_assessments_total",
            "Likeness risk assessments by risk level and source",
            ["risk_level", "source"],
        )

        self.prompt_sanitizations_total = Counter(
            "timeline_ai_prompt_sanitizations_total",
            "Image prompts routed through the sanitizer",
            ["changed"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "timeline_ai_errors_total",
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

    def record_stage(self, stage: str, outcome: str, duration: float) -> None:
        """Record a finished pipeline stage."""
        self.stage_runs_total.labels(stage=stage, outcome=outcome).inc()
        self.stage_duration_seconds.labels(stage=stage).observe(duration)

    def record_provider_call(self, kind: str, success: bool) -> None:
        """Record a provider call attempt."""
        self.provider_calls_total.labels(
            kind=kind, outcome="success" if success else "failure"
        ).inc()

    def record_cache_lookup(self, result: str) -> None:
        """Record a cache lookup (hit, miss, expired, disabled)."""
        self.cache_lookups_total.labels(result=result).inc()

    def record_deduction(self, action: str, amount: int, success: bool) -> None:
        """Record a credit deduction attempt."""
        if success:
            self.credits_deducted_total.labels(action=action).inc(amount)
        else:
            self.insufficient_credits_total.labels(action=action).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = GenerationMetrics()
