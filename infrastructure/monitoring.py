"""
Monitoring Infrastructure: Structured Logging and Prometheus Metrics

- ``configure_structlog`` / ``get_logger``: JSON logging for the HTTP layer
- ``configure_loguru``: sink setup for library and worker code
- ``MetricsCollector``: counters and histograms for vendor usage, cost,
  admission control, security events and batch jobs
"""

import logging
import sys
from typing import Optional

import structlog
from loguru import logger
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from config.settings import MonitoringSettings, get_settings
from core.models import CostBreakdown, UsageRecord


def configure_structlog(log_level: str = "INFO") -> None:
    """Configure structlog for JSON-based logging."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def configure_loguru(monitoring: Optional[MonitoringSettings] = None) -> None:
    """Route loguru to stderr, serialized as JSON when configured."""
    monitoring = monitoring or get_settings().monitoring
    logger.remove()
    logger.add(
        sys.stderr,
        level=monitoring.log_level,
        serialize=monitoring.log_format == "json",
        backtrace=False,
        diagnose=False,
    )


class MetricsCollector:
    """
    Prometheus metrics collector.

    Pass a fresh ``CollectorRegistry`` in tests to avoid duplicate
    registration against the process-wide default registry.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.llm_requests_total = Counter(
            "llm_requests_total",
            "Vendor completion requests",
            labelnames=["model", "status"],
            registry=self.registry,
        )
        self.llm_tokens_total = Counter(
            "llm_tokens_total",
            "Tokens billed per bucket",
            labelnames=["model", "bucket"],
            registry=self.registry,
        )
        self.llm_latency_seconds = Histogram(
            "llm_latency_seconds",
            "Vendor completion latency",
            buckets=[0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
            labelnames=["model"],
            registry=self.registry,
        )
        self.llm_cost_usd_total = Counter(
            "llm_cost_usd_total",
            "Vendor cost in USD",
            labelnames=["partition_id"],
            registry=self.registry,
        )
        self.llm_cost_savings_usd_total = Counter(
            "llm_cost_savings_usd_total",
            "USD saved by cache reads",
            labelnames=["partition_id"],
            registry=self.registry,
        )
        self.prompt_cache_hit_rate = Gauge(
            "prompt_cache_hit_rate",
            "Cache hit rate of the most recent call",
            labelnames=["partition_id"],
            registry=self.registry,
        )
        self.admission_decisions_total = Counter(
            "admission_decisions_total",
            "Admission control decisions",
            labelnames=["resource", "decision"],
            registry=self.registry,
        )
        self.security_events_total = Counter(
            "security_events_total",
            "Inputs/outputs blocked by the security gate",
            labelnames=["kind"],
            registry=self.registry,
        )
        self.cache_warmer_pings_total = Counter(
            "cache_warmer_pings_total",
            "Keep-alive pings issued",
            labelnames=["status"],
            registry=self.registry,
        )
        self.cache_warmer_sessions = Gauge(
            "cache_warmer_sessions",
            "Sessions with an active keep-alive timer",
            registry=self.registry,
        )
        self.batch_job_duration_seconds = Histogram(
            "batch_job_duration_seconds",
            "Maintenance job wall-clock time per invocation",
            buckets=[1, 5, 30, 60, 120, 300, 600],
            labelnames=["job_type", "outcome"],
            registry=self.registry,
        )

    def record_llm_call(
        self, model: str, status: str, usage: UsageRecord, latency_seconds: float
    ) -> None:
        self.llm_requests_total.labels(model=model, status=status).inc()
        if status != "success":
            return
        for bucket, value in (
            ("input", usage.input_tokens),
            ("cache_write", usage.cache_write_tokens),
            ("cache_read", usage.cache_read_tokens),
            ("output", usage.output_tokens),
        ):
            self.llm_tokens_total.labels(model=model, bucket=bucket).inc(value)
        self.llm_latency_seconds.labels(model=model).observe(latency_seconds)

    def record_cost(
        self, partition_id: str, cost: CostBreakdown, hit_rate: float, savings: float
    ) -> None:
        self.llm_cost_usd_total.labels(partition_id=partition_id).inc(cost.total)
        self.llm_cost_savings_usd_total.labels(partition_id=partition_id).inc(savings)
        self.prompt_cache_hit_rate.labels(partition_id=partition_id).set(hit_rate)

    def record_admission(self, resource: str, decision: str) -> None:
        self.admission_decisions_total.labels(resource=resource, decision=decision).inc()

    def record_security_event(self, kind: str) -> None:
        self.security_events_total.labels(kind=kind).inc()

    def record_warmer_ping(self, status: str) -> None:
        self.cache_warmer_pings_total.labels(status=status).inc()

    def set_warmer_sessions(self, count: int) -> None:
        self.cache_warmer_sessions.set(count)

    def record_batch_job(self, job_type: str, outcome: str, duration_seconds: float) -> None:
        self.batch_job_duration_seconds.labels(job_type=job_type, outcome=outcome).observe(
            duration_seconds
        )

    def export_metrics(self) -> bytes:
        """Export metrics in Prometheus text format."""
        return generate_latest(self.registry)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST
