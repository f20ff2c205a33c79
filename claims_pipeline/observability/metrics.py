"""
Prometheus metrics collection for claims-pipeline

Ingestion throughput, enrichment rule outcomes, job activity and
file lifecycle transitions.
"""
import os
from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    CollectorRegistry,
    generate_latest,
)
from typing import Optional


# Global registry for metrics
REGISTRY = CollectorRegistry()


# =======================
# INGESTION METRICS
# =======================

rows_ingested_total = Counter(
    name="claims_rows_ingested_total",
    documentation="Total number of source rows handled by ingestion",
    labelnames=["status"],  # status: committed, rolled_back
    registry=REGISTRY,
)

# =======================
# BATCH METRICS
# =======================

batches_total = Counter(
    name="claims_batches_total",
    documentation="Total number of ingestion and enrichment batches",
    labelnames=["job", "status"],  # job: ingestion, enrichment; status: committed, rolled_back
    registry=REGISTRY,
)

# =======================
# ENRICHMENT METRICS
# =======================

rule_applications_total = Counter(
    name="claims_rule_applications_total",
    documentation="Total number of enrichment rule applications",
    labelnames=["rule_id", "outcome"],  # outcome: succeeded, failed, skipped
    registry=REGISTRY,
)

# =======================
# JOB METRICS
# =======================

job_duration_seconds = Histogram(
    name="claims_job_duration_seconds",
    documentation="Wall time of ingestion and enrichment jobs in seconds",
    labelnames=["job"],
    buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0, 900.0],
    registry=REGISTRY,
)

active_jobs = Gauge(
    name="claims_active_jobs",
    documentation="Number of jobs currently running in the worker pool",
    labelnames=["job"],
    registry=REGISTRY,
)

# =======================
# LIFECYCLE METRICS
# =======================

file_transitions_total = Counter(
    name="claims_file_transitions_total",
    documentation="Total number of applied file lifecycle transitions",
    labelnames=["status"],  # new file status
    registry=REGISTRY,
)


# =======================
# HELPER FUNCTIONS
# =======================

def generate_metrics() -> bytes:
    """
    Generate Prometheus metrics in text format

    Returns:
        Metrics in Prometheus text format
    """
    return generate_latest(REGISTRY)


def start_metrics_server(port: Optional[int] = None) -> None:
    """
    Start HTTP server for Prometheus metrics

    Args:
        port: Port to listen on (defaults to env var METRICS_PORT or 8000)
    """
    # Lazy import: avoids binding a port just by importing metrics
    from prometheus_client import start_http_server

    metrics_port = port or int(os.getenv("METRICS_PORT", "8000"))
    start_http_server(metrics_port, registry=REGISTRY)


# =======================
# CONTEXT MANAGERS
# =======================

class track_duration:
    """
    Context manager for tracking operation duration

    Usage:
        with track_duration(job_duration_seconds, job="ingestion"):
            ingestor.ingest(...)
    """

    def __init__(self, histogram: Histogram, **labels):
        self.histogram = histogram
        self.labels = labels
        self.timer = None

    def __enter__(self):
        self.timer = self.histogram.labels(**self.labels).time()
        self.timer.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.timer.__exit__(exc_type, exc_val, exc_tb)
        return False


def increment_counter(counter: Counter, value: float = 1.0, **labels) -> None:
    """
    Increment a counter metric

    Args:
        counter: Prometheus Counter metric
        value: Amount to increment (default: 1.0)
        **labels: Label values for the metric
    """
    counter.labels(**labels).inc(value)


def inc_gauge(gauge: Gauge, value: float = 1.0, **labels) -> None:
    gauge.labels(**labels).inc(value)


def dec_gauge(gauge: Gauge, value: float = 1.0, **labels) -> None:
    gauge.labels(**labels).dec(value)


# =======================
# JOB-SPECIFIC HELPERS
# =======================

def record_batch(job: str, committed: bool, row_count: int = 0) -> None:
    """
    Record one batch outcome.

    Args:
        job: "ingestion" or "enrichment"
        committed: Whether the batch transaction committed
        row_count: Rows in the batch (counted for ingestion only)
    """
    status = "committed" if committed else "rolled_back"
    increment_counter(batches_total, 1, job=job, status=status)
    if job == "ingestion" and row_count > 0:
        increment_counter(rows_ingested_total, row_count, status=status)


def record_rule_application(rule_id: str, outcome: str) -> None:
    increment_counter(rule_applications_total, 1, rule_id=rule_id, outcome=outcome)
