"""
Prometheus metrics for the chat backend.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Message ingest outcome counter (result)
- Sweep run counter (outcome) and swept entity counter (kind)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: created, validation_error, store_error
messages_ingested_total = Counter(
    "messages_ingested_total",
    "Total message ingest outcomes",
    labelnames=["result"]
)

# outcome: completed, failed, skipped
sweep_runs_total = Counter(
    "sweep_runs_total",
    "Total expiry sweep runs",
    labelnames=["outcome"]
)

# kind: message, file, blob, room
swept_entities_total = Counter(
    "swept_entities_total",
    "Entities deleted by the expiry sweeper",
    labelnames=["kind"]
)

sweep_failures_total = Counter(
    "sweep_failures_total",
    "Per-entity deletion failures during sweeps"
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    # Normalize path to avoid high-cardinality labels
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_ingest_outcome(result: str) -> None:
    messages_ingested_total.labels(result=result).inc()


def record_sweep_run(outcome: str) -> None:
    sweep_runs_total.labels(outcome=outcome).inc()


def record_swept(kind: str, count: int = 1) -> None:
    if count:
        swept_entities_total.labels(kind=kind).inc(count)


def record_sweep_failure() -> None:
    sweep_failures_total.inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
