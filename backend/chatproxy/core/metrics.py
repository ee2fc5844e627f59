"""Prometheus metrics setup using prometheus-fastapi-instrumentator.

Provides a helper to attach default HTTP metrics plus custom
stream/upstream/image metrics for the proxy.
"""

from prometheus_client import Counter, Gauge, Histogram
from prometheus_fastapi_instrumentator import Instrumentator
from prometheus_fastapi_instrumentator.metrics import (
    latency,
    request_size,
    requests,
    response_size,
)


# =============================================================================
# STREAM METRICS
# =============================================================================

chat_active_streams = Gauge(
    "chat_active_streams",
    "Number of upstream streams currently being relayed",
)

chat_streams_finished_total = Counter(
    "chat_streams_finished_total",
    "Relayed streams by final outcome",
    labelnames=["outcome"],
)

chat_stream_events_total = Counter(
    "chat_stream_events_total",
    "Client-facing SSE events emitted",
    labelnames=["kind"],
)

chat_stream_cancellations_total = Counter(
    "chat_stream_cancellations_total",
    "Stop requests by result",
    labelnames=["result"],
)

# =============================================================================
# UPSTREAM METRICS
# =============================================================================

upstream_time_to_headers_seconds = Histogram(
    "upstream_time_to_headers_seconds",
    "Time from sending the upstream request to receiving response headers",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 30.0),
    labelnames=["model"],
)

upstream_errors_total = Counter(
    "upstream_errors_total",
    "Upstream failures before streaming started",
    labelnames=["error_type"],
)

# =============================================================================
# IMAGE / UPLOAD METRICS
# =============================================================================

chat_images_total = Counter(
    "chat_images_total",
    "Image references handled by the inliner",
    labelnames=["result"],
)

uploads_total = Counter(
    "uploads_total",
    "Upload requests by result",
    labelnames=["result"],
)

uploaded_files_total = Counter(
    "uploaded_files_total",
    "Image files stored by the upload endpoint",
)


# =============================================================================
# INSTRUMENTATION SETUP
# =============================================================================


def setup_metrics(app, enabled: bool = True) -> None:
    """Configure Prometheus metrics for the FastAPI app."""
    if not enabled:
        return

    instrumentator = Instrumentator(excluded_handlers=["/metrics"])
    instrumentator \
        .add(requests()) \
        .add(latency()) \
        .add(request_size()) \
        .add(response_size()) \
        .instrument(app)

    # Expose /metrics endpoint
    instrumentator.expose(app)


# =============================================================================
# HELPER FUNCTIONS FOR RECORDING METRICS
# =============================================================================

def record_stream_opened() -> None:
    chat_active_streams.inc()


def record_stream_finished(outcome: str) -> None:
    """Record the end of a relayed stream."""
    chat_active_streams.dec()
    chat_streams_finished_total.labels(outcome=outcome).inc()


def record_stream_event(kind: str) -> None:
    chat_stream_events_total.labels(kind=kind).inc()


def record_cancellation(found: bool) -> None:
    chat_stream_cancellations_total.labels(result="found" if found else "not_found").inc()


def record_upstream_headers(model: str, duration: float) -> None:
    """Record how long the upstream took to answer."""
    upstream_time_to_headers_seconds.labels(model=model).observe(duration)


def record_upstream_error(error_type: str) -> None:
    upstream_errors_total.labels(error_type=error_type).inc()


def record_image(result: str, count: int = 1) -> None:
    """Record image references by result: inlined, passthrough, failed, dropped."""
    if count:
        chat_images_total.labels(result=result).inc(count)


def record_upload(accepted: bool, files: int = 0) -> None:
    uploads_total.labels(result="accepted" if accepted else "rejected").inc()
    if files:
        uploaded_files_total.inc(files)
