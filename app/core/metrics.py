"""Prometheus metrics for the gateway."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# --- Metrics ---

APP_INFO = Info("app", "AI relay gateway info")
APP_INFO.info({"version": "1.0.0", "name": "relay_gateway"})

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "Time to response start in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30],
)

ADMISSION_DECISIONS = Counter(
    "admission_decisions_total",
    "Admission gate outcomes",
    ["category", "outcome"],
)

STREAMS_COMPLETED = Counter(
    "chat_streams_total",
    "Finished chat streams by provider and outcome",
    ["provider", "outcome"],  # outcome: success | aborted | error
)

STREAM_DURATION = Histogram(
    "chat_stream_duration_seconds",
    "Wall time of a relayed chat stream",
    ["provider"],
    buckets=[0.5, 1, 2.5, 5, 10, 30, 60, 120, 280],
)

TOOL_INVOCATIONS = Counter(
    "chat_tool_invocations_total",
    "Tool invocations assembled from upstream streams",
    ["provider"],
)

POOL_CREDENTIALS = Gauge(
    "speech_pool_credentials",
    "Pooled speech credentials by cached health state",
    ["health"],
)

POOL_EXHAUSTED = Counter(
    "speech_pool_exhausted_total",
    "Acquire attempts that found no usable credential",
)

TELEMETRY_FAILURES = Counter(
    "telemetry_write_failures_total",
    "Telemetry records that could not be persisted",
    ["kind"],
)


# --- Middleware ---


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        # Routes carry no path parameters, so the raw path is low-cardinality
        method = request.method
        path = request.url.path

        start = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start

        REQUEST_COUNT.labels(method=method, path=path, status=response.status_code).inc()
        REQUEST_DURATION.labels(method=method, path=path).observe(duration)
        return response


def metrics_response() -> Response:
    """Generate Prometheus /metrics response."""
    return Response(
        content=generate_latest(),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
