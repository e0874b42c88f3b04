"""Prometheus metrics for the application."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# --- Metrics ---

APP_INFO = Info("app", "Storyteller gateway application info")
APP_INFO.info({"version": "1.0.0", "name": "storyteller_gateway"})

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60],
)

CACHE_LOOKUPS = Counter(
    "gateway_cache_lookups_total",
    "Content cache lookups",
    ["kind", "result"],  # result: hit | miss
)

QUOTA_REJECTIONS = Counter(
    "gateway_quota_rejections_total",
    "Requests rejected by the local usage quota",
    ["kind"],
)

REMOTE_ATTEMPTS = Counter(
    "gateway_remote_attempts_total",
    "Remote API attempts by outcome",
    ["outcome"],  # success | rate_limited | server_error | timeout | client_error | protocol_error
)

IN_FLIGHT = Gauge(
    "gateway_remote_in_flight",
    "Remote calls currently holding a concurrency slot",
)


# --- Middleware ---

# Keep generated file names out of the path label
_PATH_PREFIXES = ("/generated/",)


def _normalize_path(path: str) -> str:
    """Collapse per-file paths to their prefix to avoid high cardinality."""
    for prefix in _PATH_PREFIXES:
        if path.startswith(prefix):
            return f"{prefix}{{file}}"
    return path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Collect HTTP request metrics for Prometheus."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        path = _normalize_path(request.url.path)

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
