from __future__ import annotations

"""Prometheus metrics for the generation API.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters for generation outcomes and usage-guard rejections.
"""

import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "scriptgen_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

GENERATIONS = Counter(
    "scriptgen_generations_total",
    "Generation streams by provider route and outcome",
    labelnames=("provider", "outcome"),
)

USAGE_REJECTIONS = Counter(
    "scriptgen_usage_rejections_total",
    "Generation requests rejected before reaching a model",
    labelnames=("reason",),
)


def record_generation(provider: str, outcome: str) -> None:
    try:
        GENERATIONS.labels(provider=provider, outcome=outcome).inc()
    except Exception:
        pass


def record_rejection(reason: str) -> None:
    try:
        USAGE_REJECTIONS.labels(reason=reason).inc()
    except Exception:
        pass


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths to their first two segments (e.g. /api/usage)."""

    if not path:
        return "/"
    segs = [s for s in path.split("?")[0].split("/") if s]
    if not segs:
        return "/"
    return "/" + "/".join(segs[:2])


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        # Avoid observing the metrics endpoint itself
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        try:
            REQUEST_LATENCY.labels(
                method=request.method,
                path=sanitize_path(request.url.path),
                status=str(response.status_code),
            ).observe(elapsed)
        except Exception:
            pass
        return response

    return middleware
