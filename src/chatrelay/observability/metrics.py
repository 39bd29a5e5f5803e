from __future__ import annotations

"""Prometheus metrics for the chat relay backend.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters describing stream sessions.
"""

import time
from typing import Callable, Awaitable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "chatrelay_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

STREAM_SESSIONS = Counter(
    "chatrelay_stream_sessions_total",
    "Stream sessions by terminal state",
    labelnames=("state",),
)

FRAGMENTS_RELAYED = Counter(
    "chatrelay_fragments_relayed_total",
    "Text fragments forwarded to clients",
)

FIRST_FRAGMENT_LATENCY = Histogram(
    "chatrelay_first_fragment_seconds",
    "Time from request to the first upstream fragment",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)

UPSTREAM_ERRORS = Counter(
    "chatrelay_upstream_errors_total",
    "Upstream failures by kind and phase",
    labelnames=("kind", "phase"),
)

PERSIST_FAILURES = Counter(
    "chatrelay_persist_failures_total",
    "Final assistant message writes that failed",
)


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /chats/{id}) to a coarse label."""
    if not path:
        return "/"
    segs = [s for s in path.split("?")[0].split("/") if s]
    if not segs:
        return "/"
    if segs[0] == "api" and len(segs) > 1:
        return "/api/" + segs[1]
    return "/" + segs[0]


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        # Avoid observing the metrics endpoint itself
        if request.url.path.endswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        REQUEST_LATENCY.labels(
            method=request.method,
            path=sanitize_path(request.url.path),
            status=str(response.status_code),
        ).observe(elapsed)
        return response

    return middleware
