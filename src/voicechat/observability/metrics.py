from __future__ import annotations

"""Prometheus metrics for the voicechat FastAPI backend.

Adds an HTTP middleware that records request latency per method/path/status,
and the counters the generation pipeline reports into.
"""

import time
from typing import Callable, Awaitable

from prometheus_client import Counter, Gauge, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "voicechat_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

GENERATION_OUTCOMES = Counter(
    "voicechat_generation_outcomes_total",
    "Finished generations by provider and terminal state",
    labelnames=("provider", "outcome"),
)

ACTIVE_STREAMS = Gauge(
    "voicechat_active_streams",
    "Stream sessions currently in flight",
)

STREAMED_DELTAS = Counter(
    "voicechat_streamed_deltas_total",
    "Text deltas forwarded to clients",
    labelnames=("provider",),
)

EMBEDDING_FAILURES = Counter(
    "voicechat_embedding_failures_total",
    "Fragments skipped because embedding failed",
    labelnames=("provider",),
)

ASSISTANT_MESSAGES_LOST = Counter(
    "voicechat_assistant_messages_lost_total",
    "Assistant turns streamed to the client but not persisted",
)


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /chat/conversations/{id}) to a coarse label."""
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
