from __future__ import annotations

"""Prometheus metrics for the LinkChat FastAPI app.

Adds an HTTP middleware that records request latency per method/path/status,
plus counters for link tokens, streams and provider failures.
"""

import logging
import time
from typing import Awaitable, Callable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("linkchat.metrics")

REQUEST_LATENCY = Histogram(
    "linkchat_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

LINK_TOKENS = Counter(
    "linkchat_link_tokens_total",
    "Magic link token events",
    labelnames=("outcome",),
)

STREAMS = Counter(
    "linkchat_streams_total",
    "Streaming exchanges by outcome",
    labelnames=("outcome",),
)

PROVIDER_FAILURES = Counter(
    "linkchat_provider_failures_total",
    "Completion provider failures",
    labelnames=("operation",),
)


def sanitize_path(path: str) -> str:
    """Collapse message ids and token values so labels stay low-cardinality.

    ``/chat/message/<id>/save`` becomes ``/chat/message/:id/save`` and
    ``/magic-link/tokens/<value>`` becomes ``/magic-link/tokens/:value``.
    """
    if not path:
        return "/"
    segs = path.split("?")[0].split("/")
    if len(segs) > 3 and segs[1] == "chat" and segs[2] == "message":
        segs[3] = ":id"
    elif len(segs) > 3 and segs[1] == "magic-link" and segs[2] == "tokens":
        segs[3] = ":value"
    return "/".join(segs) or "/"


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
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
        except ValueError:
            logger.debug("latency_observe_failed", extra={"path": request.url.path})
        return response

    return middleware
