"""Trace ID middleware."""

import logging
import time

from fastapi import Request

from sendgate.observability.metrics import metrics
from sendgate.observability.trace import set_trace_id

logger = logging.getLogger("sendgate.http")

TRACE_HEADER = "X-Trace-ID"


async def trace_id_middleware(request: Request, call_next):
    """Adopt the caller's trace ID (or mint one) and echo it on the response."""
    trace_id = set_trace_id(
        request.headers.get(TRACE_HEADER) or request.headers.get("X-Request-ID")
    )
    started = time.perf_counter()

    response = await call_next(request)

    duration_ms = (time.perf_counter() - started) * 1000.0
    metrics.inc_counter("http.requests")
    metrics.observe("http.request.duration_ms", duration_ms)
    if response.status_code >= 500:
        metrics.inc_counter("http.responses.5xx")
    logger.debug(
        f"{request.method} {request.url.path} -> {response.status_code} "
        f"({duration_ms:.1f}ms)"
    )

    response.headers[TRACE_HEADER] = trace_id
    return response
