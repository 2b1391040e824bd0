"""Observability helpers for SendGate."""

from sendgate.observability.metrics import metrics
from sendgate.observability.trace import (
    TraceIdFilter,
    get_trace_id,
    install_trace_id_filter,
    set_trace_id,
)

__all__ = [
    "TraceIdFilter",
    "get_trace_id",
    "install_trace_id_filter",
    "metrics",
    "set_trace_id",
]
