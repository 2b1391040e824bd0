"""Trace ID propagation for log correlation."""

import logging
from contextvars import ContextVar
from typing import Iterable, Optional
from uuid import uuid4

_trace_id: ContextVar[Optional[str]] = ContextVar("sendgate_trace_id", default=None)


def get_trace_id() -> Optional[str]:
    return _trace_id.get()


def set_trace_id(trace_id: Optional[str] = None) -> str:
    """Set the trace ID for the current context, generating one if not given."""
    value = trace_id or uuid4().hex
    _trace_id.set(value)
    return value


class TraceIdFilter(logging.Filter):
    """Stamp each record with the current trace ID as ``trace_id`` ("-" outside a request)."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = get_trace_id() or "-"
        return True


def install_trace_id_filter(handlers: Iterable[logging.Handler]) -> None:
    """Add a TraceIdFilter to each handler that does not have one yet."""
    for handler in handlers:
        if not any(isinstance(f, TraceIdFilter) for f in handler.filters):
            handler.addFilter(TraceIdFilter())
