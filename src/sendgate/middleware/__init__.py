"""Middleware components for SendGate API."""

from sendgate.middleware.trace import TRACE_HEADER, trace_id_middleware

__all__ = ["TRACE_HEADER", "trace_id_middleware"]
