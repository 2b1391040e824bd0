"""
Trace ID log correlation tests.
"""

import contextvars
import io
import logging

from sendgate.observability.trace import (
    TraceIdFilter,
    install_trace_id_filter,
    set_trace_id,
)


def _capturing_logger(name: str) -> tuple[logging.Logger, io.StringIO]:
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter("[%(trace_id)s] %(message)s"))
    install_trace_id_filter([handler])

    log = logging.getLogger(name)
    log.handlers = [handler]
    log.propagate = False
    log.setLevel(logging.INFO)
    return log, stream


def test_records_carry_the_current_trace_id():
    log, stream = _capturing_logger("sendgate.test.trace")

    def in_request():
        set_trace_id("trace-abc")
        log.info("handled")

    contextvars.Context().run(in_request)
    contextvars.Context().run(log.info, "background")

    assert stream.getvalue().splitlines() == ["[trace-abc] handled", "[-] background"]


def test_filter_is_installed_once():
    handler = logging.StreamHandler(io.StringIO())

    install_trace_id_filter([handler])
    install_trace_id_filter([handler])

    assert sum(isinstance(f, TraceIdFilter) for f in handler.filters) == 1
