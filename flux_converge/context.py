"""Utilities for context tracing."""

import contextvars
from contextlib import contextmanager
import logging
from time import perf_counter
from typing import Generator


_LOGGER = logging.getLogger(__name__)

# No public API
__all__: list[str] = []


trace: contextvars.ContextVar[list[str]] = contextvars.ContextVar("trace")


def current_trace() -> str:
    """Return the label of the active trace, empty outside a trace."""
    return " > ".join(trace.get([]))


class TraceLogFilter(logging.Filter):
    """Adds the active trace label to log records as `trace`."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace = current_trace() or "-"
        return True


@contextmanager
def trace_context(name: str) -> Generator[None, None, None]:
    """Log the enter, exit and elapsed time of a named section.

    Sections nest, so a reconcile of an object shows as
    `ResourceGroup/default/apps > apply`.
    """
    stack = trace.get([])
    token = trace.set(stack + [name])
    label = " > ".join(stack + [name])
    t1 = perf_counter()
    _LOGGER.debug("[Trace] > %s", label)
    try:
        yield
    finally:
        t2 = perf_counter()
        trace.reset(token)
        _LOGGER.debug("[Trace] < %s (%0.2fs)", label, (t2 - t1))
