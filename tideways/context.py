"""Context utilities for the current profiler and span.

Each execution context (thread, asyncio task, request) sees its own profiler
through a ``ContextVar``. There is no process-global trace state.
"""

from contextvars import ContextVar, Token
from typing import TYPE_CHECKING

from tideways.spans import Span

if TYPE_CHECKING:
    from tideways.profiler import Profiler

_current_profiler: ContextVar["Profiler | None"] = ContextVar("tideways_profiler", default=None)
_current_span: ContextVar[Span | None] = ContextVar("tideways_span", default=None)


def get_current_profiler() -> "Profiler | None":
    return _current_profiler.get()


def set_current_profiler(profiler: "Profiler | None") -> Token:
    return _current_profiler.set(profiler)


def reset_current_profiler(token: Token) -> None:
    _current_profiler.reset(token)


def get_current_span() -> Span | None:
    """Innermost span opened by ``@observe`` in this context."""
    return _current_span.get()


def set_current_span(span: Span | None) -> Token:
    return _current_span.set(span)


def reset_current_span(token: Token) -> None:
    _current_span.reset(token)


def get_current_trace_id() -> int | None:
    """Get the id of the running trace in this context.

    Returns:
        The trace id, or None if no trace is running.

    Example:
        @observe()
        def my_function():
            trace_id = get_current_trace_id()
            print(f"Current trace: {trace_id}")
    """
    profiler = get_current_profiler()
    if profiler is None or not profiler.is_started():
        return None
    return profiler.current_trace_id()


def get_current_span_id() -> int | None:
    """Get the registry index of the innermost ``@observe`` span.

    Returns:
        The span id, or None if no span is open.
    """
    span = get_current_span()
    return span.id if span is not None else None
