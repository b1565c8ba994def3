"""Decorator-based instrumentation."""

import functools
import inspect
import logging
from typing import Any, Callable, TypeVar

from openinference.instrumentation import get_attributes_from_context

from tideways.context import get_current_profiler, reset_current_span, set_current_span
from tideways.spans import NullSpan, Span
from tideways.utils import is_scalar

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def observe(
    name: str | None = None,
    category: str = "span",
    annotations: dict[str, Any] | None = None,
) -> Callable[[F], F]:
    """Decorator to create a span around a function call.

    The span is only recorded while the current profiler is tracing, other
    calls go through untouched.

    Args:
        name: Span title. Defaults to the function's qualified name.
        category: Span category, e.g. ``"sql"``, ``"http"``, ``"cache"``.
        annotations: Static annotations to attach.

    Returns:
        Decorated function.

    Example:
        @observe(category="http")
        def fetch_prices(sku: str) -> dict:
            return client.get(f"/prices/{sku}").json()

        @observe(name="render-invoice", category="view")
        async def render(order):
            return await template.render(order=order)
    """

    def decorator(func: F) -> F:
        title = name or func.__qualname__

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                span = _open_span(category, title, annotations)
                token = set_current_span(span)
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    _record_error(span, e)
                    raise
                finally:
                    span.stop_timer()
                    reset_current_span(token)

            return async_wrapper  # type: ignore

        else:

            @functools.wraps(func)
            def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
                span = _open_span(category, title, annotations)
                token = set_current_span(span)
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    _record_error(span, e)
                    raise
                finally:
                    span.stop_timer()
                    reset_current_span(token)

            return sync_wrapper  # type: ignore

    return decorator


def _open_span(category: str, title: str, annotations: dict[str, Any] | None) -> Span:
    """Create and start a span in the current trace."""
    profiler = get_current_profiler()
    if profiler is None:
        return NullSpan()

    span = profiler.create_span(category)
    span.annotate({"title": title})

    if annotations:
        span.annotate(annotations)

    # Attributes from OpenInference context (session_id, user_id, etc.)
    try:
        span.annotate({key: value for key, value in get_attributes_from_context() if is_scalar(value)})
    except Exception as e:
        logger.debug(f"Failed to get context attributes: {e}")

    span.start_timer()
    return span


def _record_error(span: Span, error: Exception) -> None:
    span.annotate({"error": "1", "error_type": type(error).__name__})
