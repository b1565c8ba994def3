"""OpenTelemetry integration.

``TidewaysSpanProcessor`` copies finished OpenTelemetry spans into the span
registry of the profiler running in the current context, so libraries that
are instrumented with OpenTelemetry show up in traces.

Example:
    from opentelemetry import trace
    from opentelemetry.sdk.trace import TracerProvider
    from tideways.otel import TidewaysSpanProcessor

    provider = TracerProvider()
    provider.add_span_processor(TidewaysSpanProcessor())
    trace.set_tracer_provider(provider)
"""

import logging

from opentelemetry.context import Context
from opentelemetry.sdk.trace import ReadableSpan, Span, SpanProcessor

from tideways.context import get_current_profiler
from tideways.utils import is_scalar

logger = logging.getLogger(__name__)

CATEGORY_ATTRIBUTE = "tideways.category"
"""Span attribute holding the Tideways span category."""

DEFAULT_CATEGORY = "otel"


class TidewaysSpanProcessor(SpanProcessor):
    """Record finished OpenTelemetry spans in the current trace.

    Spans are only recorded while the current profiler is tracing. Processing
    happens synchronously in ``on_end``, in the context that ended the span.
    """

    def __init__(self, category_attribute: str = CATEGORY_ATTRIBUTE):
        self._category_attribute = category_attribute

    def on_start(self, span: Span, parent_context: Context | None = None) -> None:
        pass

    def on_end(self, span: ReadableSpan) -> None:
        profiler = get_current_profiler()
        if profiler is None or not profiler.is_tracing():
            return

        if span.start_time is None or span.end_time is None:
            return

        try:
            attributes = dict(span.attributes or {})
            category = attributes.pop(self._category_attribute, None) or DEFAULT_CATEGORY

            target = profiler.create_span(str(category))
            target.annotate({"title": span.name})
            target.annotate({k: v for k, v in attributes.items() if is_scalar(v)})

            # OTel times are epoch nanoseconds, registry offsets microseconds
            trace_start_ns = int(profiler.registry.started_at * 1e9)
            start_offset = (span.start_time - trace_start_ns) // 1000
            target.record_duration((span.end_time - span.start_time) // 1000, start_offset)
        except Exception as e:
            logger.debug(f"Failed to record OpenTelemetry span: {e}")

    def shutdown(self) -> None:
        pass

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return True
