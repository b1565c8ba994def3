"""Trace spans and the per-trace span registry.

Spans are held in memory by a ``SpanRegistry`` owned by the current
``Profiler``. Timestamps are integer microseconds since the registry was
cleared, which happens once at trace start.
"""

import time
from typing import Any, Callable, Mapping

from tideways.constants import (
    SPAN_ANNOTATIONS,
    SPAN_NAME,
    SPAN_STARTS,
    SPAN_STOPS,
)
from tideways.utils import is_scalar, stringify


class Span:
    """A timed, annotatable unit of work."""

    def __init__(self, registry: "SpanRegistry", id: int, name: str | None = None):
        self._registry = registry
        self._id = id
        self.name = name
        self.starts: list[int] = []
        self.stops: list[int] = []
        self.annotations: dict[str, str] = {}
        self._running = False

    @property
    def id(self) -> int:
        return self._id

    @property
    def running(self) -> bool:
        return self._running

    def start_timer(self) -> None:
        """Record a timer start. Ignored while the timer is running."""
        if self._running:
            return
        self.starts.append(self._registry.now())
        self._running = True

    def stop_timer(self) -> None:
        """Record a timer stop. Ignored while the timer is not running."""
        if not self._running:
            return
        self.stops.append(self._registry.now())
        self._running = False

    def record_duration(self, duration_us: int, start_offset: int = 0) -> None:
        """Record an externally measured interval.

        Ignored while the timer is running, timer based and explicit
        recording are exclusive for a span.
        """
        if self._running:
            return
        start_offset = int(start_offset)
        self.starts.append(start_offset)
        self.stops.append(start_offset + int(duration_us))

    def annotate(self, annotations: Mapping[str, Any]) -> None:
        """Store scalar annotations as strings. Non-scalar values are skipped."""
        for key, value in annotations.items():
            if not is_scalar(value):
                continue
            self.annotations[str(key)] = stringify(value)

    def to_dict(self) -> dict[str, Any]:
        """Serialize into the collector's span format."""
        data: dict[str, Any] = {}
        if self.name:
            data[SPAN_NAME] = self.name
        data[SPAN_STARTS] = list(self.starts)
        data[SPAN_STOPS] = list(self.stops)
        data[SPAN_ANNOTATIONS] = dict(self.annotations)
        return data

    def __repr__(self) -> str:
        return f"<Span id={self._id} name={self.name!r}>"


class NullSpan(Span):
    """Span handed out when the trace is not tracing. Records nothing."""

    def __init__(self):
        self._id = 0
        self.name = None
        self.starts = []
        self.stops = []
        self.annotations = {}
        self._running = False

    def start_timer(self) -> None:
        pass

    def stop_timer(self) -> None:
        pass

    def record_duration(self, duration_us: int, start_offset: int = 0) -> None:
        pass

    def annotate(self, annotations: Mapping[str, Any]) -> None:
        pass


class SpanRegistry:
    """Ordered collection of the spans of the current trace.

    ``clear()`` must be called once before the first span of a trace is
    created. Calling it mid-trace drops every span created so far.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._spans: list[Span] = []
        self._started_at = clock()

    @property
    def started_at(self) -> float:
        """Clock reading (seconds) of the last ``clear()``."""
        return self._started_at

    def clear(self) -> None:
        self._spans = []
        self._started_at = self._clock()

    def now(self) -> int:
        """Microseconds elapsed since the last ``clear()``."""
        return int(round((self._clock() - self._started_at) * 1000000))

    def create_span(self, name: str | None = None) -> Span:
        span = Span(self, len(self._spans), name)
        self._spans.append(span)
        return span

    def get(self, id: int) -> Span | None:
        if 0 <= id < len(self._spans):
            return self._spans[id]
        return None

    def get_all(self) -> list[Span]:
        return list(self._spans)

    def __len__(self) -> int:
        return len(self._spans)
