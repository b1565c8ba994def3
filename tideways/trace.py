"""Trace metadata and assembly of the collector payload.

A ``TraceContext`` lives for exactly one trace. At stop time it is combined
with the spans of the registry and process metrics into a ``TracePayload``.
Payloads that matter (collected traces, traces with errors) carry every span
and go through the reliable transport; all others are reduced to the root
span and go through the lossy transport.
"""

import math
import os
import platform
import random
import sys
from dataclasses import dataclass, field
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field

from tideways.constants import DEFAULT_TRANSACTION_NAME, Mode
from tideways.extension import ProfilingExtension
from tideways.spans import Span

try:
    import resource
except ImportError:  # pragma: no cover - not available on Windows
    resource = None


def generate_trace_id() -> int:
    """Random positive integer used to correlate a trace."""
    return random.randint(1, sys.maxsize)


@dataclass
class TraceContext:
    """Metadata of the current trace, distinct from its spans."""

    api_key: str
    trace_id: int = field(default_factory=generate_trace_id)
    transaction_name: str = DEFAULT_TRANSACTION_NAME
    mode: Mode = Mode.BASIC
    keep: bool = False
    service: str | None = None
    correlation_id: str | None = None
    error: dict[str, str] | None = None

    @property
    def has_error(self) -> bool:
        return self.error is not None

    def record_error(self, error: dict[str, str]) -> bool:
        """Record ``error`` unless one is already recorded. Returns True if stored."""
        if self.error is not None:
            return False
        self.error = error
        return True


class SpanPayload(BaseModel):
    """Single span in collector format."""

    n: str | None = None
    b: list[int] = Field(default_factory=list)
    e: list[int] = Field(default_factory=list)
    a: dict[str, str] = Field(default_factory=dict)


class TracePayload(BaseModel):
    """Trace as sent to the collector daemon."""

    model_config = ConfigDict(populate_by_name=True)

    api_key: str = Field(alias="apiKey")
    id: int
    tx: str = DEFAULT_TRANSACTION_NAME
    keep: bool | None = None
    service: str | None = None
    cid: str | None = None
    profdata: dict[str, Any] | None = None
    spans: list[SpanPayload] = Field(default_factory=list)

    def to_wire(self) -> dict[str, Any]:
        """Dump with collector key names, leaving out unset optional keys."""
        return self.model_dump(by_alias=True, exclude_none=True)


def is_full_transport(mode: Mode, has_error: bool) -> bool:
    """Whether a trace goes through the reliable path with all spans."""
    return bool(mode & Mode.FULL) or has_error


def peak_memory_kib() -> int:
    """Peak resident set size of the process in KiB, rounded up."""
    if resource is None:
        return 0
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    if sys.platform == "darwin":
        # macOS reports bytes
        return int(math.ceil(peak / 1024))
    return int(peak)


def is_web_request(environ: Mapping[str, Any]) -> bool:
    return "REQUEST_METHOD" in environ


def request_path(environ: Mapping[str, Any]) -> str:
    return (environ.get("SCRIPT_NAME", "") + environ.get("PATH_INFO", "")) or "/"


def script_name() -> str:
    return os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else "python"


def request_title(environ: Mapping[str, Any]) -> str:
    """Title of the trace: ``"GET https://host/path"`` or the script name."""
    if not is_web_request(environ):
        return script_name()

    title = f"{environ['REQUEST_METHOD']} "
    host = environ.get("HTTP_HOST") or environ.get("SERVER_NAME")
    if host:
        scheme = environ.get("wsgi.url_scheme", "http")
        title += f"{scheme}://{host}"
    return title + request_path(environ)


def collect_annotations(
    full: bool,
    extension: ProfilingExtension,
    environ: Mapping[str, Any],
    framework: str | None = None,
) -> dict[str, Any]:
    """Process metrics attached to the root span at stop time.

    Reduced traces only carry the peak memory.
    """
    annotations: dict[str, Any] = {"mem": peak_memory_kib()}
    if not full:
        return annotations

    if extension.available:
        annotations["xhpv"] = extension.version
    if framework:
        annotations["framework"] = framework

    annotations["python"] = platform.python_version()
    annotations["sapi"] = "wsgi" if is_web_request(environ) else "cli"
    annotations["title"] = request_title(environ)

    if environ.get("QUERY_STRING"):
        annotations["query"] = environ["QUERY_STRING"]

    return annotations


def assemble_trace(
    context: TraceContext,
    spans: list[Span],
    profdata: dict[str, Any] | None = None,
) -> tuple[TracePayload, bool]:
    """Build the payload for a finished trace.

    Returns:
        The payload and whether it must go through the reliable transport.
        Lossy payloads only ever contain the root span.
    """
    full = is_full_transport(context.mode, context.has_error)
    if not full:
        spans = spans[:1]

    payload = TracePayload(
        api_key=context.api_key,
        id=context.trace_id,
        tx=context.transaction_name,
        keep=True if (context.keep or context.has_error) else None,
        service=context.service,
        cid=context.correlation_id,
        profdata=(profdata or {}) if context.mode & Mode.PROFILING else None,
        spans=[SpanPayload(**span.to_dict()) for span in spans],
    )
    return payload, full
