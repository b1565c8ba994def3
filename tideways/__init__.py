"""Tideways Python client - Profiling, tracing and monitoring.

Basic Usage:
    import tideways

    # Configure once (reads TIDEWAYS_APIKEY etc. from env)
    tideways.initialize(service="shop")

    tideways.start()
    tideways.set_transaction_name("import-products")
    try:
        run_import()
    except Exception as e:
        tideways.log_exception(e)
        raise
    finally:
        tideways.stop()

Web applications:
    from tideways.wsgi import TidewaysMiddleware

    app = TidewaysMiddleware(app, framework="flask")

Spans:
    from tideways import observe

    @observe(category="http")
    def fetch_prices(sku):
        ...

Every module level function acts on the profiler of the current execution
context (thread or asyncio task).
"""

import logging
import os
import sys
from typing import Any, Mapping

from openinference.instrumentation import using_attributes

from tideways.constants import SDK_VERSION, Mode
from tideways.context import (
    get_current_profiler,
    get_current_span_id,
    get_current_trace_id,
    set_current_profiler,
)
from tideways.decorators import observe
from tideways.env import TIDEWAYS_AUTO_START, TIDEWAYS_MONITOR_CLI
from tideways.profiler import Profiler
from tideways.spans import Span
from tideways.trace import is_web_request
from tideways.update import update_current_span, update_current_trace
from tideways.utils import parse_bool

__version__ = SDK_VERSION

logger = logging.getLogger(__name__)

# =============================================================================
# Per-context profiler
# =============================================================================
_default_options: dict[str, Any] = {}


def initialize(**options: Any) -> Profiler:
    """Configure the options used for every profiler created by this module.

    Call this once at application startup. Profilers created afterwards,
    e.g. for new threads, share these options.

    Args:
        **options: ``Profiler`` arguments (``api_key``, ``sample_rate``,
            ``service``, ``framework``, ``backend``, ...).

    Returns:
        The profiler bound to the current context.

    Example:
        import tideways
        tideways.initialize()  # Reads from env vars
    """
    _default_options.clear()
    _default_options.update(options)

    profiler = Profiler(register_shutdown=True, **_default_options)
    set_current_profiler(profiler)
    return profiler


def get_profiler() -> Profiler:
    """Get the profiler of the current context, creating it on first use."""
    profiler = get_current_profiler()
    if profiler is None:
        profiler = Profiler(register_shutdown=True, **_default_options)
        set_current_profiler(profiler)
    return profiler


# =============================================================================
# Lifecycle
# =============================================================================


def start(environ: Mapping[str, Any] | None = None, **options: Any) -> None:
    """Start a trace in the current context."""
    get_profiler().start(environ, **options)


def start_development(api_key: str | None = None, **options: Any) -> None:
    """Start a trace that is always collected in full."""
    get_profiler().start_development(api_key, **options)


def stop() -> None:
    """Stop the trace of the current context and send it."""
    get_profiler().stop()


def ignore_transaction() -> None:
    """Discard the trace of the current context."""
    get_profiler().ignore_transaction()


def shutdown() -> None:
    """Stop the trace of the current context, if one is running."""
    profiler = get_current_profiler()
    if profiler is not None:
        profiler.shutdown()


def auto_start() -> None:
    """Start a trace if ``TIDEWAYS_AUTO_START`` is enabled.

    Command line scripts are only monitored with ``TIDEWAYS_MONITOR_CLI``,
    then with sampling disabled and service ``cli``.
    """
    if not parse_bool(os.environ.get(TIDEWAYS_AUTO_START), False):
        return

    if is_web_request(os.environ):
        start()
    elif parse_bool(os.environ.get(TIDEWAYS_MONITOR_CLI), False):
        logger.debug(f"Auto-starting CLI trace for {sys.argv[0] if sys.argv else ''}")
        start(sample_rate=0, service="cli")


# =============================================================================
# Trace state and metadata
# =============================================================================


def is_started() -> bool:
    return get_profiler().is_started()


def is_profiling() -> bool:
    return get_profiler().is_profiling()


def is_tracing() -> bool:
    return get_profiler().is_tracing()


def current_trace_id() -> int:
    return get_profiler().current_trace_id()


def set_transaction_name(name: str) -> None:
    get_profiler().set_transaction_name(name)


def set_service_name(name: str) -> None:
    get_profiler().set_service_name(name)


def set_correlation_id(correlation_id: str) -> None:
    get_profiler().set_correlation_id(correlation_id)


def set_custom_variable(name: str, value: Any) -> None:
    get_profiler().set_custom_variable(name, value)


def use_request_as_transaction_name(environ: Mapping[str, Any] | None = None) -> None:
    get_profiler().use_request_as_transaction_name(environ)


# =============================================================================
# Spans and errors
# =============================================================================


def create_span(name: str | None = None) -> Span:
    return get_profiler().create_span(name)


def create_sql_span(query: str) -> Span:
    return get_profiler().create_sql_span(query)


def log_exception(exception: BaseException | str) -> None:
    get_profiler().log_exception(exception)


def log_fatal(message: str, file: str, line: int, type: str | None = None, trace: Any = None) -> None:
    get_profiler().log_fatal(message, file, line, type=type, trace=trace)


__all__ = [
    # Core
    "initialize",
    "get_profiler",
    "start",
    "start_development",
    "stop",
    "ignore_transaction",
    "shutdown",
    "auto_start",
    "Profiler",
    "Mode",
    # Trace state and metadata
    "is_started",
    "is_profiling",
    "is_tracing",
    "current_trace_id",
    "set_transaction_name",
    "set_service_name",
    "set_correlation_id",
    "set_custom_variable",
    "use_request_as_transaction_name",
    # Spans and errors
    "create_span",
    "create_sql_span",
    "log_exception",
    "log_fatal",
    "observe",
    # Context utilities
    "get_current_trace_id",
    "get_current_span_id",
    # Update functions
    "update_current_span",
    "update_current_trace",
    # OpenInference (re-exported for convenience)
    "using_attributes",
]
