"""Tideways profiler.

A ``Profiler`` owns the trace of one execution context: it decides the
collection mode, keeps the span registry and trace metadata, and hands the
assembled payload to the backend when the trace stops.

Example:
    profiler = Profiler(api_key="...")
    profiler.start()
    profiler.set_transaction_name("import-products")

    span = profiler.create_span("sql")
    span.start_timer()
    run_query()
    span.stop_timer()

    profiler.stop()

Every public method swallows internal failures: profiling must never break
the application being profiled.
"""

import atexit
import functools
import hashlib
import logging
import os
import random
import sys
import time
import weakref
from typing import Any, Callable, Iterable, Mapping

from tideways import context
from tideways.backtrace import convert_to_string, exception_source
from tideways.config import ConfigurationError, ProfilerOptions, configure_logging
from tideways.constants import (
    DEFAULT_TRANSACTION_NAME,
    ROOT_SPAN_NAME,
    TRIGGER_SESSION,
    ExtensionFlags,
    Mode,
)
from tideways.decision import build_trigger_query, decide_mode
from tideways.extension import MAIN, ProfilingExtension, detect_extension
from tideways.frameworks import resolve_framework
from tideways.spans import NullSpan, Span, SpanRegistry
from tideways.sql import anonymize
from tideways.trace import (
    TraceContext,
    assemble_trace,
    collect_annotations,
    is_full_transport,
    is_web_request,
    request_path,
    script_name,
)
from tideways.transport.backend import Backend, NetworkBackend
from tideways.utils import is_scalar

logger = logging.getLogger(__name__)

DEFAULT_IGNORED_FUNCTIONS = (
    "<built-in method builtins.exec>",
    "<built-in method builtins.isinstance>",
    "<built-in method builtins.len>",
    "<built-in method builtins.getattr>",
    "<built-in method builtins.hasattr>",
)

_NULL_SPAN = NullSpan()
_previous_excepthook = None

# Profilers stopped at interpreter exit, held weakly
_shutdown_profilers: "weakref.WeakSet[Profiler]" = weakref.WeakSet()
_atexit_registered = False


def _guarded(default: Any = None) -> Callable:
    """Log and swallow any exception raised by the wrapped method."""

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                logger.debug(f"Profiler.{func.__name__} failed: {e}", exc_info=True)
                return default

        return wrapper

    return decorator


def _extension_flags(mode: Mode) -> ExtensionFlags:
    if mode & Mode.FULL == Mode.FULL:
        return ExtensionFlags.NONE
    if mode & Mode.PROFILING:
        return ExtensionFlags.NO_SPANS
    if mode & Mode.TRACING:
        return ExtensionFlags.NO_HIERARCHICAL
    return ExtensionFlags.NO_COMPILE | ExtensionFlags.NO_USERLAND | ExtensionFlags.NO_BUILTINS


def _original_exception(exc: BaseException) -> BaseException:
    seen = {id(exc)}
    while True:
        previous = exc.__cause__ or exc.__context__
        if previous is None or id(previous) in seen:
            return exc
        seen.add(id(previous))
        exc = previous


def _exception_name(exc: BaseException) -> str:
    cls = type(exc)
    if cls.__module__ == "builtins":
        return cls.__qualname__
    return f"{cls.__module__}.{cls.__qualname__}"


def _excepthook(exc_type, exc, tb) -> None:
    profiler = context.get_current_profiler()
    if profiler is not None:
        profiler.log_exception(exc)
    if _previous_excepthook is not None:
        _previous_excepthook(exc_type, exc, tb)


def _install_excepthook() -> None:
    global _previous_excepthook
    if sys.excepthook is _excepthook:
        return
    _previous_excepthook = sys.excepthook
    sys.excepthook = _excepthook


def _shutdown_all() -> None:
    for profiler in list(_shutdown_profilers):
        profiler.shutdown()


def _install_process_hooks() -> None:
    """Register the exit hook and excepthook once per process."""
    global _atexit_registered
    if not _atexit_registered:
        atexit.register(_shutdown_all)
        _atexit_registered = True
    _install_excepthook()


class Profiler:
    """Trace lifecycle for one execution context.

    States: not started, started (with a ``Mode``), stopped. ``start()``
    while started is a no-op, use ``ignore_transaction()`` to discard a trace.
    """

    def __init__(
        self,
        api_key: str | None = None,
        backend: Backend | None = None,
        extension: ProfilingExtension | None = None,
        register_shutdown: bool = False,
        clock: Callable[[], float] = time.time,
        rand: Callable[[int, int], int] = random.randint,
        now: Callable[[], float] = time.time,
        **options: Any,
    ):
        """Create a profiler.

        Args:
            api_key: API key. Falls back to TIDEWAYS_APIKEY env var.
            backend: Transport for finished traces. Defaults to a
                ``NetworkBackend`` built from the connection options.
            extension: Profiling engine. Detected from the ``extension``
                option when omitted.
            register_shutdown: Stop the trace at interpreter exit and record
                uncaught exceptions.
            clock: Clock for span timestamps (seconds).
            rand: Random source for the sampling draw.
            now: Unix time source for trigger expiry.
            **options: Remaining ``ProfilerOptions`` fields.
        """
        try:
            self.options = ProfilerOptions.resolve(api_key=api_key, **options)
        except ConfigurationError as e:
            logger.warning(f"Invalid Tideways configuration, profiling disabled: {e}")
            self.options = ProfilerOptions(enabled=False)

        self.backend = backend or NetworkBackend(
            self.options.connection,
            self.options.udp_connection,
            self.options.timeout_us,
        )
        self.extension = extension or detect_extension(self.options.extension)
        self.registry = SpanRegistry(clock)
        self.default_options: dict[str, Any] = {
            "ignored_functions": list(DEFAULT_IGNORED_FUNCTIONS),
            "transaction_function": None,
            "exception_function": None,
            "framework": None,
        }

        self._rand = rand
        self._now = now
        self._register_shutdown = register_shutdown
        self._shutdown_registered = False
        self._trace: TraceContext | None = None
        self._root: Span | None = None
        self._environ: Mapping[str, Any] = {}
        self._measured_by_extension = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @_guarded()
    def start(self, environ: Mapping[str, Any] | None = None, **overrides: Any) -> None:
        """Start a new trace.

        Args:
            environ: Request variables used for trigger detection and the
                trace title. A WSGI environ for web requests; defaults to
                ``os.environ``.
            **overrides: Option overrides for this trace (``api_key``,
                ``sample_rate``, ``collect``, ``monitor``, ...).
        """
        if self._trace is not None:
            logger.debug("Trace already started, ignoring start().")
            return

        try:
            options = self.options.merge(**overrides)
            sample_rate = int(options.sample_rate)
        except (TypeError, ValueError) as e:
            logger.warning(f"Invalid Tideways options, not starting trace: {e}")
            return

        if not options.enabled:
            logger.debug("Tideways is disabled, not starting trace.")
            return

        if not options.api_key:
            logger.debug("No Tideways API key configured, not starting trace.")
            return

        configure_logging(options.log_level)

        self._environ = os.environ if environ is None else environ
        framework = options.framework or self.default_options["framework"]
        if framework:
            self.detect_framework(framework, cli=not is_web_request(self._environ))

        if self._register_shutdown:
            self._install_shutdown()

        self._trace = TraceContext(api_key=options.api_key, service=options.service)

        decision = decide_mode(
            options.api_key,
            sample_rate,
            options.collect,
            options.monitor,
            options.triggered,
            environ=self._environ,
            has_extension=self.extension.available,
            rand=self._rand,
            now=self._now,
        )
        self._trace.keep = decision.keep
        self._enable(decision.mode)

        if decision.user is not None:
            self.set_custom_variable("user", decision.user)

    def _enable(self, mode: Mode) -> None:
        if mode == Mode.NONE:
            logger.debug("Collection mode is none, trace discarded.")
            self._reset()
            return

        self._trace.mode = mode
        self.registry.clear()
        self._root = self.registry.create_span(ROOT_SPAN_NAME)
        self._measured_by_extension = False

        if self.extension.available:
            self.extension.enable(_extension_flags(mode), self.default_options)
            self._measured_by_extension = bool(mode & Mode.PROFILING)

        if not self._measured_by_extension:
            self._root.start_timer()

        logger.info(
            f"Starting {self.extension.name} extension for trace "
            f"{self._trace.trace_id} with mode: {mode!r}"
        )

    @_guarded()
    def start_development(self, api_key: str | None = None, environ: Mapping[str, Any] | None = None, **overrides: Any) -> None:
        """Start a trace that is always collected in full and kept.

        Generates a short-lived trigger for this process, so the trace goes
        through the regular trigger authentication. Expensive: do not call it
        for every request in production.
        """
        api_key = api_key or self.options.api_key
        if not api_key:
            logger.debug("No Tideways API key configured, not starting trace.")
            return

        env = dict(os.environ if environ is None else environ)
        env[TRIGGER_SESSION] = build_trigger_query(api_key, now=self._now)
        self.start(env, api_key=api_key, **overrides)

    @_guarded()
    def stop(self) -> None:
        """Stop the trace and send it to the collector."""
        if self._trace is None:
            return

        trace, root = self._trace, self._root
        try:
            if trace.transaction_name == DEFAULT_TRANSACTION_NAME:
                trace.transaction_name = self.extension.transaction_name() or DEFAULT_TRANSACTION_NAME

            full = is_full_transport(trace.mode, trace.has_error)
            profdata = self.extension.disable() if self.extension.available else {}

            if self._measured_by_extension:
                wall = (profdata.get(MAIN) or {}).get("wt")
                root.record_duration(wall if wall else self.registry.now())
            else:
                root.stop_timer()

            root.annotate(collect_annotations(
                full,
                self.extension,
                self._environ,
                self.default_options["framework"],
            ))

            payload, reliable = assemble_trace(trace, self.registry.get_all(), profdata)
            wire = payload.to_wire()
        finally:
            self._reset()

        if reliable:
            self.backend.socket_store(wire)
        else:
            self.backend.udp_store(wire)

    @_guarded()
    def ignore_transaction(self) -> None:
        """Discard the running trace without sending anything."""
        if self._trace is None:
            return
        if self.extension.available:
            self.extension.disable()
        self._reset()

    @_guarded()
    def shutdown(self) -> None:
        """Stop the running trace at interpreter exit."""
        if self._trace is None:
            return
        self.stop()

    def _reset(self) -> None:
        self._trace = None
        self._root = None
        self._environ = {}
        self._measured_by_extension = False
        self.registry.clear()

    def _install_shutdown(self) -> None:
        if self._shutdown_registered:
            return
        _shutdown_profilers.add(self)
        _install_process_hooks()
        self._shutdown_registered = True

    # =========================================================================
    # State
    # =========================================================================

    @property
    def mode(self) -> Mode:
        return self._trace.mode if self._trace is not None else Mode.NONE

    @property
    def trace(self) -> TraceContext | None:
        return self._trace

    @property
    def root_span(self) -> Span | None:
        return self._root

    def is_started(self) -> bool:
        return self._trace is not None

    def is_profiling(self) -> bool:
        return bool(self.mode & Mode.PROFILING)

    def is_tracing(self) -> bool:
        """True while spans are recorded, e.g. to decide on propagating headers."""
        return bool(self.mode & Mode.TRACING)

    def current_trace_id(self) -> int:
        return self._trace.trace_id if self._trace is not None else 0

    # =========================================================================
    # Trace metadata
    # =========================================================================

    @_guarded()
    def set_transaction_name(self, name: str | None) -> None:
        if self._trace is not None:
            self._trace.transaction_name = name or DEFAULT_TRANSACTION_NAME

    @_guarded()
    def set_service_name(self, name: str | None) -> None:
        if self._trace is not None:
            self._trace.service = name or None

    @_guarded()
    def set_correlation_id(self, correlation_id: str | None) -> None:
        if self._trace is not None:
            self._trace.correlation_id = correlation_id

    @_guarded()
    def use_request_as_transaction_name(self, environ: Mapping[str, Any] | None = None) -> None:
        """Name the transaction ``"GET /path"`` or ``"cli:<script>"``."""
        environ = environ if environ is not None else self._environ
        if is_web_request(environ):
            self.set_transaction_name(f"{environ['REQUEST_METHOD']} {request_path(environ)}")
        else:
            self.set_transaction_name(f"cli:{script_name()}")

    @_guarded()
    def set_custom_variable(self, name: str, value: Any) -> None:
        """Annotate the root span. Only for collected traces and scalar values.

        Do not pass private data, it is not encrypted by the collector.
        """
        if not self.mode & Mode.FULL or not is_scalar(value) or self._root is None:
            return
        self._root.annotate({name: value})

    def transaction_hash(self) -> str:
        """Transaction hash used for real user monitoring."""
        name = self._trace.transaction_name if self._trace is not None else DEFAULT_TRANSACTION_NAME
        return hashlib.sha1(name.encode("utf-8")).hexdigest()[:12]

    def api_hash(self) -> str:
        """API key hash used for real user monitoring."""
        return hashlib.sha1(self.options.api_key.encode("utf-8")).hexdigest()

    # =========================================================================
    # Spans
    # =========================================================================

    @_guarded(default=_NULL_SPAN)
    def create_span(self, name: str | None = None) -> Span:
        """Create a span in the current trace.

        Returns a ``NullSpan`` when the trace is not tracing.
        """
        if not self.mode & Mode.TRACING:
            return _NULL_SPAN
        return self.registry.create_span(name)

    @_guarded(default=_NULL_SPAN)
    def create_sql_span(self, query: str) -> Span:
        """Create a ``sql`` span titled with the anonymized ``query``."""
        span = self.create_span("sql")
        span.annotate({"title": anonymize(query)})
        return span

    # =========================================================================
    # Errors
    # =========================================================================

    def _record_error(self, error: dict[str, str | None]) -> None:
        if self._trace is None or self._root is None:
            return
        error = {k: v for k, v in error.items() if v is not None}
        if self._trace.record_error(error):
            self._root.annotate(error)

    @_guarded()
    def log_fatal(
        self,
        message: str,
        file: str,
        line: int,
        type: str | None = None,
        trace: Any = None,
    ) -> None:
        """Record a fatal error. Only the first error of a trace is kept.

        Args:
            message: Error message.
            file: File the error occurred in.
            line: Line the error occurred on.
            type: Error type name. Defaults to ``FatalError``.
            trace: Backtrace as string, traceback or list of frames.
        """
        if trace is not None and not isinstance(trace, str):
            trace = convert_to_string(trace)

        self._record_error({
            "err_msg": str(message),
            "err_source": f"{file}:{line}",
            "err_exception": type or "FatalError",
            "err_trace": trace,
        })

    @_guarded()
    def log_exception(self, exception: BaseException | str) -> None:
        """Record an exception. Only the first error of a trace is kept.

        The innermost exception of the ``__cause__``/``__context__`` chain is
        recorded, as that is where the failure originated.
        """
        if isinstance(exception, str):
            exception = RuntimeError(exception)
        if not isinstance(exception, BaseException):
            return

        exception = _original_exception(exception)
        self._record_error({
            "err_msg": str(exception),
            "err_source": exception_source(exception),
            "err_exception": _exception_name(exception),
            "err_trace": convert_to_string(exception.__traceback__),
        })

    # =========================================================================
    # Profiling options
    # =========================================================================

    def detect_framework(self, framework: str, cli: bool = False) -> None:
        """Configure transaction and exception hooks for ``framework``.

        Unknown frameworks are taken as the transaction function name.
        """
        hooks = resolve_framework(framework, cli)
        self.default_options["framework"] = framework
        self.default_options["transaction_function"] = hooks.transaction_function
        self.default_options["exception_function"] = hooks.exception_function

    def add_ignore_functions(self, function_names: Iterable[str]) -> None:
        """Leave these functions out of the call graph."""
        self.default_options["ignored_functions"].extend(function_names)
