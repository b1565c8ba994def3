"""Profiler lifecycle tests.

Each test builds its own profiler with an in-memory backend, a fake engine
and an empty environment, so no env var of the test runner leaks in.
"""

import hashlib
from urllib.parse import urlencode

from tideways.constants import ExtensionFlags, Mode
from tideways.decision import generate_trigger_hash
from tideways.extension import NoExtension
from tideways.spans import NullSpan
from tests.utils import API_KEY, FakeExtension, RecordingBackend, make_profiler

NOW = 1_700_000_000


def draw(value):
    return lambda a, b: value


def only_trace(backend: RecordingBackend) -> tuple[str, dict]:
    """Return the single stored trace and the path it took."""
    traces = [("socket", t) for t in backend.socket_traces] + [("udp", t) for t in backend.udp_traces]
    assert len(traces) == 1
    return traces[0]


# =============================================================================
# Scenarios
# =============================================================================


def test_sampled_trace_sent_reliably():
    """Test sample rate 100 collects a profile and sends every span."""
    backend = RecordingBackend()
    profiler = make_profiler(sample_rate=100, backend=backend, rand=draw(1))

    profiler.start({})
    assert profiler.is_profiling()
    profiler.stop()

    path, trace = only_trace(backend)
    assert path == "socket"
    assert trace["apiKey"] == API_KEY
    assert trace["tx"] == "default"
    assert trace["profdata"]["main()"]["wt"] == 1500
    assert "keep" not in trace
    assert len(trace["spans"]) == 1

    root = trace["spans"][0]
    assert root["n"] == "app"
    assert root["b"] == [0]
    assert root["e"] == [1500]


def test_unsampled_trace_sent_lossy():
    """Test sample rate 0 monitors with BASIC and sends only the root span."""
    backend = RecordingBackend()
    profiler = make_profiler(sample_rate=0, backend=backend, rand=draw(1))

    profiler.start({})
    assert profiler.mode == Mode.BASIC
    assert not profiler.is_profiling()
    assert not profiler.is_tracing()
    profiler.stop()

    path, trace = only_trace(backend)
    assert path == "udp"
    assert "profdata" not in trace
    assert len(trace["spans"]) == 1
    assert set(trace["spans"][0]["a"]) == {"mem"}
    assert len(trace["spans"][0]["b"]) == len(trace["spans"][0]["e"]) == 1


def test_unsampled_trace_with_fatal_sent_reliably():
    """Test an error upgrades an unsampled trace to the reliable path."""
    backend = RecordingBackend()
    profiler = make_profiler(sample_rate=0, backend=backend, rand=draw(1))

    profiler.start({})
    profiler.log_fatal("Allowed memory size exhausted", "/srv/app.py", 12)
    profiler.stop()

    path, trace = only_trace(backend)
    assert path == "socket"
    assert trace["keep"] is True

    annotations = trace["spans"][0]["a"]
    assert annotations["err_msg"] == "Allowed memory size exhausted"
    assert annotations["err_source"] == "/srv/app.py:12"
    assert annotations["err_exception"] == "FatalError"
    assert "python" in annotations


def test_trigger_forces_profiling_and_keep():
    """Test a valid trigger for key "foo" collects and keeps the trace."""
    backend = RecordingBackend()
    profiler = make_profiler(api_key="foo", sample_rate=0, backend=backend, rand=draw(100), now=lambda: NOW)
    expires = NOW + 100
    query = urlencode({
        "hash": generate_trigger_hash("foo", "", expires, ""),
        "time": expires,
        "user": "",
        "method": "",
    })

    profiler.start({"TIDEWAYS_SESSION": query})
    assert profiler.is_profiling()
    assert profiler.is_tracing()
    profiler.stop()

    path, trace = only_trace(backend)
    assert path == "socket"
    assert trace["keep"] is True
    assert trace["spans"][0]["a"]["user"] == ""


def test_expired_trigger_is_sampled():
    """Test an expired trigger falls back to the sampling draw."""
    backend = RecordingBackend()
    profiler = make_profiler(api_key="foo", sample_rate=0, backend=backend, rand=draw(100), now=lambda: NOW)
    query = urlencode({
        "hash": generate_trigger_hash("foo", "", NOW - 1, "alice"),
        "time": NOW - 1,
        "user": "alice",
        "method": "",
    })

    profiler.start({"TIDEWAYS_SESSION": query})
    assert profiler.mode == Mode.BASIC
    profiler.stop()

    path, trace = only_trace(backend)
    assert path == "udp"
    assert "keep" not in trace


def test_start_development_collects_full_trace():
    """Test start_development() goes through trigger authentication."""
    backend = RecordingBackend()
    profiler = make_profiler(sample_rate=0, backend=backend, rand=draw(100), now=lambda: NOW)

    profiler.start_development(environ={})
    assert profiler.mode == Mode.FULL
    profiler.stop()

    path, trace = only_trace(backend)
    assert path == "socket"
    assert trace["keep"] is True


# =============================================================================
# Lifecycle
# =============================================================================


def test_not_started_without_api_key():
    """Test start() without an API key does not start a trace."""
    backend = RecordingBackend()
    profiler = make_profiler(api_key="", backend=backend)

    profiler.start({})
    profiler.stop()

    assert not profiler.is_started()
    assert backend.socket_traces == backend.udp_traces == []


def test_not_started_when_disabled():
    """Test enabled=False prevents traces."""
    profiler = make_profiler(enabled=False)
    profiler.start({})

    assert not profiler.is_started()


def test_mode_none_does_not_start():
    """Test a disabled monitor mode skips unsampled traces."""
    backend = RecordingBackend()
    profiler = make_profiler(sample_rate=0, monitor="disabled", backend=backend)

    profiler.start({})
    profiler.stop()

    assert not profiler.is_started()
    assert backend.udp_traces == []


def test_stop_when_not_started_is_noop():
    """Test stop() without start() sends nothing."""
    backend = RecordingBackend()
    profiler = make_profiler(backend=backend)
    profiler.stop()

    assert backend.socket_traces == backend.udp_traces == []


def test_start_while_started_is_noop():
    """Test a second start() keeps the running trace and its spans."""
    backend = RecordingBackend()
    extension = FakeExtension()
    profiler = make_profiler(sample_rate=100, collect="full", backend=backend, extension=extension, rand=draw(1))

    profiler.start({})
    first_id = profiler.current_trace_id()
    profiler.create_span("sql")
    profiler.start({}, collect="basic")

    assert profiler.current_trace_id() == first_id
    assert profiler.mode == Mode.FULL
    assert len(profiler.registry) == 2
    assert extension.disable_calls == 0
    assert len(extension.enabled_with) == 1

    profiler.stop()

    path, trace = only_trace(backend)
    assert trace["id"] == first_id
    assert [s.get("n") for s in trace["spans"]] == ["app", "sql"]


def test_start_after_ignore_transaction_begins_fresh_trace():
    """Test ignore_transaction() is the way to discard a running trace."""
    profiler = make_profiler(sample_rate=100, collect="full", rand=draw(1))

    profiler.start({})
    first_id = profiler.current_trace_id()
    profiler.create_span("sql")
    profiler.ignore_transaction()
    profiler.start({})

    assert profiler.current_trace_id() != first_id
    assert len(profiler.registry) == 1


def test_ignore_transaction_sends_nothing():
    """Test ignore_transaction() discards the trace."""
    backend = RecordingBackend()
    profiler = make_profiler(sample_rate=100, backend=backend, rand=draw(1))

    profiler.start({})
    profiler.ignore_transaction()
    profiler.stop()

    assert not profiler.is_started()
    assert backend.socket_traces == backend.udp_traces == []


def test_start_overrides_options():
    """Test keyword arguments to start() override configured options."""
    profiler = make_profiler(sample_rate=0, rand=draw(50))
    profiler.start({}, sample_rate=100, collect="tracing")

    assert profiler.mode == Mode.TRACING


def test_extension_flags_follow_mode():
    """Test the engine is enabled with flags matching the mode."""
    for collect, flags in [
        ("full", ExtensionFlags.NONE),
        ("profiling", ExtensionFlags.NO_SPANS),
        ("tracing", ExtensionFlags.NO_HIERARCHICAL),
    ]:
        extension = FakeExtension()
        profiler = make_profiler(sample_rate=100, collect=collect, extension=extension, rand=draw(1))
        profiler.start({})

        assert extension.enabled_with == [flags]
        profiler.ignore_transaction()


def test_backend_failure_is_swallowed():
    """Test a failing backend never raises into the application."""

    class BrokenBackend(RecordingBackend):
        def socket_store(self, trace):
            raise RuntimeError("boom")

    profiler = make_profiler(sample_rate=100, backend=BrokenBackend(), rand=draw(1))
    profiler.start({})
    profiler.stop()

    assert not profiler.is_started()


def test_shutdown_stops_running_trace():
    """Test shutdown() sends the running trace."""
    backend = RecordingBackend()
    profiler = make_profiler(sample_rate=100, backend=backend, rand=draw(1))

    profiler.start({})
    profiler.shutdown()
    profiler.shutdown()

    assert len(backend.socket_traces) == 1


# =============================================================================
# Engine fallback
# =============================================================================


def test_without_extension_only_wall_time_is_measured():
    """Test FULL without an engine collapses to BASIC."""
    backend = RecordingBackend()
    profiler = make_profiler(
        sample_rate=100, collect="full", backend=backend, extension=NoExtension(), rand=draw(1)
    )

    profiler.start({})
    assert profiler.mode == Mode.BASIC
    assert isinstance(profiler.create_span("sql"), NullSpan)
    profiler.stop()

    path, trace = only_trace(backend)
    assert path == "udp"
    assert "profdata" not in trace
    assert [s.get("n") for s in trace["spans"]] == ["app"]
    assert len(trace["spans"][0]["b"]) == len(trace["spans"][0]["e"]) == 1


def test_without_extension_trigger_is_kept():
    """Test a triggered trace without an engine keeps its keep flag."""
    backend = RecordingBackend()
    profiler = make_profiler(
        api_key="foo", sample_rate=0, backend=backend, extension=NoExtension(), now=lambda: NOW
    )
    expires = NOW + 100
    query = urlencode({
        "hash": generate_trigger_hash("foo", "", expires, "bob"),
        "time": expires,
        "user": "bob",
        "method": "",
    })

    profiler.start({"TIDEWAYS_SESSION": query})
    assert profiler.mode == Mode.BASIC
    profiler.stop()

    path, trace = only_trace(backend)
    assert trace["keep"] is True


def test_extension_transaction_name_used_for_default():
    """Test the engine's detected transaction name replaces "default"."""
    backend = RecordingBackend()
    profiler = make_profiler(
        sample_rate=100, backend=backend, extension=FakeExtension(tx_name="ProductController"), rand=draw(1)
    )

    profiler.start({})
    profiler.stop()

    assert backend.socket_traces[0]["tx"] == "ProductController"


def test_explicit_transaction_name_wins_over_extension():
    """Test set_transaction_name() is not replaced by the engine."""
    backend = RecordingBackend()
    profiler = make_profiler(
        sample_rate=100, backend=backend, extension=FakeExtension(tx_name="Detected"), rand=draw(1)
    )

    profiler.start({})
    profiler.set_transaction_name("checkout")
    profiler.stop()

    assert backend.socket_traces[0]["tx"] == "checkout"


# =============================================================================
# Metadata
# =============================================================================


def test_full_annotations_on_root():
    """Test collected traces carry process and request annotations."""
    backend = RecordingBackend()
    profiler = make_profiler(sample_rate=100, framework="flask", backend=backend, rand=draw(1))
    environ = {
        "REQUEST_METHOD": "GET",
        "HTTP_HOST": "shop.example.com",
        "wsgi.url_scheme": "https",
        "PATH_INFO": "/products",
        "QUERY_STRING": "page=2",
    }

    profiler.start(environ)
    profiler.stop()

    annotations = backend.socket_traces[0]["spans"][0]["a"]
    assert annotations["xhpv"] == "fake-1.0"
    assert annotations["framework"] == "flask"
    assert annotations["sapi"] == "wsgi"
    assert annotations["title"] == "GET https://shop.example.com/products"
    assert annotations["query"] == "page=2"
    assert "python" in annotations
    assert int(annotations["mem"]) >= 0


def test_service_and_correlation_id_in_payload():
    """Test service and correlation id are sent when set."""
    backend = RecordingBackend()
    profiler = make_profiler(sample_rate=100, service="api", backend=backend, rand=draw(1))

    profiler.start({})
    profiler.set_correlation_id("req-42")
    profiler.stop()

    trace = backend.socket_traces[0]
    assert trace["service"] == "api"
    assert trace["cid"] == "req-42"


def test_set_service_name_overrides_option():
    """Test set_service_name() replaces the configured service."""
    backend = RecordingBackend()
    profiler = make_profiler(sample_rate=100, service="api", backend=backend, rand=draw(1))

    profiler.start({})
    profiler.set_service_name("worker")
    profiler.stop()

    assert backend.socket_traces[0]["service"] == "worker"


def test_empty_transaction_name_resets_to_default():
    """Test set_transaction_name("") falls back to "default"."""
    profiler = make_profiler(sample_rate=100, rand=draw(1))
    profiler.start({})
    profiler.set_transaction_name("")

    assert profiler.trace.transaction_name == "default"


def test_use_request_as_transaction_name():
    """Test request method and path name the transaction."""
    profiler = make_profiler(sample_rate=100, rand=draw(1))
    environ = {"REQUEST_METHOD": "POST", "SCRIPT_NAME": "/app", "PATH_INFO": "/orders"}

    profiler.start(environ)
    profiler.use_request_as_transaction_name()

    assert profiler.trace.transaction_name == "POST /app/orders"


def test_use_request_as_transaction_name_cli():
    """Test CLI processes are named after the script."""
    profiler = make_profiler(sample_rate=100, rand=draw(1))
    profiler.start({})
    profiler.use_request_as_transaction_name()

    assert profiler.trace.transaction_name.startswith("cli:")


def test_custom_variable_only_for_collected_traces():
    """Test set_custom_variable() is ignored for BASIC traces."""
    basic = make_profiler(sample_rate=0, rand=draw(1))
    basic.start({})
    basic.set_custom_variable("customer", "acme")

    assert "customer" not in basic.root_span.annotations

    profiled = make_profiler(sample_rate=100, rand=draw(1))
    profiled.start({})
    profiled.set_custom_variable("customer", "acme")
    profiled.set_custom_variable("items", [1, 2])

    assert profiled.root_span.annotations["customer"] == "acme"
    assert "items" not in profiled.root_span.annotations


def test_trace_ids():
    """Test current_trace_id() is 0 when no trace runs."""
    profiler = make_profiler(sample_rate=100, rand=draw(1))
    assert profiler.current_trace_id() == 0

    profiler.start({})
    assert profiler.current_trace_id() > 0


def test_hashes():
    """Test transaction and API key hashes."""
    profiler = make_profiler(sample_rate=100, rand=draw(1))
    profiler.start({})
    profiler.set_transaction_name("checkout")

    assert profiler.transaction_hash() == hashlib.sha1(b"checkout").hexdigest()[:12]
    assert profiler.api_hash() == hashlib.sha1(API_KEY.encode()).hexdigest()


# =============================================================================
# Spans
# =============================================================================


def test_create_span_outside_tracing_returns_null_span():
    """Test spans are only recorded in tracing modes."""
    profiler = make_profiler(sample_rate=100, collect="profiling", rand=draw(1))
    profiler.start({})

    assert isinstance(profiler.create_span("sql"), NullSpan)
    assert len(profiler.registry) == 1


def test_create_span_before_start_returns_null_span():
    """Test create_span() without a trace."""
    profiler = make_profiler()

    assert isinstance(profiler.create_span("sql"), NullSpan)


def test_spans_sent_with_trace():
    """Test spans created while tracing are part of the payload."""
    backend = RecordingBackend()
    profiler = make_profiler(sample_rate=100, collect="full", backend=backend, rand=draw(1))

    profiler.start({})
    span = profiler.create_sql_span("SELECT * FROM users WHERE id = 42 AND name = 'bob'")
    span.start_timer()
    span.stop_timer()
    profiler.stop()

    spans = backend.socket_traces[0]["spans"]
    assert [s.get("n") for s in spans] == ["app", "sql"]
    assert spans[1]["a"] == {"title": "SELECT * FROM users WHERE id = ? AND name = ?"}
    assert len(spans[1]["b"]) == len(spans[1]["e"]) == 1


# =============================================================================
# Errors
# =============================================================================


def test_first_error_wins():
    """Test only the first recorded error is kept."""
    backend = RecordingBackend()
    profiler = make_profiler(sample_rate=0, backend=backend, rand=draw(1))

    profiler.start({})
    profiler.log_exception(ValueError("first"))
    profiler.log_fatal("second", "x.py", 1)
    profiler.stop()

    annotations = backend.socket_traces[0]["spans"][0]["a"]
    assert annotations["err_msg"] == "first"
    assert annotations["err_exception"] == "ValueError"


def test_log_exception_records_original_cause():
    """Test the innermost exception of a chain is recorded."""
    backend = RecordingBackend()
    profiler = make_profiler(sample_rate=0, backend=backend, rand=draw(1))

    def lookup():
        return {}["sku"]

    profiler.start({})
    try:
        try:
            lookup()
        except KeyError as e:
            raise RuntimeError("lookup failed") from e
    except RuntimeError as e:
        profiler.log_exception(e)
    profiler.stop()

    annotations = backend.socket_traces[0]["spans"][0]["a"]
    assert annotations["err_exception"] == "KeyError"
    assert annotations["err_msg"] == "'sku'"
    assert annotations["err_source"].startswith(__file__)
    assert "lookup()" in annotations["err_trace"]


def test_log_exception_with_string():
    """Test a plain message is recorded as RuntimeError."""
    backend = RecordingBackend()
    profiler = make_profiler(sample_rate=0, backend=backend, rand=draw(1))

    profiler.start({})
    profiler.log_exception("Payment provider unavailable")
    profiler.stop()

    annotations = backend.socket_traces[0]["spans"][0]["a"]
    assert annotations["err_exception"] == "RuntimeError"
    assert annotations["err_msg"] == "Payment provider unavailable"


def test_log_fatal_with_type_and_trace():
    """Test log_fatal() with an explicit type and frame list."""
    backend = RecordingBackend()
    profiler = make_profiler(sample_rate=0, backend=backend, rand=draw(1))

    profiler.start({})
    profiler.log_fatal(
        "Maximum execution time exceeded",
        "/srv/worker.py",
        88,
        type="TimeoutError",
        trace=[{"function": "run", "class": "Worker", "file": "/srv/worker.py", "line": 88}],
    )
    profiler.stop()

    annotations = backend.socket_traces[0]["spans"][0]["a"]
    assert annotations["err_exception"] == "TimeoutError"
    assert annotations["err_trace"] == "#0 /srv/worker.py(88): Worker->run()\n"


def test_log_exception_without_trace_is_ignored():
    """Test errors before start() are dropped."""
    profiler = make_profiler()
    profiler.log_exception(ValueError("early"))

    assert profiler.trace is None


# =============================================================================
# Profiling options
# =============================================================================


class OptionsRecordingExtension(FakeExtension):
    def enable(self, flags, options):
        super().enable(flags, options)
        self.options = dict(options)


def test_add_ignore_functions_passed_to_extension():
    """Test ignored functions reach the engine."""
    extension = OptionsRecordingExtension()
    profiler = make_profiler(sample_rate=100, extension=extension, rand=draw(1))
    profiler.add_ignore_functions(["myapp.utils:slugify"])

    profiler.start({})

    assert "myapp.utils:slugify" in extension.options["ignored_functions"]
    assert "<built-in method builtins.len>" in extension.options["ignored_functions"]


def test_detect_framework_sets_hooks():
    """Test framework detection configures the engine hooks."""
    extension = OptionsRecordingExtension()
    profiler = make_profiler(sample_rate=100, extension=extension, rand=draw(1))
    profiler.detect_framework("django")

    profiler.start({"REQUEST_METHOD": "GET"})

    assert extension.options["framework"] == "django"
    assert extension.options["transaction_function"] == "django.urls.resolvers.URLResolver.resolve"
