"""Constants used by the Tideways SDK.

This module defines constants used throughout the SDK including collection
modes, engine flags, default values and wire-format keys.
"""

from enum import IntFlag

# =============================================================================
# SDK Identification
# =============================================================================

SDK_VERSION = "0.1.0"
"""SDK version. Should match pyproject.toml version."""

# =============================================================================
# Collection Modes
# =============================================================================


class Mode(IntFlag):
    """Bitmask describing what kind of data a trace collects."""

    NONE = 0
    BASIC = 1
    PROFILING = 2
    TRACING = 4
    FULL = PROFILING | TRACING


class ExtensionFlags(IntFlag):
    """Flags passed to ``ProfilingExtension.enable``."""

    NONE = 0
    NO_BUILTINS = 1
    NO_USERLAND = 2
    NO_COMPILE = 4
    NO_SPANS = 8
    NO_HIERARCHICAL = 16


# =============================================================================
# Default Values
# =============================================================================

DEFAULT_SAMPLE_RATE = 10
"""Default percentage of requests that get the collect mode."""

DEFAULT_COLLECT_MODE = Mode.PROFILING
"""Mode used when the sampling draw hits."""

DEFAULT_MONITOR_MODE = Mode.BASIC
"""Mode used when the sampling draw misses. Always masked to BASIC."""

DEFAULT_TRIGGERED_MODE = Mode.FULL
"""Mode used for authenticated trigger requests."""

DEFAULT_CONNECTION = "unix:///var/run/tideways/tidewaysd.sock"
"""Reliable (stream socket) address of the local collector daemon."""

DEFAULT_UDP_CONNECTION = "127.0.0.1:8135"
"""Lossy (UDP) address of the local collector daemon."""

DEFAULT_TIMEOUT_US = 10000
"""Stream socket timeout in microseconds. Never zero."""

KEEP_TIMEOUT_FACTOR = 10
"""Timeout multiplier for kept (developer) traces."""

UDP_TIMEOUT_US = 200
"""UDP socket timeout in microseconds."""

DEFAULT_TRANSACTION_NAME = "default"
"""Transaction name used until one is set."""

ROOT_SPAN_NAME = "app"
"""Category of the implicit root span."""

TRIGGER_TTL = 60
"""Seconds a development trigger generated by ``start_development`` is valid."""

# =============================================================================
# Trigger Sources
# =============================================================================

TRIGGER_HEADER = "HTTP_X_TIDEWAYS_PROFILER"
TRIGGER_SESSION = "TIDEWAYS_SESSION"
TRIGGER_QUERY_PARAM = "_tideways"
TRIGGER_FIELDS = ("hash", "time", "user", "method")

# =============================================================================
# Wire Format
# =============================================================================

PAYLOAD_TYPE_TRACE = "trace"
"""Envelope type for payloads sent over the stream socket."""

SPAN_NAME = "n"
SPAN_STARTS = "b"
SPAN_STOPS = "e"
SPAN_ANNOTATIONS = "a"
