"""Environment variable definitions for the Tideways SDK.

This module defines all environment variables used to configure the SDK.
Each variable includes documentation on its purpose, expected values, and defaults.

Usage:
    import os
    from tideways.env import TIDEWAYS_APIKEY

    api_key = os.environ.get(TIDEWAYS_APIKEY)
"""

# =============================================================================
# Authentication
# =============================================================================

TIDEWAYS_APIKEY = "TIDEWAYS_APIKEY"
"""
.. envvar:: TIDEWAYS_APIKEY

Application API key. Without it no trace is started.
Also used as HMAC key material for trigger requests.
"""

# =============================================================================
# Sampling
# =============================================================================

TIDEWAYS_SAMPLERATE = "TIDEWAYS_SAMPLERATE"
"""
.. envvar:: TIDEWAYS_SAMPLERATE

Percentage (0-100) of requests that are collected in the collect mode.

**Default:** ``10``
"""

TIDEWAYS_COLLECT = "TIDEWAYS_COLLECT"
"""
.. envvar:: TIDEWAYS_COLLECT

Mode for sampled requests: ``basic``, ``profiling``, ``tracing`` or ``full``.

**Default:** ``profiling``
"""

TIDEWAYS_MONITOR = "TIDEWAYS_MONITOR"
"""
.. envvar:: TIDEWAYS_MONITOR

Mode for requests that are not sampled. Only ``basic`` or ``none`` are
meaningful, anything else is reduced to ``basic``.

**Default:** ``basic``
"""

# =============================================================================
# Connection
# =============================================================================

TIDEWAYS_CONNECTION = "TIDEWAYS_CONNECTION"
"""
.. envvar:: TIDEWAYS_CONNECTION

Stream socket of the collector daemon, ``unix://<path>`` or ``tcp://host:port``.

**Default:** ``unix:///var/run/tideways/tidewaysd.sock``
"""

TIDEWAYS_UDP_CONNECTION = "TIDEWAYS_UDP_CONNECTION"
"""
.. envvar:: TIDEWAYS_UDP_CONNECTION

UDP address of the collector daemon.

**Default:** ``127.0.0.1:8135``
"""

TIDEWAYS_TIMEOUT = "TIDEWAYS_TIMEOUT"
"""
.. envvar:: TIDEWAYS_TIMEOUT

Stream socket timeout in microseconds. ``0`` falls back to the default.

**Default:** ``10000``
"""

# =============================================================================
# Tracing Context
# =============================================================================

TIDEWAYS_SERVICE = "TIDEWAYS_SERVICE"
"""
.. envvar:: TIDEWAYS_SERVICE

Name of the service generating traces.
"""

TIDEWAYS_FRAMEWORK = "TIDEWAYS_FRAMEWORK"
"""
.. envvar:: TIDEWAYS_FRAMEWORK

Framework identifier (see ``tideways.frameworks``) or a fully qualified
transaction function name.
"""

TIDEWAYS_EXTENSION = "TIDEWAYS_EXTENSION"
"""
.. envvar:: TIDEWAYS_EXTENSION

Profiling engine: ``auto``, ``cprofile`` or ``none``.

**Default:** ``auto``
"""

# =============================================================================
# Trigger Requests
# =============================================================================

TIDEWAYS_SESSION = "TIDEWAYS_SESSION"
"""
.. envvar:: TIDEWAYS_SESSION

Query-string encoded trigger parameters (``hash``, ``time``, ``user``,
``method``) for CLI and worker processes.
"""

TIDEWAYS_DISABLE_SESSIONS = "TIDEWAYS_DISABLE_SESSIONS"
"""
.. envvar:: TIDEWAYS_DISABLE_SESSIONS

Ignore all trigger parameters when set to a truthy value.
"""

# =============================================================================
# Feature Flags
# =============================================================================

TIDEWAYS_ENABLED = "TIDEWAYS_ENABLED"
"""
.. envvar:: TIDEWAYS_ENABLED

Enable or disable the SDK. When disabled, all calls become no-ops.
Accepts: "true", "false", "1", "0", "yes", "no", "on", "off" (case-insensitive)

**Default:** ``true``
"""

TIDEWAYS_LOG_LEVEL = "TIDEWAYS_LOG_LEVEL"
"""
.. envvar:: TIDEWAYS_LOG_LEVEL

Verbosity of the ``tideways`` logger: 0 = leave untouched, 1 = warning,
2 = info, 3 = debug.

**Default:** ``0``
"""

TIDEWAYS_AUTO_START = "TIDEWAYS_AUTO_START"
"""
.. envvar:: TIDEWAYS_AUTO_START

Start a trace from ``tideways.auto_start()``.
"""

TIDEWAYS_MONITOR_CLI = "TIDEWAYS_MONITOR_CLI"
"""
.. envvar:: TIDEWAYS_MONITOR_CLI

Let ``tideways.auto_start()`` monitor command line scripts.
"""
