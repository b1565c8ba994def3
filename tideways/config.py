"""Option resolution for the Tideways profiler.

Every option can be passed explicitly and falls back to an environment
variable, then to a default from ``tideways.constants``.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from tideways.constants import (
    DEFAULT_COLLECT_MODE,
    DEFAULT_CONNECTION,
    DEFAULT_MONITOR_MODE,
    DEFAULT_SAMPLE_RATE,
    DEFAULT_TIMEOUT_US,
    DEFAULT_TRIGGERED_MODE,
    DEFAULT_UDP_CONNECTION,
    Mode,
)
from tideways.env import (
    TIDEWAYS_APIKEY,
    TIDEWAYS_COLLECT,
    TIDEWAYS_CONNECTION,
    TIDEWAYS_ENABLED,
    TIDEWAYS_EXTENSION,
    TIDEWAYS_FRAMEWORK,
    TIDEWAYS_LOG_LEVEL,
    TIDEWAYS_MONITOR,
    TIDEWAYS_SAMPLERATE,
    TIDEWAYS_SERVICE,
    TIDEWAYS_TIMEOUT,
    TIDEWAYS_UDP_CONNECTION,
)
from tideways.utils import parse_bool

logger = logging.getLogger(__name__)

_LOG_LEVELS = {1: logging.WARNING, 2: logging.INFO, 3: logging.DEBUG}


class ConfigurationError(ValueError):
    """Raised when options cannot be resolved into a usable configuration."""


def convert_mode(mode: Any) -> Mode:
    """Convert a mode name, int or ``Mode`` into a ``Mode``.

    Unknown names, non-integers and integers without any known mode bit
    become ``Mode.NONE``.
    """
    if isinstance(mode, str):
        name = mode.strip().upper()
        if name == "DISABLED":
            return Mode.NONE
        return Mode.__members__.get(name, Mode.NONE)
    if isinstance(mode, bool) or not isinstance(mode, int):
        return Mode.NONE
    if mode & (Mode.FULL | Mode.BASIC) == 0:
        return Mode.NONE
    return Mode(mode & (Mode.FULL | Mode.BASIC))


def configure_logging(level: int) -> None:
    """Apply the ``log_level`` option to the ``tideways`` logger.

    0 leaves the logger untouched, 1 = warning, 2 = info, 3 = debug.
    """
    if level in _LOG_LEVELS:
        logging.getLogger("tideways").setLevel(_LOG_LEVELS[level])


def _env_int(name: str, environ: Mapping[str, str]) -> int | None:
    value = environ.get(name)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")


@dataclass
class ProfilerOptions:
    """Resolved options for starting a trace."""

    api_key: str = ""
    sample_rate: int = DEFAULT_SAMPLE_RATE
    collect: Mode = DEFAULT_COLLECT_MODE
    monitor: Mode = DEFAULT_MONITOR_MODE
    triggered: Mode = DEFAULT_TRIGGERED_MODE
    service: str | None = None
    framework: str | None = None
    connection: str = DEFAULT_CONNECTION
    udp_connection: str = DEFAULT_UDP_CONNECTION
    timeout_us: int = DEFAULT_TIMEOUT_US
    extension: str = "auto"
    log_level: int = 0
    enabled: bool = True
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def resolve(
        cls,
        api_key: str | None = None,
        sample_rate: int | str | None = None,
        collect: Any = None,
        monitor: Any = None,
        triggered: Any = None,
        service: str | None = None,
        framework: str | None = None,
        connection: str | None = None,
        udp_connection: str | None = None,
        timeout_us: int | None = None,
        extension: str | None = None,
        log_level: int | None = None,
        enabled: bool | None = None,
        environ: Mapping[str, str] | None = None,
        **extra: Any,
    ) -> "ProfilerOptions":
        """Resolve options with environment variable fallbacks.

        Raises:
            ConfigurationError: If a numeric option cannot be parsed.
        """
        if environ is None:
            environ = os.environ

        if sample_rate is None:
            sample_rate = _env_int(TIDEWAYS_SAMPLERATE, environ)
            if sample_rate is None:
                sample_rate = DEFAULT_SAMPLE_RATE
        try:
            sample_rate = int(sample_rate)
        except (TypeError, ValueError):
            raise ConfigurationError(f"sample_rate must be an integer, got {sample_rate!r}")

        if timeout_us is None:
            timeout_us = _env_int(TIDEWAYS_TIMEOUT, environ)
        # A timeout is always enforced, 0 means default.
        timeout_us = int(timeout_us) if timeout_us else DEFAULT_TIMEOUT_US

        if log_level is None:
            log_level = _env_int(TIDEWAYS_LOG_LEVEL, environ) or 0

        if enabled is None:
            enabled = parse_bool(environ.get(TIDEWAYS_ENABLED), True)

        return cls(
            api_key=api_key or environ.get(TIDEWAYS_APIKEY, ""),
            sample_rate=sample_rate,
            collect=convert_mode(collect if collect is not None else environ.get(TIDEWAYS_COLLECT, DEFAULT_COLLECT_MODE)),
            monitor=convert_mode(monitor if monitor is not None else environ.get(TIDEWAYS_MONITOR, DEFAULT_MONITOR_MODE)),
            triggered=convert_mode(triggered if triggered is not None else DEFAULT_TRIGGERED_MODE),
            service=service or environ.get(TIDEWAYS_SERVICE) or None,
            framework=framework or environ.get(TIDEWAYS_FRAMEWORK) or None,
            connection=connection or environ.get(TIDEWAYS_CONNECTION) or DEFAULT_CONNECTION,
            udp_connection=udp_connection or environ.get(TIDEWAYS_UDP_CONNECTION) or DEFAULT_UDP_CONNECTION,
            timeout_us=timeout_us,
            extension=(extension or environ.get(TIDEWAYS_EXTENSION) or "auto").lower(),
            log_level=int(log_level),
            enabled=enabled,
            extra=extra,
        )

    def merge(self, **overrides: Any) -> "ProfilerOptions":
        """Return a copy with the given non-None fields replaced."""
        values = {k: v for k, v in overrides.items() if v is not None}
        for key in ("collect", "monitor", "triggered"):
            if key in values:
                values[key] = convert_mode(values[key])
        return replace(self, **values)
