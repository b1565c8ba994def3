"""Test utilities for Tideways SDK tests."""

from typing import Any, Mapping

from tideways.constants import ExtensionFlags
from tideways.context import set_current_profiler, set_current_span
from tideways.extension import MAIN, ProfilingExtension
from tideways.profiler import Profiler
from tideways.transport.backend import Backend

API_KEY = "test-api-key"


class RecordingBackend(Backend):
    """Backend that keeps every stored trace in memory."""

    def __init__(self):
        self.socket_traces: list[dict[str, Any]] = []
        self.udp_traces: list[dict[str, Any]] = []

    def socket_store(self, trace: dict[str, Any]) -> None:
        self.socket_traces.append(trace)

    def udp_store(self, trace: dict[str, Any]) -> None:
        self.udp_traces.append(trace)


class FakeExtension(ProfilingExtension):
    """Engine returning canned call-graph data."""

    name = "fake"

    def __init__(self, wall_us: int = 1500, tx_name: str | None = None):
        self.wall_us = wall_us
        self.tx_name = tx_name
        self.enabled_with: list[ExtensionFlags] = []
        self.disable_calls = 0

    @property
    def version(self) -> str:
        return "fake-1.0"

    def enable(self, flags: ExtensionFlags, options: Mapping[str, Any]) -> None:
        self.enabled_with.append(flags)

    def disable(self) -> dict[str, Any]:
        self.disable_calls += 1
        return {MAIN: {"ct": 1, "wt": self.wall_us}, "main()==>handle": {"ct": 1, "wt": self.wall_us - 100}}

    def transaction_name(self) -> str | None:
        return self.tx_name


def make_profiler(**options: Any) -> Profiler:
    """Create a profiler with an in-memory backend, isolated from env vars."""
    options.setdefault("api_key", API_KEY)
    options.setdefault("backend", RecordingBackend())
    options.setdefault("extension", FakeExtension())
    options.setdefault("environ", {})
    return Profiler(**options)


def reset_tideways() -> None:
    """Reset Tideways module state between tests."""
    import tideways

    tideways._default_options.clear()
    set_current_profiler(None)
    set_current_span(None)
