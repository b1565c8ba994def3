"""Profiling engines.

The profiler talks to the engine that does the actual call-stack measurement
only through ``ProfilingExtension``. The engine is selected once when the
profiler is created:

- ``CProfileExtension`` drives the interpreter's ``cProfile`` and reshapes its
  statistics into an xhprof-style call graph (``"caller==>callee"`` entries
  with call counts and inclusive wall time in microseconds).
- ``NoExtension`` is used when no engine can run. Traces then fall back to
  wall-clock measurement of the root span.
"""

import cProfile
import logging
import os
import platform
import sys
import time
from abc import ABC, abstractmethod
from typing import Any, Mapping

from tideways.constants import ExtensionFlags

logger = logging.getLogger(__name__)

MAIN = "main()"


class ProfilingExtension(ABC):
    """Interface of a call-graph profiling engine."""

    name: str = "abstract"
    available: bool = True

    @property
    @abstractmethod
    def version(self) -> str:
        """Version string reported as ``xhpv`` annotation."""

    @abstractmethod
    def enable(self, flags: ExtensionFlags, options: Mapping[str, Any]) -> None:
        """Start measuring."""

    @abstractmethod
    def disable(self) -> dict[str, Any]:
        """Stop measuring and return the call-graph data (may be empty)."""

    def transaction_name(self) -> str | None:
        """Transaction name detected by the engine, if any."""
        return None


class NoExtension(ProfilingExtension):
    """Fallback when no profiling engine is usable."""

    name = "none"
    available = False

    @property
    def version(self) -> str:
        return ""

    def enable(self, flags: ExtensionFlags, options: Mapping[str, Any]) -> None:
        pass

    def disable(self) -> dict[str, Any]:
        return {}


def _label(key: tuple[str, int, str]) -> str:
    filename, lineno, name = key
    if filename == "~":
        # builtins, e.g. "<built-in method time.sleep>"
        return name.strip("<>")
    module = os.path.splitext(os.path.basename(filename))[0]
    return f"{module}:{lineno}:{name}"


class CProfileExtension(ProfilingExtension):
    """Engine backed by ``cProfile``.

    Honours ``ignored_functions``. The framework hook names in the options
    are not used.
    """

    name = "cprofile"

    def __init__(self):
        self._profile: cProfile.Profile | None = None
        self._ignored: frozenset[str] = frozenset()
        self._started_at = 0.0
        self._flags = ExtensionFlags.NONE

    @property
    def version(self) -> str:
        return f"cprofile-{platform.python_version()}"

    @property
    def running(self) -> bool:
        return self._started_at > 0

    def enable(self, flags: ExtensionFlags, options: Mapping[str, Any]) -> None:
        if self.running:
            self.disable()

        self._flags = ExtensionFlags(flags)
        self._ignored = frozenset(options.get("ignored_functions") or ())
        self._started_at = time.perf_counter()

        # Basic and tracing-only modes need the wall time but no call graph.
        if self._flags & (ExtensionFlags.NO_USERLAND | ExtensionFlags.NO_HIERARCHICAL):
            self._profile = None
            return

        profile = cProfile.Profile(builtins=not self._flags & ExtensionFlags.NO_BUILTINS)
        try:
            profile.enable()
        except ValueError as e:
            # another profiler owns the interpreter hook
            logger.debug(f"Could not enable cProfile: {e}")
            return
        self._profile = profile

    def disable(self) -> dict[str, Any]:
        if not self.running:
            return {}

        wall_us = int(round((time.perf_counter() - self._started_at) * 1000000))
        self._started_at = 0.0

        profile, self._profile = self._profile, None
        if profile is None:
            return {}

        profile.disable()
        profile.create_stats()
        return self._call_graph(profile.stats, wall_us)

    def _call_graph(self, stats: dict, wall_us: int) -> dict[str, Any]:
        data: dict[str, Any] = {MAIN: {"ct": 1, "wt": wall_us}}

        for callee, (_cc, nc, _tt, ct, callers) in stats.items():
            callee_label = _label(callee)
            if callee_label in self._ignored or callee[2] in self._ignored:
                continue

            if not callers:
                self._add_edge(data, MAIN, callee_label, nc, ct)
                continue

            for caller, (caller_nc, _caller_cc, _caller_tt, caller_ct) in callers.items():
                self._add_edge(data, _label(caller), callee_label, caller_nc, caller_ct)

        return data

    @staticmethod
    def _add_edge(data: dict[str, Any], caller: str, callee: str, count: int, seconds: float) -> None:
        key = f"{caller}==>{callee}"
        edge = data.setdefault(key, {"ct": 0, "wt": 0})
        edge["ct"] += count
        edge["wt"] += int(round(seconds * 1000000))


def _profiler_hook_free() -> bool:
    if sys.getprofile() is not None:
        return False
    monitoring = getattr(sys, "monitoring", None)
    if monitoring is not None and monitoring.get_tool(monitoring.PROFILER_ID) is not None:
        return False
    return True


def detect_extension(preference: str = "auto") -> ProfilingExtension:
    """Select the profiling engine once, based on ``preference``.

    ``"none"`` disables profiling. ``"auto"`` and ``"cprofile"`` use cProfile
    unless another profiler already owns the interpreter hook.
    """
    if preference == "none":
        return NoExtension()

    if preference not in ("auto", CProfileExtension.name):
        logger.warning(f"Unknown profiling extension {preference!r}, using none.")
        return NoExtension()

    if not _profiler_hook_free():
        logger.debug("Interpreter profiling hook is in use, profiling disabled.")
        return NoExtension()

    return CProfileExtension()
