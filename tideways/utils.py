"""Shared utilities for the Tideways SDK."""

from typing import Any

_TRUTHY = ("true", "1", "yes", "on")
_FALSY = ("false", "0", "no", "off")


def is_scalar(value: Any) -> bool:
    """Return True for values that can be stored as annotations."""
    return isinstance(value, (str, int, float, bool))


def stringify(value: str | int | float | bool) -> str:
    """Convert a scalar to the collector's string encoding.

    Booleans are encoded as ``"1"`` and ``""``.
    """
    if isinstance(value, bool):
        return "1" if value else ""
    return str(value)


def parse_bool(value: str | None, default: bool) -> bool:
    """Parse a boolean environment value, falling back to ``default``."""
    if value is None:
        return default
    value = value.strip().lower()
    if value in _TRUTHY:
        return True
    if value in _FALSY:
        return False
    return default
