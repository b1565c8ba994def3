"""Transports delivering traces to the local collector daemon."""

from tideways.transport.backend import Backend, NetworkBackend

__all__ = ["Backend", "NetworkBackend"]
