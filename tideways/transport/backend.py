"""Backends sending trace payloads to the collector daemon.

Both paths are send-and-forget: nothing is read back, nothing is retried and
every failure is logged and dropped so the host application never notices an
unreachable daemon.
"""

import json
import logging
import socket
from abc import ABC, abstractmethod
from typing import Any

from tideways.constants import (
    DEFAULT_CONNECTION,
    DEFAULT_TIMEOUT_US,
    DEFAULT_UDP_CONNECTION,
    KEEP_TIMEOUT_FACTOR,
    PAYLOAD_TYPE_TRACE,
    UDP_TIMEOUT_US,
)

logger = logging.getLogger(__name__)


class Backend(ABC):
    """Storage of finished traces."""

    @abstractmethod
    def socket_store(self, trace: dict[str, Any]) -> None:
        """Send a complete trace through the reliable path."""

    @abstractmethod
    def udp_store(self, trace: dict[str, Any]) -> None:
        """Send a reduced trace through the lossy path."""


def split_host_port(address: str) -> tuple[str, int]:
    """Split ``host:port`` (or ``[v6]:port``) into its parts.

    Raises:
        ValueError: If the port is missing or not numeric.
    """
    host, sep, port = address.rpartition(":")
    if not sep or not host:
        raise ValueError(f"Address {address!r} has no port")
    return host.strip("[]"), int(port)


def _encode(data: Any) -> bytes:
    return json.dumps(data, separators=(",", ":")).encode("utf-8")


class NetworkBackend(Backend):
    """Sends traces to the collector over local sockets.

    Args:
        connection: Stream socket, ``unix://<path>`` or ``tcp://host:port``.
        udp_connection: ``host:port`` of the UDP listener.
        timeout_us: Stream socket timeout in microseconds, multiplied for
            kept traces. ``0`` falls back to the default.
    """

    def __init__(
        self,
        connection: str = DEFAULT_CONNECTION,
        udp_connection: str = DEFAULT_UDP_CONNECTION,
        timeout_us: int = DEFAULT_TIMEOUT_US,
    ):
        self.connection = connection
        self.udp_connection = udp_connection
        self.timeout_us = timeout_us or DEFAULT_TIMEOUT_US

    def _open_stream(self, timeout: float) -> socket.socket:
        scheme, sep, address = self.connection.partition("://")
        if not sep:
            scheme, address = "tcp", self.connection

        if scheme == "unix":
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            sock.settimeout(timeout)
            try:
                sock.connect(address)
            except OSError:
                sock.close()
                raise
            return sock

        return socket.create_connection(split_host_port(address), timeout=timeout)

    def socket_store(self, trace: dict[str, Any]) -> None:
        try:
            payload = _encode({"type": PAYLOAD_TYPE_TRACE, "payload": trace})
        except (TypeError, ValueError) as e:
            logger.warning(f"Could not encode trace: {e}")
            return

        timeout_us = self.timeout_us
        if trace.get("keep"):
            # kept traces are larger and someone is waiting for them
            timeout_us *= KEEP_TIMEOUT_FACTOR

        try:
            with self._open_stream(timeout_us / 1000000) as sock:
                sock.sendall(payload)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not write payload to socket {self.connection}: {e}")
            return

        logger.debug("Sent trace to socket.")

    def udp_store(self, trace: dict[str, Any]) -> None:
        trace = {k: v for k, v in trace.items() if k != "id"}

        try:
            payload = _encode(trace)
        except (TypeError, ValueError) as e:
            logger.warning(f"Could not encode trace: {e}")
            return

        try:
            host, port = split_host_port(self.udp_connection)
            family, type_, proto, _, address = socket.getaddrinfo(host, port, type=socket.SOCK_DGRAM)[0]
            with socket.socket(family, type_, proto) as sock:
                sock.settimeout(UDP_TIMEOUT_US / 1000000)
                sock.sendto(payload, address)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not write payload to UDP port {self.udp_connection}: {e}")
            return

        logger.debug("Sent trace to UDP port.")
