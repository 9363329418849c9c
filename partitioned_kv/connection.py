"""
One TCP stream to one node.

A :class:`Connection` is checked out exclusively by a single command at a
time. Socket failures surface as :class:`ClusterConnectionError`; any
connection whose stream position is uncertain must be closed by its caller
instead of being returned to the pool.
"""

from __future__ import annotations

import logging
import socket
import ssl
import time

from .config import Host
from .exceptions import ClusterConnectionError, ProtocolError
from .protocol import (
    Buffer,
    ProtoType,
    encode_info_request,
    parse_info_response,
    recv_proto,
)

_LOGGER = logging.getLogger(__name__)


class Connection:
    """
    Blocking socket wrapper with framing helpers.

    Parameters
    ----------
    host:
        Target node endpoint.
    timeout_seconds:
        Connect timeout, also the initial socket timeout.
    max_buffer_size:
        Largest encoded request or incoming frame accepted.
    ssl_context:
        Optional client SSL context used to wrap the TCP connection.
    """

    def __init__(
        self,
        host: Host,
        timeout_seconds: float,
        *,
        max_buffer_size: int,
        ssl_context: ssl.SSLContext | None = None,
    ) -> None:
        self.host = host
        self.max_buffer_size = int(max_buffer_size)
        self.buffer = Buffer(self.max_buffer_size)
        self._closed = False
        try:
            raw_sock = socket.create_connection((host.name, host.port), timeout=timeout_seconds)
        except OSError as exc:
            raise ClusterConnectionError(f"Failed to connect to {host}: {exc}") from exc
        raw_sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        self._sock: socket.socket | ssl.SSLSocket = raw_sock
        if ssl_context is not None:
            try:
                self._sock = ssl_context.wrap_socket(
                    raw_sock,
                    server_hostname=host.tls_name or host.name,
                )
            except (OSError, ssl.SSLError) as exc:
                raw_sock.close()
                raise ClusterConnectionError(f"TLS handshake with {host} failed: {exc}") from exc
        self._sock.settimeout(timeout_seconds)
        self.last_used = time.monotonic()

    @property
    def closed(self) -> bool:
        return self._closed

    def set_timeout(self, timeout_seconds: float | None) -> None:
        """Apply a socket timeout; ``None`` or ``0`` blocks without limit."""
        self._sock.settimeout(timeout_seconds if timeout_seconds else None)

    def send(self, data: bytes) -> None:
        try:
            self._sock.sendall(data)
        except OSError as exc:
            raise ClusterConnectionError(f"Send to {self.host} failed: {exc}") from exc
        self.last_used = time.monotonic()

    def recv(self) -> tuple[int, bytes]:
        """Read one proto frame and return ``(proto_type, body)``."""
        try:
            frame = recv_proto(self._sock, self.max_buffer_size)
        except OSError as exc:
            raise ClusterConnectionError(f"Receive from {self.host} failed: {exc}") from exc
        self.last_used = time.monotonic()
        return frame

    def info(self, names: list[str] | tuple[str, ...]) -> dict[str, str]:
        """Run one info request and return the parsed name/value map."""
        self.send(encode_info_request(names))
        proto_type, body = self.recv()
        if proto_type != ProtoType.INFO:
            raise ProtocolError(f"Expected info response, got proto type {proto_type}.")
        return parse_info_response(body)

    def is_idle_expired(self, idle_timeout_seconds: float, now: float | None = None) -> bool:
        if idle_timeout_seconds <= 0:
            return False
        now = time.monotonic() if now is None else now
        return now - self.last_used > idle_timeout_seconds

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._sock.close()
        except OSError:
            _LOGGER.debug("Socket close failed host=%s", self.host, exc_info=True)
