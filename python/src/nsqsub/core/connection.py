"""
TCP connection to a single nsqd.
"""

from __future__ import annotations

import socket
from typing import List, Optional, Tuple

from .wire import DEFAULT_MAX_FRAME_SIZE, Frame, FrameReader

DEFAULT_PORT = 4150

RECV_SIZE = 64 * 1024


class ConnectionClosedError(ConnectionError):
    """Raised when nsqd closes the connection."""


def parse_host(host: str, default_port: int = DEFAULT_PORT) -> Tuple[str, int]:
    """Split "host:port" (port optional) into (host, port)."""
    host = host.strip()
    if not host:
        raise ValueError("Empty host")

    # [::1]:4150
    if host.startswith("["):
        address, _, rest = host[1:].partition("]")
        port_str = rest[1:] if rest.startswith(":") else ""
    elif host.count(":") == 1:
        address, _, port_str = host.partition(":")
    else:
        address, port_str = host, ""

    if not port_str:
        return address, default_port

    try:
        port = int(port_str)
    except ValueError:
        raise ValueError(f"Invalid port in host '{host}'")
    if not (0 < port <= 65535):
        raise ValueError(f"Port {port} out of valid range")
    return address, port


class Connection:
    """
    A connection to one nsqd.

    The socket is switched to non-blocking mode once connected (unless
    non_blocking is False). Writes go through an outbound buffer: whatever a
    non-blocking send cannot push right away stays in pending_writes until
    flush() drains it. Reads are incremental, see read_frames().
    """

    def __init__(
        self,
        host: str,
        port: Optional[int] = None,
        connect_timeout: float = 3.0,
        read_write_timeout: float = 3.0,
        read_wait_timeout: float = 15.0,
        non_blocking: bool = True,
        max_frame_size: int = DEFAULT_MAX_FRAME_SIZE,
    ):
        self.host = host
        self.port = port or DEFAULT_PORT
        self.connect_timeout = connect_timeout
        self.read_write_timeout = read_write_timeout
        self.read_wait_timeout = read_wait_timeout
        self.non_blocking = non_blocking

        self._socket: Optional[socket.socket] = None
        self._reader = FrameReader(max_frame_size)
        self._outbound = bytearray()
        self._closed = False

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"

    def __repr__(self) -> str:
        return f"<Connection {self}>"

    @property
    def socket(self) -> socket.socket:
        """The underlying socket, connecting on first access."""
        if self._socket is None:
            self.open()
        return self._socket

    @property
    def handle(self) -> Optional[socket.socket]:
        """The socket if connected, without connecting."""
        return self._socket

    @property
    def is_open(self) -> bool:
        return self._socket is not None and not self._closed

    @property
    def pending_writes(self) -> int:
        return len(self._outbound)

    def open(self):
        """Connect to nsqd.

        Raises:
            OSError: If the connection cannot be established (TimeoutError
                when connect_timeout expires)
        """
        if self._closed:
            raise ConnectionClosedError(f"Connection to {self} already closed")
        if self._socket is not None:
            return

        sock = socket.create_connection(
            (self.host, self.port), timeout=self.connect_timeout
        )
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        if self.non_blocking:
            sock.setblocking(False)
        else:
            sock.settimeout(self.read_write_timeout)
        self._socket = sock

    def write(self, data: bytes) -> int:
        """
        Queue data and send as much of the outbound buffer as possible.

        Returns:
            Number of bytes still pending
        """
        self._outbound.extend(data)
        return self.flush_pending()

    def flush_pending(self) -> int:
        """Send buffered bytes without blocking. Returns bytes still pending."""
        sock = self.socket
        while self._outbound:
            try:
                sent = sock.send(self._outbound)
            except (BlockingIOError, InterruptedError):
                break
            if sent == 0:
                raise ConnectionClosedError(f"Connection to {self} closed by peer")
            del self._outbound[:sent]
        return len(self._outbound)

    def flush(self, timeout: Optional[float] = None):
        """Block until the outbound buffer is empty or timeout expires.

        Raises:
            TimeoutError: If the buffer could not be drained in time
        """
        if not self._outbound:
            return
        sock = self.socket
        previous = sock.gettimeout()
        sock.settimeout(self.read_write_timeout if timeout is None else timeout)
        try:
            sock.sendall(self._outbound)
            self._outbound.clear()
        except socket.timeout:
            raise TimeoutError(f"Timed out flushing {len(self._outbound)} bytes to {self}")
        finally:
            sock.settimeout(previous)

    def read_frames(self) -> List[Frame]:
        """
        Read whatever is available and return every complete frame.

        An empty list means the frame is still arriving; the remainder is
        kept until the next call.

        Raises:
            ConnectionClosedError: If nsqd closed the connection
            ProtocolError: If the stream contains a malformed frame
        """
        try:
            data = self.socket.recv(RECV_SIZE)
        except (BlockingIOError, InterruptedError):
            return []
        if not data:
            raise ConnectionClosedError(f"Connection to {self} closed by peer")
        self._reader.feed(data)
        return list(self._reader.frames())

    def close(self):
        """Close the socket. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._socket is not None:
            try:
                self._socket.close()
            finally:
                self._outbound.clear()
