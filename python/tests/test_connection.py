"""
Tests for Connection and host parsing.

Uses a real listening socket on 127.0.0.1.
"""

import socket
import struct
import sys
import os
import time
import typing

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from nsqsub.core.connection import (
    DEFAULT_PORT,
    Connection,
    ConnectionClosedError,
    parse_host,
)
from nsqsub.core.wire import FrameType, ProtocolError


def encode_frame(frame_type: int, data: bytes) -> bytes:
    return struct.pack(">lL", len(data) + 4, frame_type) + data


def read_frames_until(connection, count, timeout=2.0):
    """Poll a non-blocking connection until count frames arrived."""
    frames = []
    deadline = time.monotonic() + timeout
    while len(frames) < count and time.monotonic() < deadline:
        frames.extend(connection.read_frames())
        time.sleep(0.005)
    return frames


class TestParseHost:
    """Test host string parsing."""

    def test_host_and_port(self):
        assert parse_host("10.0.0.1:4150") == ("10.0.0.1", 4150)

    def test_default_port(self):
        assert parse_host("nsqd.local") == ("nsqd.local", DEFAULT_PORT)

    def test_whitespace(self):
        assert parse_host(" 10.0.0.1:4151 ") == ("10.0.0.1", 4151)

    def test_ipv6(self):
        assert parse_host("[::1]:4150") == ("::1", 4150)
        assert parse_host("[::1]") == ("::1", DEFAULT_PORT)

    def test_invalid_port(self):
        with pytest.raises(ValueError):
            parse_host("host:abc")
        with pytest.raises(ValueError):
            parse_host("host:70000")

    def test_empty(self):
        with pytest.raises(ValueError):
            parse_host("")


class TestConnection:
    """Test Connection against a local server socket."""

    def setup_method(self):
        self.server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.server.bind(("127.0.0.1", 0))
        self.server.listen(1)
        self.port = self.server.getsockname()[1]
        self.connection = Connection("127.0.0.1", self.port, connect_timeout=1.0)
        self.peer = None

    def teardown_method(self):
        self.connection.close()
        if self.peer:
            self.peer.close()
        self.server.close()

    def accept(self):
        self.connection.open()
        self.peer, _ = self.server.accept()
        self.peer.settimeout(2.0)

    def test_str(self):
        assert str(self.connection) == f"127.0.0.1:{self.port}"

    def test_default_port(self):
        assert Connection("nsqd.local").port == DEFAULT_PORT

    def test_not_connected_until_open(self):
        assert self.connection.handle is None
        assert not self.connection.is_open

    def test_socket_connects_lazily(self):
        sock = self.connection.socket
        assert sock is self.connection.handle
        assert self.connection.is_open

    def test_non_blocking_after_open(self):
        self.accept()
        assert self.connection.socket.gettimeout() == 0.0

    def test_blocking_mode(self):
        connection = Connection("127.0.0.1", self.port, read_write_timeout=2.5, non_blocking=False)
        try:
            connection.open()
            assert connection.socket.gettimeout() == 2.5
        finally:
            connection.close()

    def test_write(self):
        self.accept()
        pending = self.connection.write(b"  V2")

        assert pending == 0
        assert self.peer.recv(4) == b"  V2"

    def test_flush(self):
        self.accept()
        self.connection.write(b"NOP\n")
        self.connection.flush(1.0)

        assert self.connection.pending_writes == 0
        assert self.peer.recv(4) == b"NOP\n"

    def test_read_frames_nothing_available(self):
        self.accept()
        assert self.connection.read_frames() == []

    def test_read_frames(self):
        self.accept()
        self.peer.sendall(encode_frame(0, b"OK") + encode_frame(0, b"_heartbeat_"))

        frames = read_frames_until(self.connection, 2)

        assert [f.data for f in frames] == [b"OK", b"_heartbeat_"]
        assert frames[0].type is FrameType.RESPONSE

    def test_read_frames_split_across_reads(self):
        self.accept()
        raw = encode_frame(1, b"E_INVALID")
        self.peer.sendall(raw[:6])
        time.sleep(0.05)

        assert self.connection.read_frames() == []

        self.peer.sendall(raw[6:])
        frames = read_frames_until(self.connection, 1)
        assert frames[0].data == b"E_INVALID"

    def test_malformed_frame(self):
        self.accept()
        self.peer.sendall(struct.pack(">l", 2))

        with pytest.raises(ProtocolError):
            read_frames_until(self.connection, 1)

    def test_peer_closed(self):
        self.accept()
        self.peer.close()
        self.peer = None

        with pytest.raises(ConnectionClosedError):
            read_frames_until(self.connection, 1)

    def test_close_idempotent(self):
        self.accept()
        self.connection.close()
        self.connection.close()

        assert not self.connection.is_open

    def test_open_after_close(self):
        self.accept()
        self.connection.close()

        with pytest.raises(ConnectionClosedError):
            self.connection.open()

    def test_connection_refused(self):
        scratch = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        scratch.bind(("127.0.0.1", 0))
        port = scratch.getsockname()[1]
        scratch.close()

        with pytest.raises(OSError):
            Connection("127.0.0.1", port, connect_timeout=1.0).open()


class TestConnectionAnnotations:
    """The socket property must not hide the socket module in annotations."""

    def test_handle_type_hint(self):
        hints = typing.get_type_hints(Connection.handle.fget)
        assert hints["return"] == typing.Optional[socket.socket]

    def test_socket_type_hint(self):
        hints = typing.get_type_hints(Connection.socket.fget)
        assert hints["return"] is socket.socket
