"""
Tests for the wire codec.

Tests cover:
- Command encoding (exact bytes)
- Frame decoding, whole and incremental
- Malformed frames
- Frame classification
"""

import struct
import sys
import os

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from nsqsub.core import wire
from nsqsub.core.wire import (
    Frame,
    FrameReader,
    FrameType,
    ProtocolError,
    decode_frame,
    is_heartbeat,
    is_message,
    is_ok,
)


def encode_frame(frame_type: int, data: bytes) -> bytes:
    """Build a raw frame the way nsqd sends it."""
    return struct.pack(">lL", len(data) + 4, frame_type) + data


class TestCommands:
    """Test outbound command encoding."""

    def test_magic(self):
        assert wire.magic() == b"  V2"
        assert len(wire.magic()) == 4

    def test_subscribe(self):
        cmd = wire.subscribe("orders", "billing", "web1", "web1.example.com")
        assert cmd == b"SUB orders billing web1 web1.example.com\n"

    def test_ready(self):
        assert wire.ready(1) == b"RDY 1\n"
        assert wire.ready(0) == b"RDY 0\n"

    def test_ready_negative(self):
        with pytest.raises(ValueError):
            wire.ready(-1)

    def test_finish(self):
        assert wire.finish("abcdef0123451234") == b"FIN abcdef0123451234\n"

    def test_finish_bytes_id(self):
        assert wire.finish(b"abcdef0123451234") == b"FIN abcdef0123451234\n"

    def test_requeue(self):
        assert wire.requeue("abcdef0123451234", 5000) == b"REQ abcdef0123451234 5000\n"

    def test_requeue_float_delay_truncated(self):
        assert wire.requeue("abc", 12.7) == b"REQ abc 12\n"

    def test_nop_and_close(self):
        assert wire.nop() == b"NOP\n"
        assert wire.close() == b"CLS\n"


class TestDecodeFrame:
    """Test single frame decoding."""

    def test_response_frame(self):
        raw = encode_frame(0, b"OK")
        frame, consumed = decode_frame(raw)

        assert frame == Frame(FrameType.RESPONSE, b"OK")
        assert consumed == len(raw)

    def test_error_frame(self):
        raw = encode_frame(1, b"E_INVALID bad")
        frame, _ = decode_frame(raw)

        assert frame.type is FrameType.ERROR
        assert frame.text() == "E_INVALID bad"

    def test_message_frame(self):
        payload = struct.pack(">qH16s", 1, 1, b"a" * 16) + b"body"
        frame, _ = decode_frame(encode_frame(2, payload))

        assert frame.type is FrameType.MESSAGE
        assert frame.data == payload

    def test_incomplete_header(self):
        assert decode_frame(b"\x00\x00") == (None, 0)

    def test_incomplete_body(self):
        raw = encode_frame(0, b"_heartbeat_")
        assert decode_frame(raw[:-1]) == (None, 0)

    def test_trailing_data_not_consumed(self):
        raw = encode_frame(0, b"OK") + b"\x00\x00"
        frame, consumed = decode_frame(raw)

        assert frame.data == b"OK"
        assert consumed == len(raw) - 2

    def test_size_too_small(self):
        with pytest.raises(ProtocolError):
            decode_frame(struct.pack(">l", 3) + b"\x00\x00\x00")

    def test_negative_size(self):
        with pytest.raises(ProtocolError):
            decode_frame(struct.pack(">l", -1))

    def test_size_over_limit(self):
        raw = encode_frame(0, b"x" * 100)
        with pytest.raises(ProtocolError) as exc_info:
            decode_frame(raw, max_frame_size=50)
        assert "exceeds" in str(exc_info.value)

    def test_unknown_frame_type(self):
        with pytest.raises(ProtocolError) as exc_info:
            decode_frame(encode_frame(7, b"???"))

        assert exc_info.value.frame_type == 7
        assert exc_info.value.payload == b"???"


class TestFrameReader:
    """Test incremental decoding."""

    def test_byte_by_byte(self):
        raw = encode_frame(0, b"_heartbeat_")
        reader = FrameReader()

        for byte in raw[:-1]:
            reader.feed(bytes([byte]))
            assert list(reader.frames()) == []

        reader.feed(raw[-1:])
        frames = list(reader.frames())

        assert frames == [Frame(FrameType.RESPONSE, b"_heartbeat_")]
        assert reader.buffered == 0

    def test_several_frames_in_one_feed(self):
        reader = FrameReader()
        reader.feed(encode_frame(0, b"OK") + encode_frame(0, b"_heartbeat_") + encode_frame(1, b"E"))

        frames = list(reader.frames())

        assert [f.data for f in frames] == [b"OK", b"_heartbeat_", b"E"]

    def test_partial_frame_kept(self):
        second = encode_frame(0, b"_heartbeat_")
        reader = FrameReader()
        reader.feed(encode_frame(0, b"OK") + second[:5])

        assert [f.data for f in reader.frames()] == [b"OK"]
        assert reader.buffered == 5

        reader.feed(second[5:])
        assert [f.data for f in reader.frames()] == [b"_heartbeat_"]

    def test_next_frame(self):
        reader = FrameReader()
        assert reader.next_frame() is None

        reader.feed(encode_frame(0, b"OK"))
        assert reader.next_frame().data == b"OK"
        assert reader.next_frame() is None

    def test_max_frame_size(self):
        reader = FrameReader(max_frame_size=10)
        reader.feed(encode_frame(0, b"x" * 20))

        with pytest.raises(ProtocolError):
            list(reader.frames())


class TestClassification:
    """Test frame predicates."""

    def test_heartbeat(self):
        frame = Frame(FrameType.RESPONSE, b"_heartbeat_")
        assert is_heartbeat(frame)
        assert not is_message(frame)
        assert not is_ok(frame)

    def test_heartbeat_needs_response_type(self):
        assert not is_heartbeat(Frame(FrameType.ERROR, b"_heartbeat_"))

    def test_message(self):
        frame = Frame(FrameType.MESSAGE, b"")
        assert is_message(frame)
        assert not is_heartbeat(frame)

    def test_ok(self):
        assert is_ok(Frame(FrameType.RESPONSE, b"OK"))
        assert not is_ok(Frame(FrameType.ERROR, b"OK"))
        assert not is_ok(Frame(FrameType.RESPONSE, b"CLOSE_WAIT"))
