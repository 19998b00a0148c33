"""
Wire codec for the NSQ V2 TCP protocol.

Outbound commands are plain ASCII lines. Inbound data is a stream of
size-prefixed frames:

    [size: 4 bytes BE][frame type: 4 bytes BE][payload: size - 4 bytes]

Frames are decoded incrementally with FrameReader so a connection never has
to block waiting for the rest of a frame.
"""

import struct
from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional, Tuple, Union

MAGIC_V2 = b"  V2"

HEARTBEAT = b"_heartbeat_"
OK = b"OK"

DEFAULT_MAX_FRAME_SIZE = 10 * 1024 * 1024

_HEADER = struct.Struct(">lL")


class FrameType(Enum):
    """Frame types sent by nsqd."""

    RESPONSE = 0
    ERROR = 1
    MESSAGE = 2


class ProtocolError(Exception):
    """Raised for malformed or unexpected frames.

    Carries the raw frame payload (when there is one) so callers can log
    what the server actually sent.
    """

    def __init__(
        self,
        message: str,
        payload: Optional[bytes] = None,
        frame_type: Optional[int] = None,
    ):
        super().__init__(message)
        self.payload = payload
        self.frame_type = frame_type


@dataclass(frozen=True)
class Frame:
    """One decoded frame."""

    type: FrameType
    data: bytes

    def text(self) -> str:
        """Payload decoded for logging."""
        return self.data.decode("utf-8", errors="replace")


# Commands


def _command(name: bytes, *params: Union[str, bytes, int]) -> bytes:
    parts = [name]
    for param in params:
        if isinstance(param, bytes):
            parts.append(param)
        else:
            parts.append(str(param).encode("utf-8"))
    return b" ".join(parts) + b"\n"


def magic() -> bytes:
    """Protocol identifier, sent once right after connecting."""
    return MAGIC_V2


def subscribe(topic: str, channel: str, short_id: str, long_id: str) -> bytes:
    return _command(b"SUB", topic, channel, short_id, long_id)


def ready(count: int) -> bytes:
    if count < 0:
        raise ValueError(f"RDY count must be >= 0, got {count}")
    return _command(b"RDY", count)


def finish(message_id: Union[str, bytes]) -> bytes:
    return _command(b"FIN", message_id)


def requeue(message_id: Union[str, bytes], delay_ms: int) -> bytes:
    return _command(b"REQ", message_id, int(delay_ms))


def nop() -> bytes:
    return _command(b"NOP")


def close() -> bytes:
    return _command(b"CLS")


# Frames


def decode_frame(
    buffer: Union[bytes, bytearray],
    max_frame_size: int = DEFAULT_MAX_FRAME_SIZE,
) -> Tuple[Optional[Frame], int]:
    """
    Decode a single frame from the head of buffer.

    Returns:
        (frame, consumed) - frame is None and consumed is 0 when the buffer
        does not hold a complete frame yet.

    Raises:
        ProtocolError: If the size or frame type is invalid
    """
    if len(buffer) < 4:
        return None, 0

    (size,) = struct.unpack_from(">l", buffer, 0)
    if size < 4:
        raise ProtocolError(f"Invalid frame size {size}")
    if size > max_frame_size:
        raise ProtocolError(
            f"Frame size {size} exceeds maximum of {max_frame_size} bytes"
        )

    total = 4 + size
    if len(buffer) < total:
        return None, 0

    _, raw_type = _HEADER.unpack_from(buffer, 0)
    data = bytes(buffer[_HEADER.size : total])
    try:
        frame_type = FrameType(raw_type)
    except ValueError:
        raise ProtocolError(
            f"Unknown frame type {raw_type}", payload=data, frame_type=raw_type
        )

    return Frame(type=frame_type, data=data), total


class FrameReader:
    """
    Incremental frame decoder.

    Usage:
        reader = FrameReader()
        reader.feed(sock.recv(65536))
        for frame in reader.frames():
            ...
    """

    def __init__(self, max_frame_size: int = DEFAULT_MAX_FRAME_SIZE):
        self.max_frame_size = max_frame_size
        self._buffer = bytearray()

    def feed(self, data: bytes):
        self._buffer.extend(data)

    @property
    def buffered(self) -> int:
        """Number of bytes waiting for the rest of their frame."""
        return len(self._buffer)

    def next_frame(self) -> Optional[Frame]:
        frame, consumed = decode_frame(self._buffer, self.max_frame_size)
        if frame is not None:
            del self._buffer[:consumed]
        return frame

    def frames(self) -> Iterator[Frame]:
        """Yield every complete frame currently buffered."""
        while True:
            frame = self.next_frame()
            if frame is None:
                return
            yield frame


def is_heartbeat(frame: Frame) -> bool:
    return frame.type is FrameType.RESPONSE and frame.data == HEARTBEAT


def is_message(frame: Frame) -> bool:
    return frame.type is FrameType.MESSAGE


def is_ok(frame: Frame) -> bool:
    """True for the OK response nsqd sends after a successful SUB."""
    return frame.type is FrameType.RESPONSE and frame.data == OK
