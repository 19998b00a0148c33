"""
Message entities built from MESSAGE frames.
"""

import struct
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .wire import Frame, FrameType, ProtocolError

# timestamp (int64 ns), attempts (uint16), id (16 bytes)
_MESSAGE_HEADER = struct.Struct(">qH16s")

MESSAGE_ID_LENGTH = 16


@dataclass(frozen=True)
class Message:
    """
    A message delivered by nsqd.

    Fields:
    - id: str = 16 character id assigned by the server, for display
    - raw_id: bytes = the same id as sent on the wire; FIN and REQ use it
    - timestamp: int = time the message was published, in nanoseconds
    - attempts: int = number of delivery attempts, starting at 1
    - body: bytes = opaque payload
    - topic/channel: the subscription the message arrived on
    - connection: "host:port" of the connection it arrived on
    """

    id: str
    timestamp: int
    attempts: int
    body: bytes
    topic: Optional[str] = None
    channel: Optional[str] = None
    connection: Optional[str] = None
    raw_id: bytes = field(default=b"", repr=False)

    @classmethod
    def from_frame(
        cls,
        frame: Frame,
        topic: Optional[str] = None,
        channel: Optional[str] = None,
        connection: Optional[str] = None,
    ) -> "Message":
        """Build a Message from a decoded MESSAGE frame.

        Raises:
            ProtocolError: If the frame is not a message or is truncated
        """
        if frame.type is not FrameType.MESSAGE:
            raise ProtocolError(
                f"Expected a message frame, got {frame.type.name.lower()}",
                payload=frame.data,
                frame_type=frame.type.value,
            )
        if len(frame.data) < _MESSAGE_HEADER.size:
            raise ProtocolError(
                f"Message frame too short ({len(frame.data)} bytes)",
                payload=frame.data,
                frame_type=frame.type.value,
            )

        timestamp, attempts, raw_id = _MESSAGE_HEADER.unpack_from(frame.data, 0)
        return cls(
            id=raw_id.decode("ascii", errors="replace"),
            timestamp=timestamp,
            attempts=attempts,
            body=frame.data[_MESSAGE_HEADER.size :],
            topic=topic,
            channel=channel,
            connection=connection,
            raw_id=raw_id,
        )

    @property
    def wire_id(self) -> bytes:
        """The id exactly as nsqd sent it."""
        return self.raw_id or self.id.encode("utf-8")

    @property
    def timestamp_seconds(self) -> float:
        """Publish time as a unix timestamp."""
        return self.timestamp / 1e9

    def to_dict(self) -> Dict[str, Any]:
        """Convert to plain dict (for logging)."""
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "attempts": self.attempts,
            "body_size": len(self.body),
            "topic": self.topic,
            "channel": self.channel,
            "connection": self.connection,
        }
