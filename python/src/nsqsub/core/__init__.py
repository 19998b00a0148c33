"""
Core modules for the subscriber: wire codec, connections, reactor and
message lifecycle.
"""

from .wire import Frame, FrameReader, FrameType, ProtocolError
from .message import Message
from .connection import Connection, ConnectionClosedError
from .pool import ConnectionPool, ConnectionNotFoundError, DuplicateConnectionError
from .reactor import Reactor
from .subscriber import Subscriber, InvalidArgumentError
from .dedupe import Dedupe, NullDedupe, OppositeOfBloomFilter, SharedFileDedupe
from .requeue import RequeueStrategy, NeverRequeue, FixedDelay, DelaysList
from .lookup import Lookup, FixedHosts
from .metrics import Metrics, MetricsSnapshot
from .logging import (
    StructuredLogger,
    LogEntry,
    LogEvent,
    LogLevel,
    LogHandler,
    default_json_handler,
    default_pretty_handler,
)

__all__ = [
    "Frame",
    "FrameReader",
    "FrameType",
    "Message",
    "Connection",
    "ConnectionPool",
    "Reactor",
    "Subscriber",
    # Errors
    "ProtocolError",
    "ConnectionClosedError",
    "ConnectionNotFoundError",
    "DuplicateConnectionError",
    "InvalidArgumentError",
    # Collaborators
    "Dedupe",
    "NullDedupe",
    "OppositeOfBloomFilter",
    "SharedFileDedupe",
    "RequeueStrategy",
    "NeverRequeue",
    "FixedDelay",
    "DelaysList",
    "Lookup",
    "FixedHosts",
    # Metrics
    "Metrics",
    "MetricsSnapshot",
    # Logging
    "StructuredLogger",
    "LogEntry",
    "LogEvent",
    "LogLevel",
    "LogHandler",
    "default_json_handler",
    "default_pretty_handler",
]
