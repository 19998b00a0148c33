"""
Structured logging for subscriber events.

Provides JSON-formatted logs with pluggable output handlers. A logger
without a handler is a no-op, and a failing handler never affects message
processing.
"""

import sys
import time
import json
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Optional, Dict
from enum import Enum


class LogLevel(Enum):
    """Log levels for structured logging."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class LogEvent(Enum):
    """Standard log events for subscriber operations."""

    # Lifecycle
    SUBSCRIBER_START = "subscriber_start"
    SUBSCRIBER_STOP = "subscriber_stop"
    SUBSCRIBE = "subscribe"
    LOOKUP = "lookup"

    # Connection
    CONNECTION_OPEN = "connection_open"
    CONNECTION_CLOSE = "connection_close"
    CONNECTION_ERROR = "connection_error"

    # Frames
    FRAME_READ = "frame_read"
    HEARTBEAT = "heartbeat"
    PROTOCOL_ERROR = "protocol_error"

    # Messages
    MESSAGE_RECEIVED = "message_received"
    MESSAGE_FINISH = "message_finish"
    MESSAGE_REQUEUE = "message_requeue"
    MESSAGE_ABANDON = "message_abandon"
    MESSAGE_DEDUPE = "message_dedupe"
    CALLBACK_ERROR = "callback_error"


@dataclass
class LogEntry:
    """
    Structured log entry with all context.

    Can be serialized to JSON or passed to custom handlers.
    """

    # Required
    event: str
    level: str
    message: str
    timestamp: float = field(default_factory=time.time)

    # Subscription
    subscriber_id: Optional[str] = None
    topic: Optional[str] = None
    channel: Optional[str] = None
    connection: Optional[str] = None

    # Message
    message_id: Optional[str] = None
    attempts: Optional[int] = None
    delay_ms: Optional[int] = None

    # Timing
    duration_ms: Optional[float] = None

    # Status
    error: Optional[str] = None
    error_type: Optional[str] = None

    # Custom metadata
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, omitting None values."""
        result = {}
        for key, value in asdict(self).items():
            if value is not None:
                result[key] = value
        return result

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=str)


# Type alias for log handler
LogHandler = Callable[[LogEntry], None]


class StructuredLogger:
    """
    Structured logger with pluggable handlers.

    Usage:
        logger = StructuredLogger(
            handler=lambda entry: print(entry.to_json()),
            level=LogLevel.DEBUG,
        )

        logger.info(LogEvent.CONNECTION_OPEN, "Connected", connection="10.0.0.1:4150")
        logger.warn(LogEvent.CALLBACK_ERROR, "Callback failed", error="boom")

    Integration with Subscriber:
        subscriber = Subscriber.with_hosts(["127.0.0.1:4150"])
        subscriber.set_log_handler(default_pretty_handler)
    """

    def __init__(
        self,
        handler: Optional[LogHandler] = None,
        level: LogLevel = LogLevel.INFO,
        subscriber_id: Optional[str] = None,
    ):
        self.handler = handler
        self.level = level
        self.subscriber_id = subscriber_id
        self._level_order = {
            LogLevel.DEBUG: 0,
            LogLevel.INFO: 1,
            LogLevel.WARN: 2,
            LogLevel.ERROR: 3,
        }

    def set_handler(self, handler: Optional[LogHandler]):
        """Set or update the log handler."""
        self.handler = handler

    def set_level(self, level: LogLevel):
        self.level = level

    def _should_log(self, level: LogLevel) -> bool:
        """Check if this level should be logged."""
        return self._level_order.get(level, 0) >= self._level_order.get(self.level, 0)

    def log(
        self,
        event: LogEvent,
        message: str,
        level: LogLevel = LogLevel.INFO,
        **kwargs,
    ):
        """
        Log an event with structured data.

        Args:
            event: The event type (from LogEvent enum)
            message: Human-readable message
            level: Log level (default: INFO)
            **kwargs: Additional fields for LogEntry
        """
        if not self.handler or not self._should_log(level):
            return

        entry = LogEntry(
            event=event.value,
            level=level.value,
            message=message,
            subscriber_id=self.subscriber_id,
            **kwargs,
        )

        try:
            self.handler(entry)
        except Exception as e:
            # Don't let logging errors break message processing
            print(f"Log handler error: {e}", file=sys.stderr)

    def debug(self, event: LogEvent, message: str, **kwargs):
        """Log at DEBUG level."""
        self.log(event, message, level=LogLevel.DEBUG, **kwargs)

    def info(self, event: LogEvent, message: str, **kwargs):
        """Log at INFO level."""
        self.log(event, message, level=LogLevel.INFO, **kwargs)

    def warn(self, event: LogEvent, message: str, **kwargs):
        """Log at WARN level."""
        self.log(event, message, level=LogLevel.WARN, **kwargs)

    def error(self, event: LogEvent, message: str, **kwargs):
        """Log at ERROR level."""
        self.log(event, message, level=LogLevel.ERROR, **kwargs)

    # Convenience methods for common events

    def connection_open(self, connection: str, topic: str, channel: str):
        self.info(
            LogEvent.CONNECTION_OPEN,
            f"Connecting to {connection} and saying hello",
            connection=connection,
            topic=topic,
            channel=channel,
        )

    def connection_close(self, connection: str):
        self.info(
            LogEvent.CONNECTION_CLOSE,
            f"Closing {connection}",
            connection=connection,
        )

    def connection_error(self, connection: str, error: BaseException, protocol: bool = False):
        """Log a failure that ended one connection."""
        event = LogEvent.PROTOCOL_ERROR if protocol else LogEvent.CONNECTION_ERROR
        self.error(
            event,
            f"Dropping {connection}: {error}",
            connection=connection,
            error=str(error),
            error_type=type(error).__name__,
        )

    def message_finish(self, connection: str, message_id: str, duration_ms: Optional[float] = None):
        self.debug(
            LogEvent.MESSAGE_FINISH,
            f"Finished {message_id}",
            connection=connection,
            message_id=message_id,
            duration_ms=round(duration_ms, 2) if duration_ms is not None else None,
        )

    def message_requeue(self, connection: str, message_id: str, attempts: int, delay_ms: int):
        self.debug(
            LogEvent.MESSAGE_REQUEUE,
            f"Requeuing {message_id} with delay {delay_ms}ms",
            connection=connection,
            message_id=message_id,
            attempts=attempts,
            delay_ms=delay_ms,
        )

    def subscriber_start(self, connections: int):
        self.info(
            LogEvent.SUBSCRIBER_START,
            f"Subscriber running with {connections} connection(s)",
        )

    def subscriber_stop(self, reason: str = "shutdown"):
        self.info(
            LogEvent.SUBSCRIBER_STOP,
            f"Subscriber stopped: {reason}",
        )


def default_json_handler(entry: LogEntry):
    """Default handler that prints JSON to stdout."""
    print(entry.to_json())


def default_pretty_handler(entry: LogEntry):
    """Default handler that prints human-readable output."""
    timestamp = time.strftime("%H:%M:%S", time.localtime(entry.timestamp))
    level = entry.level.upper().ljust(5)
    prefix = f"[{timestamp}] [{level}]"

    parts = [prefix, entry.event, entry.message]

    if entry.connection:
        parts.append(f"conn={entry.connection}")
    if entry.message_id:
        parts.append(f"msg={entry.message_id}")
    if entry.duration_ms is not None:
        parts.append(f"{entry.duration_ms:.1f}ms")
    if entry.error:
        parts.append(f"error={entry.error}")

    print(" ".join(parts))
