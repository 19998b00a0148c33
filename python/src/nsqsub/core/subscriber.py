"""
Subscriber: subscribes to topics on every nsqd carrying them and runs the
message lifecycle for each delivery.

One connection is opened per (topic, host). Each connection is allowed a
single message in flight: RDY 1 is sent after subscribing and again after
every message is finished or requeued.
"""

import re
import signal
import socket
import threading
import time
import uuid
from typing import Any, Callable, List, Optional

from . import wire
from .connection import Connection, parse_host
from .dedupe import Dedupe, NullDedupe
from .logging import LogEvent, LogHandler, LogLevel, StructuredLogger
from .lookup import FixedHosts, Lookup
from .message import Message
from .metrics import Metrics
from .pool import ConnectionNotFoundError, ConnectionPool, DuplicateConnectionError
from .reactor import Reactor
from .requeue import NeverRequeue, RequeueStrategy

MessageCallback = Callable[[Message], Any]

MAX_NAME_LENGTH = 64
_NAME_PATTERN = re.compile(r"^[.a-zA-Z0-9_-]+(#ephemeral)?$")

CONNECT_ERROR_MODES = ("raise", "skip")


class InvalidArgumentError(ValueError):
    """Invalid subscription or configuration argument."""


def _validate_name(kind: str, name: str):
    if (
        not isinstance(name, str)
        or not (1 <= len(name) <= MAX_NAME_LENGTH)
        or not _NAME_PATTERN.match(name)
    ):
        raise InvalidArgumentError(
            f'"{kind}" invalid; expecting [.a-zA-Z0-9_-] and '
            f"1 <= length <= {MAX_NAME_LENGTH}, got {name!r}"
        )


class Subscriber:
    """
    NSQ subscriber.

    Usage:
        def handle(message):
            process(message.body)   # raise to requeue (see requeue_strategy)

        with Subscriber.with_hosts(["10.0.0.1:4150"]) as subscriber:
            subscriber.subscribe("orders", "billing", handle)
            subscriber.run()

    Failure handling:
    - callback raises: requeue_strategy decides between REQ with a delay and
      giving up (FIN)
    - a connection fails or sends an unexpected frame: that connection is
      logged and dropped, the others keep running
    """

    def __init__(
        self,
        lookup: Lookup,
        dedupe: Optional[Dedupe] = None,
        requeue_strategy: Optional[RequeueStrategy] = None,
        log_handler: Optional[LogHandler] = None,
        log_level: LogLevel = LogLevel.INFO,
        connect_timeout: float = 3.0,
        read_write_timeout: float = 3.0,
        read_wait_timeout: float = 15.0,
        on_connect_error: str = "raise",
        enable_metrics: bool = True,
        short_id: Optional[str] = None,
        long_id: Optional[str] = None,
        max_frame_size: int = wire.DEFAULT_MAX_FRAME_SIZE,
    ):
        if on_connect_error not in CONNECT_ERROR_MODES:
            raise InvalidArgumentError(
                f'"on_connect_error" must be one of {CONNECT_ERROR_MODES}, '
                f"got {on_connect_error!r}"
            )

        self._lookup = lookup
        self._dedupe = dedupe or NullDedupe()
        self._requeue_strategy = requeue_strategy or NeverRequeue()
        self._subscriber_id = str(uuid.uuid4())[:8]

        self.connect_timeout = connect_timeout
        self.read_write_timeout = read_write_timeout
        self.read_wait_timeout = read_wait_timeout
        self.on_connect_error = on_connect_error
        self.max_frame_size = max_frame_size

        # Who we are, advertised in SUB
        if short_id is None or long_id is None:
            hostname = socket.getfqdn()
            long_id = long_id or hostname
            short_id = short_id or hostname.split(".")[0]
        self.short_id = short_id
        self.long_id = long_id

        self._metrics = Metrics() if enable_metrics else None
        self._logger = StructuredLogger(
            handler=log_handler,
            level=log_level,
            subscriber_id=self._subscriber_id,
        )

        self._pool = ConnectionPool()
        self._reactor = Reactor(poll_timeout=read_wait_timeout)
        self._closed = False

    @staticmethod
    def with_hosts(hosts, **kwargs) -> "Subscriber":
        """
        Create a Subscriber reading every topic from a fixed host list.

        Args:
            hosts: List of "host:port" strings, or one comma-separated string
            **kwargs: Any other Subscriber argument

        Returns:
            Subscriber using a FixedHosts lookup
        """
        return Subscriber(FixedHosts(hosts), **kwargs)

    @property
    def metrics(self) -> Optional[Metrics]:
        """Get the metrics collector."""
        return self._metrics

    @property
    def logger(self) -> StructuredLogger:
        """Get the structured logger."""
        return self._logger

    @property
    def reactor(self) -> Reactor:
        return self._reactor

    @property
    def connections(self) -> List[Connection]:
        return list(self._pool)

    @property
    def closed(self) -> bool:
        return self._closed

    def set_log_handler(self, handler: LogHandler):
        """
        Set a custom log handler.

        Usage:
            subscriber.set_log_handler(lambda entry: print(entry.to_json()))
        """
        self._logger.set_handler(handler)

    # Subscribing

    def subscribe(self, topic: str, channel: str, callback: MessageCallback):
        """
        Subscribe to topic/channel on every host the lookup returns.

        Args:
            topic: Topic name, [.a-zA-Z0-9_-], 1 to 64 characters
            channel: Channel name, same rules, may end in "#ephemeral"
            callback: Called with each Message. Return normally to finish
                the message; raise to requeue it per the requeue strategy.

        Raises:
            InvalidArgumentError: If the callback or a name is invalid
            OSError: If a host cannot be connected to and on_connect_error
                is "raise"
        """
        if self._closed:
            raise RuntimeError("Subscriber is closed")
        if not callable(callback):
            raise InvalidArgumentError('"callback" invalid; expecting a callable')
        _validate_name("topic", topic)
        _validate_name("channel", channel)

        hosts = list(self._lookup.lookup_hosts(topic))
        self._logger.debug(
            LogEvent.LOOKUP,
            f'Found the following hosts for topic "{topic}": {",".join(hosts)}',
            topic=topic,
            metadata={"hosts": hosts},
        )

        connected = 0
        for host in hosts:
            try:
                self._connect(host, topic, channel, callback)
            except DuplicateConnectionError:
                raise
            except (OSError, ValueError) as e:
                if self.on_connect_error == "raise":
                    raise
                self._logger.warn(
                    LogEvent.CONNECTION_ERROR,
                    f"Skipping {host}: {e}",
                    topic=topic,
                    channel=channel,
                    connection=host,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if self._metrics:
                    self._metrics.record_connection_error()
                continue
            connected += 1

        self._logger.info(
            LogEvent.SUBSCRIBE,
            f"Subscribed to {topic}/{channel} on {connected} of {len(hosts)} host(s)",
            topic=topic,
            channel=channel,
        )

    def _connect(self, host: str, topic: str, channel: str, callback: MessageCallback) -> Connection:
        address, port = parse_host(host)
        connection = Connection(
            address,
            port,
            connect_timeout=self.connect_timeout,
            read_write_timeout=self.read_write_timeout,
            read_wait_timeout=self.read_wait_timeout,
            non_blocking=True,
            max_frame_size=self.max_frame_size,
        )
        self._logger.connection_open(str(connection), topic, channel)

        try:
            connection.open()
            self._send(connection, wire.magic())
            self._pool.add(connection)
            if self._metrics:
                self._metrics.record_connection_open()

            self._reactor.add_reader(
                connection.socket,
                lambda handle: self._read_and_dispatch(handle, topic, channel, callback),
                on_error=self._on_connection_error,
            )

            self._send(
                connection,
                wire.subscribe(topic, channel, self.short_id, self.long_id),
            )
            self._send(connection, wire.ready(1))
        except Exception:
            self._drop(connection)
            raise

        return connection

    # Dispatch

    def _read_and_dispatch(self, handle, topic: str, channel: str, callback: MessageCallback):
        """Handle one readiness event on handle."""
        connection = self._pool.find(handle)
        for frame in connection.read_frames():
            # The callback may have closed the subscriber
            if self._closed:
                return
            self._dispatch_frame(connection, frame, topic, channel, callback)

    def _dispatch_frame(
        self,
        connection: Connection,
        frame: wire.Frame,
        topic: str,
        channel: str,
        callback: MessageCallback,
    ):
        name = str(connection)
        self._logger.debug(
            LogEvent.FRAME_READ,
            f"Read frame for topic={topic} channel={channel}",
            topic=topic,
            channel=channel,
            connection=name,
            metadata={"type": frame.type.name.lower(), "size": len(frame.data)},
        )

        if wire.is_heartbeat(frame):
            self._logger.debug(LogEvent.HEARTBEAT, f"HEARTBEAT [{name}]", connection=name)
            if self._metrics:
                self._metrics.record_heartbeat()
            self._send(connection, wire.nop())
        elif wire.is_message(frame):
            message = Message.from_frame(frame, topic, channel, name)
            self._process_message(connection, message, callback)
        elif wire.is_ok(frame):
            self._logger.debug(LogEvent.FRAME_READ, f"OK [{name}]", connection=name)
        else:
            raise wire.ProtocolError(
                f"Error/unexpected frame received from {name}: "
                f"{frame.type.name.lower()} {frame.text()!r}",
                payload=frame.data,
                frame_type=frame.type.value,
            )

    def _process_message(self, connection: Connection, message: Message, callback: MessageCallback):
        """Run one message to FIN or REQ, then ask for the next one."""
        name = str(connection)
        topic, channel = message.topic, message.channel
        start = self._metrics.start_message() if self._metrics else time.perf_counter()
        self._logger.debug(
            LogEvent.MESSAGE_RECEIVED,
            f"Received {message.id}",
            topic=topic,
            channel=channel,
            connection=name,
            message_id=message.id,
            attempts=message.attempts,
        )

        try:
            duplicate = self._dedupe.contains_and_add(topic, channel, message)
        except Exception as e:
            self._abandon(name, message, f"dedupe failed: {e}", e)
            self._finish(connection, message, start)
            return

        if duplicate:
            self._logger.debug(
                LogEvent.MESSAGE_DEDUPE,
                f'Deduplicating [{name}] "{message.id}"',
                connection=name,
                message_id=message.id,
            )
            if self._metrics:
                self._metrics.record_dedupe()
            self._finish(connection, message, start)
            return

        try:
            callback(message)
        except Exception as e:
            if self._metrics:
                self._metrics.end_message(start, success=False)
            self._logger.warn(
                LogEvent.CALLBACK_ERROR,
                f'Error processing [{name}] "{message.id}": {e}',
                topic=topic,
                channel=channel,
                connection=name,
                message_id=message.id,
                attempts=message.attempts,
                error=str(e),
                error_type=type(e).__name__,
            )
            if self._closed:
                return
            delay = self._requeue_delay(name, message)
            if delay is not None:
                self._send(connection, wire.requeue(message.wire_id, delay))
                self._send(connection, wire.ready(1))
                if self._metrics:
                    self._metrics.record_requeue()
                self._logger.message_requeue(name, message.id, message.attempts, delay)
                return
            self._abandon(name, message, "not requeuing")
        else:
            if self._metrics:
                self._metrics.end_message(start)

        self._finish(connection, message, start)

    def _requeue_delay(self, name: str, message: Message) -> Optional[int]:
        """Forget the failed message in dedupe and ask the strategy for a delay."""
        try:
            self._dedupe.erase(message.topic, message.channel, message)
        except Exception as e:
            self._logger.warn(
                LogEvent.CALLBACK_ERROR,
                f'Could not erase "{message.id}" from dedupe: {e}',
                connection=name,
                message_id=message.id,
                error=str(e),
                error_type=type(e).__name__,
            )

        try:
            delay = self._requeue_strategy.should_requeue(message)
        except Exception as e:
            self._logger.warn(
                LogEvent.CALLBACK_ERROR,
                f'Requeue strategy failed for "{message.id}": {e}',
                connection=name,
                message_id=message.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None
        return None if delay is None else max(0, int(delay))

    def _abandon(self, name: str, message: Message, reason: str, error: Optional[Exception] = None):
        self._logger.log(
            LogEvent.MESSAGE_ABANDON,
            f'Not requeuing [{name}] "{message.id}": {reason}',
            level=LogLevel.WARN if error else LogLevel.DEBUG,
            connection=name,
            message_id=message.id,
            attempts=message.attempts,
            error=str(error) if error else None,
            error_type=type(error).__name__ if error else None,
        )
        if self._metrics:
            self._metrics.record_abandon()

    def _finish(self, connection: Connection, message: Message, start: float):
        """Mark as done; get next on the way."""
        if self._closed:
            # Connections are gone; nsqd requeues what was in flight
            return
        self._send(connection, wire.finish(message.wire_id))
        self._send(connection, wire.ready(1))
        if self._metrics:
            self._metrics.record_finish()
        self._logger.message_finish(
            str(connection), message.id, (time.perf_counter() - start) * 1000
        )

    # Writes

    def _send(self, connection: Connection, data: bytes):
        """Write to connection; leftovers are flushed when it is writable."""
        if self._closed:
            return
        if connection.write(data):
            self._reactor.add_writer(connection.socket, self._flush_connection)

    def _flush_connection(self, handle):
        connection = self._pool.find(handle)
        try:
            pending = connection.flush_pending()
        except OSError as e:
            self._on_connection_error(handle, e)
            return
        if not pending:
            self._reactor.remove_writer(handle)

    # Errors and teardown

    def _on_connection_error(self, handle, error: Exception):
        """Drop the one connection that failed; pool inconsistencies are fatal."""
        if isinstance(error, (ConnectionNotFoundError, DuplicateConnectionError)):
            raise error

        protocol = isinstance(error, wire.ProtocolError)
        try:
            connection = self._pool.find(handle)
        except ConnectionNotFoundError:
            self._reactor.remove(handle)
            raise

        self._logger.connection_error(str(connection), error, protocol=protocol)
        if self._metrics:
            self._metrics.record_connection_error(protocol=protocol)
        self._drop(connection)

    def _drop(self, connection: Connection):
        """Unregister, unpool and close a connection."""
        handle = connection.handle
        if handle is not None:
            self._reactor.remove(handle)
            if self._pool.remove(handle) is not None and self._metrics:
                self._metrics.record_connection_close()
        connection.close()

    def _handle_signals(self):
        """Stop on SIGINT/SIGTERM. Returns the handlers to restore."""
        if threading.current_thread() is not threading.main_thread():
            return {}

        def signal_handler(sig, frame):
            self._logger.info(LogEvent.SUBSCRIBER_STOP, f"Received signal {sig}, stopping")
            self.stop()

        previous = {}
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, signal_handler)
        return previous

    def run(self):
        """
        Run the event loop.

        Blocks until stop() is called, a signal arrives or every connection
        has been dropped. The subscriber is closed afterwards.
        """
        if self._closed:
            raise RuntimeError("Subscriber is closed")

        previous = self._handle_signals()
        self._logger.subscriber_start(len(self._pool))
        try:
            self._reactor.run()
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)
            self.close()

    def stop(self):
        """Make run() return. Safe from callbacks and signal handlers."""
        self._reactor.stop()

    def close(self):
        """Say goodbye (CLS) to every connection and close it. Idempotent."""
        if self._closed:
            return
        self._closed = True

        for connection in self._pool:
            name = str(connection)
            try:
                connection.write(wire.close())
                connection.flush(self.read_write_timeout)
                self._logger.connection_close(name)
            except OSError as e:
                self._logger.warn(
                    LogEvent.CONNECTION_ERROR,
                    f"Could not say goodbye to {name}: {e}",
                    connection=name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                self._drop(connection)

        self._reactor.stop()
        self._reactor.close()
        self._logger.subscriber_stop()

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
