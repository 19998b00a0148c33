"""
nsqsub - NSQ subscriber client

Subscribes to NSQ topics over the V2 TCP protocol and hands every message
to a Python callback, with at-least-once delivery, one message in flight
per connection, optional deduplication and pluggable requeue backoff.

## Quick Start

```python
from nsqsub import Subscriber, FixedDelay

def handle(message):
    print(message.id, message.body)
    # Raise to requeue the message (see requeue_strategy)

subscriber = Subscriber.with_hosts(
    ["10.0.0.1:4150", "10.0.0.2:4150"],
    requeue_strategy=FixedDelay(delay_ms=5000, max_attempts=5),
)
subscriber.subscribe("orders", "billing", handle)
subscriber.run()  # blocks until stop(), SIGINT/SIGTERM, or no connections left
```

### Deduplication
```python
from nsqsub import Subscriber, OppositeOfBloomFilter

subscriber = Subscriber.with_hosts(
    "10.0.0.1:4150",
    dedupe=OppositeOfBloomFilter(size=1_000_000),
)
```

### With Observability (Metrics & Logging)
```python
from nsqsub import Subscriber, LogLevel, default_json_handler

subscriber = Subscriber.with_hosts(
    ["10.0.0.1:4150"],
    log_handler=default_json_handler,
    log_level=LogLevel.DEBUG,
)
...
snapshot = subscriber.metrics.snapshot()
print(f"Finished: {snapshot.messages_finished}, requeued: {snapshot.messages_requeued}")
```

## Architecture

- Subscriber opens one Connection per nsqd carrying the topic
- Reactor (zmq.Poller over plain TCP sockets) dispatches readable sockets
- FrameReader decodes frames incrementally; reads never block the loop
- Every message ends in exactly one FIN or REQ, followed by RDY 1
"""

from .core.subscriber import Subscriber, InvalidArgumentError
from .core.message import Message
from .core.wire import Frame, FrameReader, FrameType, ProtocolError
from .core.connection import Connection, ConnectionClosedError
from .core.pool import ConnectionPool, ConnectionNotFoundError, DuplicateConnectionError
from .core.reactor import Reactor
from .core.dedupe import Dedupe, NullDedupe, OppositeOfBloomFilter, SharedFileDedupe
from .core.requeue import RequeueStrategy, NeverRequeue, FixedDelay, DelaysList
from .core.lookup import Lookup, FixedHosts
from .core.metrics import Metrics, MetricsSnapshot
from .core.logging import (
    StructuredLogger,
    LogEntry,
    LogEvent,
    LogLevel,
    LogHandler,
    default_json_handler,
    default_pretty_handler,
)

__version__ = "0.2.0"
__all__ = [
    # Core
    "Subscriber",
    "Message",
    "Frame",
    "FrameReader",
    "FrameType",
    "Connection",
    "ConnectionPool",
    "Reactor",
    # Errors
    "InvalidArgumentError",
    "ProtocolError",
    "ConnectionClosedError",
    "ConnectionNotFoundError",
    "DuplicateConnectionError",
    # Dedupe
    "Dedupe",
    "NullDedupe",
    "OppositeOfBloomFilter",
    "SharedFileDedupe",
    # Requeue
    "RequeueStrategy",
    "NeverRequeue",
    "FixedDelay",
    "DelaysList",
    # Lookup
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
