"""
Pool of open connections, keyed by socket.
"""

from typing import Any, Dict, Iterator, Optional

from .connection import Connection


class ConnectionNotFoundError(LookupError):
    """No pooled connection owns the given socket."""


class DuplicateConnectionError(ValueError):
    """A connection for this socket is already pooled."""


class ConnectionPool:
    """Maps each socket to the Connection that owns it."""

    def __init__(self):
        self._connections: Dict[Any, Connection] = {}

    def add(self, connection: Connection):
        handle = connection.socket
        if handle in self._connections:
            raise DuplicateConnectionError(f"Connection {connection} already in pool")
        self._connections[handle] = connection

    def find(self, handle) -> Connection:
        try:
            return self._connections[handle]
        except KeyError:
            raise ConnectionNotFoundError(f"No connection in pool for {handle!r}")

    def remove(self, handle) -> Optional[Connection]:
        return self._connections.pop(handle, None)

    def __contains__(self, handle) -> bool:
        return handle in self._connections

    def __iter__(self) -> Iterator[Connection]:
        # Copy so callers may remove while iterating
        return iter(list(self._connections.values()))

    def __len__(self) -> int:
        return len(self._connections)
