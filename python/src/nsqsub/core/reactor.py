"""
Single-threaded readiness loop.

Uses zmq.Poller, which polls plain sockets (anything with fileno()) the
same way it polls ZeroMQ sockets. Readiness is level-triggered: a handle
with unread data is reported again on every poll until it is drained.
"""

import socket
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import zmq

ReadCallback = Callable[[Any], None]
ErrorCallback = Callable[[Any, Exception], None]


@dataclass
class _Reader:
    callback: ReadCallback
    on_error: Optional[ErrorCallback] = None


class Reactor:
    """
    Cooperative event loop dispatching readiness callbacks.

    Usage:
        reactor = Reactor()
        reactor.add_reader(sock, on_readable, on_error=on_error)
        reactor.run()      # blocks until stop() or no readers remain

    Exceptions raised by a read callback are handed to that handle's
    on_error callback. Handles registered without one let the exception
    propagate out of run().
    """

    def __init__(self, poll_timeout: float = 15.0):
        self.poll_timeout = poll_timeout
        self._poller = zmq.Poller()
        self._readers: Dict[Any, _Reader] = {}
        self._writers: Dict[Any, ReadCallback] = {}
        # poll() reports plain sockets by file descriptor
        self._handles: Dict[int, Any] = {}
        self._fds: Dict[Any, int] = {}
        self._running = False
        self._closed = False

        # stop() writes here to interrupt a poll in progress
        self._waker_recv, self._waker_send = socket.socketpair()
        self._waker_recv.setblocking(False)
        self._waker_send.setblocking(False)
        self._register(self._waker_recv, zmq.POLLIN)

    @property
    def running(self) -> bool:
        return self._running

    def __len__(self) -> int:
        return len(self._readers)

    def __contains__(self, handle) -> bool:
        return handle in self._readers

    def add_reader(
        self,
        handle,
        callback: ReadCallback,
        on_error: Optional[ErrorCallback] = None,
    ):
        """Call callback(handle) whenever handle is readable."""
        self._readers[handle] = _Reader(callback, on_error)
        self._update(handle)

    def add_writer(self, handle, callback: ReadCallback):
        """Call callback(handle) whenever handle is writable."""
        self._writers[handle] = callback
        self._update(handle)

    def remove_writer(self, handle):
        if self._writers.pop(handle, None) is not None:
            self._update(handle)

    def remove(self, handle):
        """Stop watching handle entirely."""
        self._readers.pop(handle, None)
        self._writers.pop(handle, None)
        self._update(handle)

    def _update(self, handle):
        flags = 0
        if handle in self._readers:
            flags |= zmq.POLLIN
        if handle in self._writers:
            flags |= zmq.POLLOUT

        if flags:
            self._register(handle, flags)
        else:
            self._unregister(handle)

    def _register(self, handle, flags: int):
        self._poller.register(handle, flags)
        if handle not in self._fds:
            fd = handle.fileno()
            self._fds[handle] = fd
            self._handles[fd] = handle

    def _unregister(self, handle):
        try:
            self._poller.unregister(handle)
        except KeyError:
            pass
        fd = self._fds.pop(handle, None)
        if fd is not None and self._handles.get(fd) is handle:
            del self._handles[fd]

    def _resolve(self, item):
        """Map a poll() result back to the registered handle."""
        if isinstance(item, int):
            return self._handles.get(item)
        return item

    def run_once(self, timeout: Optional[float] = None) -> int:
        """
        Wait for readiness once and dispatch the ready handles.

        Args:
            timeout: Seconds to wait (default: poll_timeout)

        Returns:
            Number of callbacks invoked
        """
        wait = self.poll_timeout if timeout is None else timeout
        events = self._poller.poll(int(wait * 1000))

        dispatched = 0
        for item, event in events:
            # A callback may have closed the reactor
            if self._closed:
                break
            handle = self._resolve(item)
            if handle is None:
                continue
            if handle is self._waker_recv:
                self._drain_waker()
                continue

            if event & zmq.POLLOUT and handle in self._writers:
                self._writers[handle](handle)
                dispatched += 1

            if event & (zmq.POLLIN | zmq.POLLERR) and handle in self._readers:
                reader = self._readers[handle]
                try:
                    reader.callback(handle)
                except Exception as e:
                    if reader.on_error is None:
                        raise
                    reader.on_error(handle, e)
                dispatched += 1

        return dispatched

    def run(self):
        """Dispatch until stop() is called or no readers are left."""
        self._running = True
        try:
            while self._running and self._readers:
                self.run_once()
        finally:
            self._running = False

    def run_for(self, seconds: float):
        """Dispatch for at most the given number of seconds."""
        deadline = time.monotonic() + seconds
        self._running = True
        try:
            while self._running and self._readers:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self.run_once(min(remaining, self.poll_timeout))
        finally:
            self._running = False

    def stop(self):
        """Ask run() to return. Safe from callbacks and signal handlers."""
        self._running = False
        if self._closed:
            return
        try:
            self._waker_send.send(b"\0")
        except OSError:
            # Waker already has pending bytes or is closed
            pass

    def _drain_waker(self):
        try:
            while self._waker_recv.recv(1024):
                pass
        except (BlockingIOError, InterruptedError):
            pass

    def close(self):
        """Forget every handle and release the waker sockets."""
        if self._closed:
            return
        self._closed = True
        for handle in list(self._readers) + list(self._writers):
            self.remove(handle)
        self._unregister(self._waker_recv)
        self._waker_recv.close()
        self._waker_send.close()
