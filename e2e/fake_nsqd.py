"""
A small in-process stand-in for nsqd, speaking enough of the V2 protocol
to drive a Subscriber end to end.

Every command line a client sends is recorded. Messages queued with
publish() are delivered one at a time: the next one goes out when the
client sends RDY and nothing is in flight. REQ puts the message back at
the front of the queue with one more attempt.
"""

import socket
import struct
import threading
import time
from collections import deque

FRAME_RESPONSE = 0
FRAME_ERROR = 1
FRAME_MESSAGE = 2


def encode_frame(frame_type, data):
    return struct.pack(">lL", len(data) + 4, frame_type) + data


def encode_message(msg_id, body, attempts=1, timestamp=None):
    if timestamp is None:
        timestamp = time.time_ns()
    return encode_frame(FRAME_MESSAGE, struct.pack(">qH16s", timestamp, attempts, msg_id) + body)


class FakeNsqd:
    """
    Usage:
        with FakeNsqd() as nsqd:
            nsqd.publish(b"0123456789abcdef", b"hello")
            subscriber = Subscriber.with_hosts([nsqd.address])
            ...
            nsqd.wait_disconnected()
            assert nsqd.commands[-1] == "CLS"
    """

    def __init__(self, heartbeat=False, sub_error=None):
        self.heartbeat = heartbeat
        self.sub_error = sub_error
        self.commands = []

        self._queue = deque()
        self._in_flight = None
        self._lock = threading.Lock()
        self._disconnected = threading.Event()
        self._running = False
        self._threads = []

        self._server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._server.bind(("127.0.0.1", 0))
        self._server.listen(8)
        self._server.settimeout(0.1)
        self.port = self._server.getsockname()[1]

    @property
    def address(self):
        return f"127.0.0.1:{self.port}"

    def publish(self, msg_id, body, attempts=1):
        with self._lock:
            self._queue.append((msg_id, body, attempts))

    def start(self):
        self._running = True
        thread = threading.Thread(target=self._accept_loop, daemon=True)
        thread.start()
        self._threads.append(thread)
        return self

    def stop(self):
        self._running = False
        for thread in self._threads:
            thread.join(timeout=2.0)
        self._server.close()

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()

    def wait_disconnected(self, timeout=5.0):
        """Wait until the client hung up."""
        return self._disconnected.wait(timeout)

    def _accept_loop(self):
        while self._running:
            try:
                conn, _ = self._server.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            thread = threading.Thread(target=self._serve, args=(conn,), daemon=True)
            thread.start()
            self._threads.append(thread)

    def _serve(self, conn):
        conn.settimeout(5.0)
        try:
            with conn, conn.makefile("rb") as reader:
                magic = reader.read(4)
                if len(magic) < 4:
                    return
                self.commands.append(magic.decode("ascii"))

                while self._running:
                    line = reader.readline()
                    if not line:
                        return
                    command = line.rstrip(b"\n").decode("ascii")
                    self.commands.append(command)
                    self._handle(conn, command)
        except OSError:
            pass
        finally:
            self._disconnected.set()

    def _handle(self, conn, command):
        name, _, params = command.partition(" ")
        if name == "SUB":
            if self.sub_error:
                conn.sendall(encode_frame(FRAME_ERROR, self.sub_error.encode("ascii")))
                return
            conn.sendall(encode_frame(FRAME_RESPONSE, b"OK"))
            if self.heartbeat:
                conn.sendall(encode_frame(FRAME_RESPONSE, b"_heartbeat_"))
        elif name == "RDY":
            self._deliver(conn)
        elif name == "FIN":
            with self._lock:
                self._in_flight = None
        elif name == "REQ":
            with self._lock:
                msg_id, body, attempts = self._in_flight
                self._queue.appendleft((msg_id, body, attempts + 1))
                self._in_flight = None

    def _deliver(self, conn):
        with self._lock:
            if self._in_flight is not None or not self._queue:
                return
            self._in_flight = self._queue.popleft()
            msg_id, body, attempts = self._in_flight
        conn.sendall(encode_message(msg_id, body, attempts))
