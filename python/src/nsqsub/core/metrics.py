"""
Metrics collection for observability.

Tracks message outcomes, callback latency, in-flight messages and
connection errors.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, Any
from collections import deque
import threading


@dataclass
class MetricsSnapshot:
    """Point-in-time snapshot of all metrics."""

    # Message outcomes
    messages_received: int = 0
    messages_finished: int = 0
    messages_requeued: int = 0
    messages_deduplicated: int = 0
    messages_abandoned: int = 0
    callback_failures: int = 0

    # Frames
    heartbeats: int = 0

    # Callback latency (milliseconds)
    latency_avg_ms: float = 0.0
    latency_p50_ms: float = 0.0
    latency_p95_ms: float = 0.0
    latency_p99_ms: float = 0.0
    latency_min_ms: float = 0.0
    latency_max_ms: float = 0.0

    # Flow control
    in_flight: int = 0
    in_flight_max: int = 0

    # Connections
    connections_open: int = 0
    connection_errors: int = 0
    protocol_errors: int = 0

    # Timestamp
    timestamp: float = field(default_factory=time.time)


class Metrics:
    """
    Thread-safe metrics collector for Subscriber.

    The subscriber itself is single-threaded; the lock lets snapshots be
    taken from any thread.

    Usage:
        metrics = Metrics()

        start = metrics.start_message()
        # ... run callback ...
        metrics.end_message(start)
        metrics.record_finish()

        snapshot = metrics.snapshot()
        print(f"Avg callback latency: {snapshot.latency_avg_ms}ms")
    """

    def __init__(self, max_latency_samples: int = 1000):
        self.max_latency_samples = max_latency_samples

        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {}
        self._in_flight = 0
        self._in_flight_max = 0
        self._connections_open = 0

        # Latency samples (circular buffer)
        self._latencies: deque = deque(maxlen=max_latency_samples)

        self.reset()

    def _incr(self, name: str, amount: int = 1):
        with self._lock:
            self._counters[name] += amount

    def start_message(self) -> float:
        """
        Record a received message and start timing it.

        Returns start timestamp for the later end_message() call.
        """
        with self._lock:
            self._counters["messages_received"] += 1
            self._in_flight += 1
            self._in_flight_max = max(self._in_flight_max, self._in_flight)
        return time.perf_counter()

    def end_message(self, start_time: float, success: bool = True) -> float:
        """
        Stop timing a message's callback.

        Returns latency in milliseconds.
        """
        latency_ms = (time.perf_counter() - start_time) * 1000
        with self._lock:
            if not success:
                self._counters["callback_failures"] += 1
            self._latencies.append(latency_ms)
        return latency_ms

    def _settle(self, outcome: str):
        with self._lock:
            self._counters[outcome] += 1
            self._in_flight = max(0, self._in_flight - 1)

    def record_finish(self):
        self._settle("messages_finished")

    def record_requeue(self):
        self._settle("messages_requeued")

    def record_dedupe(self):
        """A duplicate still gets finished; count it on both sides."""
        self._incr("messages_deduplicated")

    def record_abandon(self):
        """A failed message given up on; it is finished afterwards."""
        self._incr("messages_abandoned")

    def record_heartbeat(self):
        self._incr("heartbeats")

    def record_connection_open(self):
        with self._lock:
            self._connections_open += 1

    def record_connection_close(self):
        with self._lock:
            self._connections_open = max(0, self._connections_open - 1)

    def record_connection_error(self, protocol: bool = False):
        self._incr("protocol_errors" if protocol else "connection_errors")

    def snapshot(self) -> MetricsSnapshot:
        """Get a point-in-time snapshot of all metrics."""
        with self._lock:
            latencies = list(self._latencies)

            # Calculate percentiles
            if latencies:
                sorted_latencies = sorted(latencies)
                n = len(sorted_latencies)
                p50_idx = int(n * 0.50)
                p95_idx = int(n * 0.95)
                p99_idx = int(n * 0.99)

                latency_avg = sum(latencies) / n
                latency_p50 = sorted_latencies[min(p50_idx, n - 1)]
                latency_p95 = sorted_latencies[min(p95_idx, n - 1)]
                latency_p99 = sorted_latencies[min(p99_idx, n - 1)]
                latency_min = sorted_latencies[0]
                latency_max = sorted_latencies[-1]
            else:
                latency_avg = latency_p50 = latency_p95 = latency_p99 = 0.0
                latency_min = latency_max = 0.0

            return MetricsSnapshot(
                latency_avg_ms=latency_avg,
                latency_p50_ms=latency_p50,
                latency_p95_ms=latency_p95,
                latency_p99_ms=latency_p99,
                latency_min_ms=latency_min,
                latency_max_ms=latency_max,
                in_flight=self._in_flight,
                in_flight_max=self._in_flight_max,
                connections_open=self._connections_open,
                **self._counters,
            )

    def reset(self):
        """Reset all metrics (open connections are kept)."""
        with self._lock:
            self._counters = {
                "messages_received": 0,
                "messages_finished": 0,
                "messages_requeued": 0,
                "messages_deduplicated": 0,
                "messages_abandoned": 0,
                "callback_failures": 0,
                "heartbeats": 0,
                "connection_errors": 0,
                "protocol_errors": 0,
            }
            self._in_flight = 0
            self._in_flight_max = 0
            self._latencies.clear()

    def to_dict(self) -> Dict[str, Any]:
        """Get metrics as a dictionary (for logging/serialization)."""
        snapshot = self.snapshot()
        settled = snapshot.messages_finished + snapshot.messages_requeued
        return {
            "messages": {
                "received": snapshot.messages_received,
                "finished": snapshot.messages_finished,
                "requeued": snapshot.messages_requeued,
                "deduplicated": snapshot.messages_deduplicated,
                "abandoned": snapshot.messages_abandoned,
                "failure_rate": (
                    snapshot.callback_failures / settled if settled > 0 else 0.0
                ),
            },
            "latency_ms": {
                "avg": round(snapshot.latency_avg_ms, 2),
                "p50": round(snapshot.latency_p50_ms, 2),
                "p95": round(snapshot.latency_p95_ms, 2),
                "p99": round(snapshot.latency_p99_ms, 2),
                "min": round(snapshot.latency_min_ms, 2),
                "max": round(snapshot.latency_max_ms, 2),
            },
            "flow": {
                "in_flight": snapshot.in_flight,
                "in_flight_max": snapshot.in_flight_max,
                "heartbeats": snapshot.heartbeats,
            },
            "connections": {
                "open": snapshot.connections_open,
                "errors": snapshot.connection_errors,
                "protocol_errors": snapshot.protocol_errors,
            },
        }
