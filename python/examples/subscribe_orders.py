"""
Example: Subscribing to a topic on a fixed set of nsqd hosts.

Failed messages are requeued with a per-attempt backoff and duplicates are
dropped with an in-memory dedupe table. Metrics are printed on exit.

Usage:
1. Run nsqd locally (nsqd --tcp-address=127.0.0.1:4150)
2. Publish something:
   curl -d '{"order": 1}' 'http://127.0.0.1:4151/pub?topic=orders'
3. Run this script and press Ctrl+C to stop

python subscribe_orders.py 127.0.0.1:4150
"""

import json
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from nsqsub import (
    DelaysList,
    LogLevel,
    OppositeOfBloomFilter,
    Subscriber,
    default_pretty_handler,
)


def handle(message):
    """Process one order; raising requeues it."""
    order = json.loads(message.body)
    print(f"[{message.connection}] order {order} (attempt {message.attempts})")


def main():
    hosts = sys.argv[1] if len(sys.argv) > 1 else "127.0.0.1:4150"

    subscriber = Subscriber.with_hosts(
        hosts,
        dedupe=OppositeOfBloomFilter(size=100_000),
        requeue_strategy=DelaysList([1000, 5000, 30000]),
        log_handler=default_pretty_handler,
        log_level=LogLevel.INFO,
        on_connect_error="skip",
    )

    subscriber.subscribe("orders", "billing", handle)
    print("Subscribed, waiting for messages (Ctrl+C to stop)...")
    subscriber.run()

    print(json.dumps(subscriber.metrics.to_dict(), indent=2))


if __name__ == "__main__":
    main()
