"""
Requeue strategies: decide what happens to a message whose callback failed.

should_requeue() returns a delay in milliseconds to requeue with, or None
to give up on the message (it is then finished so flow control resumes).
"""

from abc import ABC, abstractmethod
from typing import Optional, Sequence

from .message import Message


class RequeueStrategy(ABC):
    """Backoff policy for failed messages."""

    @abstractmethod
    def should_requeue(self, message: Message) -> Optional[int]:
        pass


class NeverRequeue(RequeueStrategy):
    """Always give up on failed messages."""

    def should_requeue(self, message: Message) -> Optional[int]:
        return None


class FixedDelay(RequeueStrategy):
    """Requeue with the same delay until max_attempts deliveries were made."""

    def __init__(self, delay_ms: int = 50, max_attempts: int = 10):
        if delay_ms < 0:
            raise ValueError(f"delay_ms must be >= 0, got {delay_ms}")
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.delay_ms = int(delay_ms)
        self.max_attempts = max_attempts

    def should_requeue(self, message: Message) -> Optional[int]:
        if message.attempts < self.max_attempts:
            return self.delay_ms
        return None


class DelaysList(RequeueStrategy):
    """
    Requeue with a per-attempt delay.

    The first failed delivery (attempts == 1) uses delays_ms[0], the second
    delays_ms[1] and so on; once the list is exhausted the message is
    abandoned.
    """

    def __init__(self, delays_ms: Sequence[int]):
        delays = [int(d) for d in delays_ms]
        if any(d < 0 for d in delays):
            raise ValueError(f"Delays must be >= 0, got {delays}")
        self.delays_ms = delays

    def should_requeue(self, message: Message) -> Optional[int]:
        attempts = message.attempts
        if attempts < 1 or attempts > len(self.delays_ms):
            return None
        return self.delays_ms[attempts - 1]
