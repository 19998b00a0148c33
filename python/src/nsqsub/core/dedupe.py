"""
Message deduplication.

nsqd guarantees at-least-once delivery, so the same message can arrive more
than once. A Dedupe remembers which (topic, channel, message) triples have
been seen; the subscriber skips the callback for duplicates but still
finishes them.

The filters here are the "opposite of a Bloom filter": a fixed-size table
where each key hashes to one slot holding a digest of the key. A colliding
key overwrites the slot, so a duplicate can occasionally be missed (false
negative) but a new message is never reported as seen (no false
positives).
"""

import hashlib
import os
import time
import zlib
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import msgpack
import psutil

from .message import Message


class Dedupe(ABC):
    """Deduplication store."""

    @abstractmethod
    def contains_and_add(self, topic: str, channel: str, message: Message) -> bool:
        """Record the message; return True if it was already recorded."""

    def erase(self, topic: str, channel: str, message: Message):
        """Forget the message so a redelivery is processed again."""


class NullDedupe(Dedupe):
    """Never reports duplicates."""

    def contains_and_add(self, topic: str, channel: str, message: Message) -> bool:
        return False


def _slot(topic: str, channel: str, message: Message, size: int, by_body: bool) -> Tuple[int, bytes]:
    """Map a message to (slot index, content digest)."""
    identity = message.body if by_body else message.wire_id
    element = f"{topic}:{channel}:".encode("utf-8") + identity
    index = zlib.adler32(element) % size
    return index, hashlib.md5(element).digest()


class OppositeOfBloomFilter(Dedupe):
    """
    In-memory dedupe table for a single process.

    Args:
        size: Number of slots; more slots means fewer missed duplicates
        by_body: Key on the message body instead of the message id, to also
            catch the same payload published twice
    """

    def __init__(self, size: int = 1_000_000, by_body: bool = False):
        if size < 1:
            raise ValueError(f"size must be >= 1, got {size}")
        self.size = size
        self.by_body = by_body
        self._slots: Dict[int, bytes] = {}

    def contains_and_add(self, topic: str, channel: str, message: Message) -> bool:
        index, content = _slot(topic, channel, message, self.size, self.by_body)
        present = self._slots.get(index) == content
        self._slots[index] = content
        return present

    def erase(self, topic: str, channel: str, message: Message):
        index, content = _slot(topic, channel, message, self.size, self.by_body)
        if self._slots.get(index) == content:
            del self._slots[index]

    def __len__(self) -> int:
        return len(self._slots)


class SharedFileDedupe(Dedupe):
    """
    Dedupe table shared by several subscriber processes through a file.

    The table is stored as msgpack at path. Every operation takes an
    exclusive lock (atomic creation of path + ".lock" holding our PID),
    reads the table, updates it and writes it back atomically (temp file +
    rename). A lock left behind by a dead process is broken.

    Every message costs a read and a write of the whole table, so keep size
    small; this suits low-volume topics consumed by several processes on
    one host.
    """

    def __init__(
        self,
        path: Union[str, Path],
        size: int = 10_000,
        by_body: bool = False,
        lock_timeout: float = 5.0,
    ):
        if size < 1:
            raise ValueError(f"size must be >= 1, got {size}")
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.size = size
        self.by_body = by_body
        self.lock_timeout = lock_timeout

    def contains_and_add(self, topic: str, channel: str, message: Message) -> bool:
        index, content = _slot(topic, channel, message, self.size, self.by_body)
        self._acquire_lock()
        try:
            slots = self._read()
            present = slots.get(index) == content
            if not present:
                slots[index] = content
                self._write(slots)
            return present
        finally:
            self._release_lock()

    def erase(self, topic: str, channel: str, message: Message):
        index, content = _slot(topic, channel, message, self.size, self.by_body)
        self._acquire_lock()
        try:
            slots = self._read()
            if slots.get(index) == content:
                del slots[index]
                self._write(slots)
        finally:
            self._release_lock()

    def _read(self) -> Dict[int, bytes]:
        """Read the table, empty if the file does not exist yet."""
        if not self.path.exists():
            return {}
        with open(self.path, "rb") as f:
            data = f.read()
        if not data:
            return {}
        return msgpack.unpackb(data, raw=False, strict_map_key=False)

    def _write(self, slots: Dict[int, bytes]):
        """Write the table atomically (temp file + rename)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(self.path.name + f".{os.getpid()}.tmp")
        with open(temp_path, "wb") as f:
            f.write(msgpack.packb(slots, use_bin_type=True))
        temp_path.replace(self.path)

    def _lock_owner(self) -> Optional[int]:
        try:
            return int(self.lock_path.read_text().strip())
        except (OSError, ValueError):
            return None

    def _lock_is_stale(self) -> bool:
        """True if the lock owner died, or never wrote its PID and the lock
        is older than lock_timeout."""
        owner = self._lock_owner()
        if owner is not None:
            return not psutil.pid_exists(owner)
        try:
            age = time.time() - self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return False
        return age > self.lock_timeout

    def _acquire_lock(self):
        """Acquire the lock file, breaking it if its owner died.

        Raises:
            TimeoutError: If the lock could not be acquired in lock_timeout
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self.lock_timeout

        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                if self._lock_is_stale():
                    try:
                        os.unlink(self.lock_path)
                    except FileNotFoundError:
                        pass
                    continue
                if time.monotonic() >= deadline:
                    raise TimeoutError(
                        f"Could not acquire dedupe lock {self.lock_path} "
                        f"after {self.lock_timeout}s"
                    )
                time.sleep(0.005)
                continue

            with os.fdopen(fd, "w") as lock_file:
                lock_file.write(str(os.getpid()))
            return

    def _release_lock(self):
        try:
            os.unlink(self.lock_path)
        except FileNotFoundError:
            pass
