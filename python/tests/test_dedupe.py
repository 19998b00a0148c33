"""
Tests for message deduplication stores.
"""

import os
import struct
import sys
import time
from unittest.mock import patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from nsqsub.core.dedupe import NullDedupe, OppositeOfBloomFilter, SharedFileDedupe
from nsqsub.core.message import Message
from nsqsub.core.wire import Frame, FrameType


def make_message(msg_id=b"abcdef0123451234", body=b"payload", attempts=1):
    data = struct.pack(">qH16s", 0, attempts, msg_id) + body
    return Message.from_frame(Frame(FrameType.MESSAGE, data))


class TestNullDedupe:

    def test_never_duplicate(self):
        dedupe = NullDedupe()
        msg = make_message()

        assert dedupe.contains_and_add("orders", "billing", msg) is False
        assert dedupe.contains_and_add("orders", "billing", msg) is False
        dedupe.erase("orders", "billing", msg)


class TestOppositeOfBloomFilter:
    """Test the in-memory table."""

    def test_second_sighting_is_duplicate(self):
        dedupe = OppositeOfBloomFilter(size=1000)
        msg = make_message()

        assert dedupe.contains_and_add("orders", "billing", msg) is False
        assert dedupe.contains_and_add("orders", "billing", msg) is True

    def test_redelivery_with_more_attempts_is_duplicate(self):
        dedupe = OppositeOfBloomFilter(size=1000)

        dedupe.contains_and_add("orders", "billing", make_message(attempts=1))

        assert dedupe.contains_and_add("orders", "billing", make_message(attempts=2)) is True

    def test_scoped_by_topic_and_channel(self):
        dedupe = OppositeOfBloomFilter(size=1000)
        msg = make_message()

        dedupe.contains_and_add("orders", "billing", msg)

        assert dedupe.contains_and_add("orders", "shipping", msg) is False
        assert dedupe.contains_and_add("returns", "billing", msg) is False

    def test_collision_overwrites_slot(self):
        dedupe = OppositeOfBloomFilter(size=1)
        first = make_message(msg_id=b"aaaaaaaaaaaaaaaa")
        second = make_message(msg_id=b"bbbbbbbbbbbbbbbb")

        dedupe.contains_and_add("orders", "billing", first)
        assert dedupe.contains_and_add("orders", "billing", second) is False
        # first was evicted: a missed duplicate, never a false positive
        assert dedupe.contains_and_add("orders", "billing", first) is False
        assert len(dedupe) == 1

    def test_by_body(self):
        dedupe = OppositeOfBloomFilter(size=1000, by_body=True)

        dedupe.contains_and_add("orders", "billing", make_message(msg_id=b"aaaaaaaaaaaaaaaa"))

        same_body = make_message(msg_id=b"bbbbbbbbbbbbbbbb")
        other_body = make_message(msg_id=b"cccccccccccccccc", body=b"other")
        assert dedupe.contains_and_add("orders", "billing", same_body) is True
        assert dedupe.contains_and_add("orders", "billing", other_body) is False

    def test_erase(self):
        dedupe = OppositeOfBloomFilter(size=1000)
        msg = make_message()

        dedupe.contains_and_add("orders", "billing", msg)
        dedupe.erase("orders", "billing", msg)

        assert len(dedupe) == 0
        assert dedupe.contains_and_add("orders", "billing", msg) is False

    def test_erase_keeps_colliding_entry(self):
        dedupe = OppositeOfBloomFilter(size=1)
        first = make_message(msg_id=b"aaaaaaaaaaaaaaaa")
        second = make_message(msg_id=b"bbbbbbbbbbbbbbbb")

        dedupe.contains_and_add("orders", "billing", first)
        dedupe.contains_and_add("orders", "billing", second)
        dedupe.erase("orders", "billing", first)

        assert dedupe.contains_and_add("orders", "billing", second) is True

    def test_invalid_size(self):
        with pytest.raises(ValueError):
            OppositeOfBloomFilter(size=0)

    def test_non_ascii_ids_kept_apart(self):
        dedupe = OppositeOfBloomFilter(size=1000)
        first = make_message(msg_id=bytes(range(0xF0, 0x100)))
        second = make_message(msg_id=bytes(range(0xE0, 0xF0)))

        dedupe.contains_and_add("orders", "billing", first)

        assert dedupe.contains_and_add("orders", "billing", second) is False


class TestSharedFileDedupe:
    """Test the file-backed table shared between processes."""

    def test_second_sighting_is_duplicate(self, tmp_path):
        dedupe = SharedFileDedupe(tmp_path / "dedupe.msgpack")
        msg = make_message()

        assert dedupe.contains_and_add("orders", "billing", msg) is False
        assert dedupe.contains_and_add("orders", "billing", msg) is True

    def test_shared_between_instances(self, tmp_path):
        path = tmp_path / "dedupe.msgpack"
        first = SharedFileDedupe(path)
        second = SharedFileDedupe(path)
        msg = make_message()

        first.contains_and_add("orders", "billing", msg)

        assert second.contains_and_add("orders", "billing", msg) is True

    def test_erase(self, tmp_path):
        dedupe = SharedFileDedupe(tmp_path / "dedupe.msgpack")
        msg = make_message()

        dedupe.contains_and_add("orders", "billing", msg)
        dedupe.erase("orders", "billing", msg)

        assert dedupe.contains_and_add("orders", "billing", msg) is False

    def test_erase_before_file_exists(self, tmp_path):
        dedupe = SharedFileDedupe(tmp_path / "dedupe.msgpack")
        dedupe.erase("orders", "billing", make_message())

    def test_lock_released(self, tmp_path):
        dedupe = SharedFileDedupe(tmp_path / "dedupe.msgpack")

        dedupe.contains_and_add("orders", "billing", make_message())

        assert not dedupe.lock_path.exists()
        assert dedupe.lock_path.name == "dedupe.msgpack.lock"

    def test_creates_parent_directory(self, tmp_path):
        dedupe = SharedFileDedupe(tmp_path / "state" / "dedupe.msgpack")

        dedupe.contains_and_add("orders", "billing", make_message())

        assert dedupe.path.exists()

    def test_stale_lock_broken(self, tmp_path):
        dedupe = SharedFileDedupe(tmp_path / "dedupe.msgpack", lock_timeout=0.1)
        dedupe.lock_path.write_text("999999")

        with patch("nsqsub.core.dedupe.psutil.pid_exists", return_value=False):
            assert dedupe.contains_and_add("orders", "billing", make_message()) is False

        assert not dedupe.lock_path.exists()

    def test_live_lock_times_out(self, tmp_path):
        dedupe = SharedFileDedupe(tmp_path / "dedupe.msgpack", lock_timeout=0.05)
        dedupe.lock_path.write_text(str(os.getpid()))

        with pytest.raises(TimeoutError):
            dedupe.contains_and_add("orders", "billing", make_message())

        # Someone else's lock is left alone
        assert dedupe.lock_path.exists()

    def test_size_bounds_table(self, tmp_path):
        dedupe = SharedFileDedupe(tmp_path / "dedupe.msgpack", size=4)

        for i in range(20):
            dedupe.contains_and_add("orders", "billing", make_message(msg_id=b"%016d" % i))

        assert len(dedupe._read()) <= 4

    def test_empty_old_lock_broken(self, tmp_path):
        dedupe = SharedFileDedupe(tmp_path / "dedupe.msgpack", lock_timeout=0.5)
        dedupe.lock_path.write_text("")
        old = time.time() - 60
        os.utime(dedupe.lock_path, (old, old))

        assert dedupe.contains_and_add("orders", "billing", make_message()) is False
        assert not dedupe.lock_path.exists()

    def test_empty_fresh_lock_respected(self, tmp_path):
        dedupe = SharedFileDedupe(tmp_path / "dedupe.msgpack", lock_timeout=0.05)
        dedupe.lock_path.write_text("")
        # Owner is still between creating the lock and writing its PID
        future = time.time() + 60
        os.utime(dedupe.lock_path, (future, future))

        with pytest.raises(TimeoutError):
            dedupe.contains_and_add("orders", "billing", make_message())

