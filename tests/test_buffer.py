"""Tests for ptyhub.pty.buffer.ScrollbackBuffer."""

from __future__ import annotations

import random

import pytest

from ptyhub.pty.buffer import DEFAULT_CAPACITY, ScrollbackBuffer


class TestScrollbackBufferBasics:
    def test_empty(self) -> None:
        buf = ScrollbackBuffer()
        assert buf.size == 0
        assert buf.total_bytes == 0
        assert buf.snapshot() == b""
        assert buf.capacity == DEFAULT_CAPACITY

    def test_append(self) -> None:
        buf = ScrollbackBuffer()
        buf.append(b"hello ")
        buf.append(b"world")
        assert buf.snapshot() == b"hello world"
        assert buf.size == 11
        assert len(buf) == 11

    def test_append_empty_is_noop(self) -> None:
        buf = ScrollbackBuffer(8)
        buf.append(b"")
        assert buf.size == 0
        assert buf.total_bytes == 0

    def test_invalid_capacity(self) -> None:
        with pytest.raises(ValueError):
            ScrollbackBuffer(0)


class TestScrollbackBufferOverflow:
    def test_capacity_enforced(self) -> None:
        buf = ScrollbackBuffer(capacity=5)
        for i in range(10):
            buf.append(str(i).encode())
        assert buf.size == 5
        assert buf.total_bytes == 10
        assert buf.snapshot() == b"56789"

    def test_head_chunk_is_split(self) -> None:
        buf = ScrollbackBuffer(capacity=8)
        buf.append(b"abcdef")
        buf.append(b"ghij")
        # Only "ab" is evicted, not the whole first chunk
        assert buf.snapshot() == b"cdefghij"

    def test_single_chunk_larger_than_capacity(self) -> None:
        buf = ScrollbackBuffer(capacity=4)
        buf.append(b"xy")
        buf.append(b"0123456789")
        assert buf.snapshot() == b"6789"
        assert buf.size == 4

    def test_chunk_exactly_capacity(self) -> None:
        buf = ScrollbackBuffer(capacity=4)
        buf.append(b"ab")
        buf.append(b"wxyz")
        assert buf.snapshot() == b"wxyz"

    def test_snapshot_is_suffix_of_stream(self) -> None:
        rng = random.Random(1234)
        capacity = 97
        buf = ScrollbackBuffer(capacity)
        stream = b""
        for _ in range(300):
            chunk = bytes(rng.randrange(256) for _ in range(rng.randrange(1, 60)))
            buf.append(chunk)
            stream += chunk
            assert len(buf.snapshot()) <= capacity
        assert len(stream) > capacity
        assert buf.snapshot() == stream[-capacity:]


class TestScrollbackBufferTailAndClear:
    def test_tail(self) -> None:
        buf = ScrollbackBuffer()
        buf.append(b"line 1\nline 2\n")
        assert buf.tail(7) == b"line 2\n"

    def test_tail_more_than_available(self) -> None:
        buf = ScrollbackBuffer()
        buf.append(b"ab")
        assert buf.tail(100) == b"ab"

    def test_tail_zero(self) -> None:
        buf = ScrollbackBuffer()
        buf.append(b"ab")
        assert buf.tail(0) == b""

    def test_clear(self) -> None:
        buf = ScrollbackBuffer(capacity=4)
        buf.append(b"abcdef")
        buf.clear()
        assert buf.size == 0
        assert buf.total_bytes == 0
        assert buf.snapshot() == b""
        buf.append(b"z")
        assert buf.snapshot() == b"z"
