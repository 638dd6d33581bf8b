"""Scrollback ring buffer for PTY sessions."""

from __future__ import annotations

import threading
from collections import deque

DEFAULT_CAPACITY = 100 * 1024  # 100 KiB


class ScrollbackBuffer:
    """Thread-safe fixed-capacity byte buffer of recent PTY output.

    Output chunks are kept as-is in a deque. Once the retained size would
    exceed ``capacity`` the oldest bytes are evicted, splitting the head
    chunk if needed, so ``snapshot()`` is always the exact tail of the
    stream.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._chunks: deque[bytes] = deque()
        self._size: int = 0
        self._total_bytes: int = 0  # Total bytes ever appended
        self._lock = threading.Lock()

    def append(self, data: bytes) -> None:
        """Append a chunk, evicting the oldest bytes beyond capacity."""
        if not data:
            return
        with self._lock:
            self._total_bytes += len(data)
            if len(data) >= self._capacity:
                self._chunks.clear()
                self._chunks.append(bytes(data[-self._capacity :]))
                self._size = self._capacity
                return

            self._chunks.append(bytes(data))
            self._size += len(data)
            overflow = self._size - self._capacity
            while overflow > 0:
                head = self._chunks[0]
                if len(head) <= overflow:
                    self._chunks.popleft()
                    self._size -= len(head)
                    overflow -= len(head)
                else:
                    self._chunks[0] = head[overflow:]
                    self._size -= overflow
                    overflow = 0

    def snapshot(self) -> bytes:
        """Return all retained bytes in order."""
        with self._lock:
            return b"".join(self._chunks)

    def tail(self, n: int) -> bytes:
        """Return the last ``n`` retained bytes."""
        if n <= 0:
            return b""
        data = self.snapshot()
        return data[-n:]

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        """Bytes currently retained."""
        with self._lock:
            return self._size

    @property
    def total_bytes(self) -> int:
        """Bytes appended since construction or the last ``clear()``."""
        with self._lock:
            return self._total_bytes

    def clear(self) -> None:
        with self._lock:
            self._chunks.clear()
            self._size = 0
            self._total_bytes = 0

    def __len__(self) -> int:
        return self.size
