"""Status wire: session status changes -> UI subscribers.

The registry publishes as sessions start, stop, exit and disappear. The
``/ws/events`` endpoint subscribes once per viewer and forwards everything,
so sidebars and exit toasts never need to poll ``list_statuses()``.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any

from ptyhub.textutil import last_lines

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 256
EXIT_SUMMARY_LINES = 3
EXIT_SUMMARY_CHARS = 500


class EventType(enum.Enum):
    SESSION_STATUS = "session_status"
    SESSION_EXIT = "session_exit"
    SESSION_REMOVED = "session_removed"


@dataclass
class WireEvent:
    """One status event, serialized as ``{"type", "payload"}``."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "payload": self.data}


Subscription = asyncio.Queue  # of WireEvent | None


class Wire:
    """Broadcast bus from the session registry to status viewers.

    Publishing never blocks: each subscriber gets a bounded queue and a
    viewer that falls behind loses its oldest events. ``None`` on a queue
    means the wire has closed.
    """

    def __init__(self, queue_size: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscribers: set[Subscription] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        queue: Subscription = asyncio.Queue(maxsize=self._queue_size)
        if self._closed:
            queue.put_nowait(None)
        else:
            self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: Subscription) -> None:
        self._subscribers.discard(queue)

    def publish(self, event: WireEvent) -> None:
        """Hand ``event`` to every subscriber. Dropped once the wire is closed."""
        if self._closed:
            return
        for queue in self._subscribers:
            _offer(queue, event)

    def send_status(self, snapshot: dict[str, Any]) -> None:
        self.publish(WireEvent(EventType.SESSION_STATUS, snapshot))

    def send_exit(
        self,
        session_id: str,
        status: str,
        exit_info: dict[str, Any] | None,
        last_output: bytes = b"",
    ) -> None:
        """Announce that a session's process is gone, with a short output summary."""
        summary = last_lines(
            last_output.decode("utf-8", errors="replace"), EXIT_SUMMARY_LINES
        )
        self.publish(
            WireEvent(
                EventType.SESSION_EXIT,
                {
                    "sessionId": session_id,
                    "status": status,
                    "exitInfo": exit_info,
                    "lastOutput": summary[-EXIT_SUMMARY_CHARS:],
                },
            )
        )

    def send_removed(self, session_id: str) -> None:
        self.publish(WireEvent(EventType.SESSION_REMOVED, {"sessionId": session_id}))

    def close(self) -> None:
        """Wake every subscriber with the end-of-stream marker. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for queue in self._subscribers:
            _offer(queue, None)
        self._subscribers.clear()


def _offer(queue: Subscription, item: WireEvent | None) -> None:
    try:
        queue.put_nowait(item)
    except asyncio.QueueFull:
        queue.get_nowait()
        logger.debug("Status subscriber is behind, dropped oldest event")
        queue.put_nowait(item)
