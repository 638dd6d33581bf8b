"""Client attachment channel: one connection relayed to one session.

Outbound traffic goes through a bounded per-client queue. When a slow
client lets it fill up, the oldest message is dropped so that broadcasting
from the session never waits on any single viewer.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Annotated, Any, Literal, Protocol, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from ptyhub.errors import ProtocolError

if TYPE_CHECKING:
    from ptyhub.pty.registry import SessionRegistry

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1024


# ---------------------------------------------------------------------------
# Inbound protocol
# ---------------------------------------------------------------------------


class InputMessage(BaseModel):
    type: Literal["input"]
    data: str


class ResizeMessage(BaseModel):
    type: Literal["resize"]
    cols: int = Field(ge=1)
    rows: int = Field(ge=1)


InboundMessage = Annotated[
    Union[InputMessage, ResizeMessage], Field(discriminator="type")
]
_inbound_adapter: TypeAdapter[InputMessage | ResizeMessage] = TypeAdapter(
    InboundMessage
)


def parse_inbound(raw: str | bytes) -> InputMessage | ResizeMessage | bytes:
    """Decode one inbound frame.

    Binary frames and text that is not a JSON object are raw input and come
    back as bytes. JSON objects must be a valid ``input`` or ``resize``
    message, otherwise ``ProtocolError`` is raised.
    """
    if isinstance(raw, bytes):
        return raw
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return raw.encode("utf-8")
    if not isinstance(payload, dict):
        return raw.encode("utf-8")
    try:
        return _inbound_adapter.validate_python(payload)
    except ValidationError as e:
        raise ProtocolError(f"Invalid message: {e.errors()[0]['msg']}") from e


# ---------------------------------------------------------------------------
# Outbound protocol
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OutputChunk:
    data: bytes


@dataclass(frozen=True)
class Notice:
    payload: dict[str, Any]


Outbound = Union[OutputChunk, Notice]


class Transport(Protocol):
    """What a channel needs from the underlying connection."""

    async def send_bytes(self, data: bytes) -> None: ...

    async def send_json(self, payload: dict[str, Any]) -> None: ...

    async def receive(self) -> str | bytes | None:
        """Next inbound frame, or None once the peer has gone away."""
        ...


class ClientChannel:
    """Per-connection relay between a transport and a session record."""

    def __init__(
        self,
        max_pending: int = DEFAULT_QUEUE_SIZE,
        client_id: str | None = None,
    ) -> None:
        self.id = client_id or uuid.uuid4().hex[:8]
        self.session_id: str | None = None
        self.dropped: int = 0
        self._outbox: asyncio.Queue[Outbound | None] = asyncio.Queue(
            maxsize=max_pending
        )
        self._closed = False

    # -- session side ------------------------------------------------------

    def deliver(self, data: bytes) -> None:
        """Queue an output chunk for this client. Never blocks."""
        self._enqueue(OutputChunk(data))

    def notify(self, payload: dict[str, Any]) -> None:
        """Queue a JSON control notice for this client."""
        self._enqueue(Notice(payload))

    def _enqueue(self, message: Outbound | None) -> None:
        if self._closed:
            return
        try:
            self._outbox.put_nowait(message)
        except asyncio.QueueFull:
            self._outbox.get_nowait()
            self.dropped += 1
            logger.debug(
                "Client %s is slow, dropped oldest message (%d total)",
                self.id,
                self.dropped,
            )
            self._outbox.put_nowait(message)

    def close(self) -> None:
        """End the relay. Pending messages are still flushed first."""
        if self._closed:
            return
        self._enqueue(None)
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    # -- connection side ---------------------------------------------------

    async def next_outbound(self) -> Outbound | None:
        return await self._outbox.get()

    def pending(self) -> list[Outbound]:
        """Drain queued messages without waiting (the close marker is skipped)."""
        items: list[Outbound] = []
        while not self._outbox.empty():
            item = self._outbox.get_nowait()
            if item is not None:
                items.append(item)
        return items

    async def handle_inbound(self, registry: SessionRegistry, raw: str | bytes) -> None:
        """Forward one inbound frame; failures become error notices."""
        if self.session_id is None:
            return
        try:
            message = parse_inbound(raw)
        except ProtocolError as e:
            self.notify({"type": "error", **e.to_dict()})
            return

        if isinstance(message, bytes):
            outcome = registry.write(self.session_id, message)
        elif isinstance(message, InputMessage):
            outcome = registry.write(self.session_id, message.data.encode("utf-8"))
        else:
            outcome = registry.resize(self.session_id, message.cols, message.rows)

        if outcome.error is not None:
            self.notify({"type": "error", **outcome.error.to_dict()})

    async def relay(self, registry: SessionRegistry, transport: Transport) -> None:
        """Pump messages both ways until either side finishes."""

        async def send_loop() -> None:
            while True:
                message = await self._outbox.get()
                if message is None:
                    break
                if isinstance(message, OutputChunk):
                    await transport.send_bytes(message.data)
                else:
                    await transport.send_json(message.payload)

        async def receive_loop() -> None:
            while True:
                raw = await transport.receive()
                if raw is None:
                    break
                await self.handle_inbound(registry, raw)

        sender = asyncio.create_task(send_loop())
        receiver = asyncio.create_task(receive_loop())
        try:
            done, pending = await asyncio.wait(
                {sender, receiver}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                exc = task.exception()
                if exc is not None:
                    logger.debug("Client %s relay ended: %s", self.id, exc)
        finally:
            if not sender.done():
                sender.cancel()
            if not receiver.done():
                receiver.cancel()
            self._closed = True
