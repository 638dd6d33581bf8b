"""Session record — one logical interactive session and its live process."""

from __future__ import annotations

import asyncio
import enum
import logging
import signal
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ptyhub.errors import AlreadyRunningError, NotRunningError, SpawnError
from ptyhub.pty.buffer import ScrollbackBuffer
from ptyhub.pty.process import (
    ExitEvent,
    OutputEvent,
    ProcessAdapter,
    ProcessHandle,
    SpawnParams,
    clamp_geometry,
)

if TYPE_CHECKING:
    from ptyhub.events import Wire
    from ptyhub.pty.channel import ClientChannel

logger = logging.getLogger(__name__)


class SessionStatus(enum.Enum):
    """Lifecycle states for a session record."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    IDLE = "idle"  # Running, but quiet for a while (display only)
    EXITED = "exited"  # Process exited with code 0
    ERROR = "error"  # Spawn failure, non-zero exit, or killed by a signal


LIVE_STATUSES = frozenset(
    {SessionStatus.STARTING, SessionStatus.RUNNING, SessionStatus.IDLE}
)
STARTABLE_STATUSES = frozenset(
    {SessionStatus.STOPPED, SessionStatus.EXITED, SessionStatus.ERROR}
)


@dataclass(frozen=True)
class ExitInfo:
    """How a session's process ended (or why it never started)."""

    code: int | None = None
    signal: int | None = None
    reason: str = ""

    @classmethod
    def from_event(cls, event: ExitEvent) -> ExitInfo:
        if event.signal is not None:
            try:
                name = signal.Signals(event.signal).name
            except ValueError:
                name = str(event.signal)
            reason = f"Killed by signal {name}"
        else:
            reason = f"Exited with code {event.code}"
        return cls(code=event.code, signal=event.signal, reason=reason)

    @property
    def clean(self) -> bool:
        return self.code == 0 and self.signal is None

    def to_dict(self) -> dict[str, Any]:
        return {"exitCode": self.code, "signal": self.signal, "reason": self.reason}


class SessionRecord:
    """A session: spawn params, at most one live process, scrollback, clients.

    Clients come and go without touching the process. Output from the
    process is consumed by a pump task that appends to the scrollback and
    fans out to every attached client in the same synchronous step, so a
    newly attached client sees the snapshot followed by live output with no
    gap and no duplication.

    Lifecycle operations that await (start, stop, restart) are serialized
    by this record's own lock; nothing here holds a lock across sessions.
    """

    def __init__(
        self,
        session_id: str,
        spawn_params: SpawnParams,
        adapter: ProcessAdapter,
        scrollback_bytes: int = 100 * 1024,
        idle_after: float = 5.0,
        stop_grace: float = 5.0,
        wire: Wire | None = None,
    ) -> None:
        self.id = session_id
        self.spawn_params = spawn_params
        self.buffer = ScrollbackBuffer(scrollback_bytes)
        self.exit_info: ExitInfo | None = None
        self.last_active_at: float = time.time()
        self.started_at: float | None = None
        self.spawn_count: int = 0
        self.cols, self.rows = spawn_params.cols, spawn_params.rows

        self._adapter = adapter
        self._idle_after = idle_after
        self._stop_grace = stop_grace
        self._wire = wire
        self._status = SessionStatus.STOPPED
        self._process: ProcessHandle | None = None
        self._clients: set[ClientChannel] = set()
        self._pump_task: asyncio.Task | None = None
        self._idle_handle: asyncio.TimerHandle | None = None
        self._exited = asyncio.Event()
        self._stopping = False
        self._lock = asyncio.Lock()

    # -- state -------------------------------------------------------------

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def process(self) -> ProcessHandle | None:
        return self._process

    @property
    def alive(self) -> bool:
        return self._process is not None

    @property
    def clients(self) -> frozenset[ClientChannel]:
        return frozenset(self._clients)

    def snapshot(self) -> dict[str, Any]:
        """Status snapshot for polling and notifications."""
        return {
            "sessionId": self.id,
            "status": self._status.value,
            "pid": self._process.pid if self._process else None,
            "clients": len(self._clients),
            "cols": self.cols,
            "rows": self.rows,
            "startedAt": self.started_at,
            "lastActiveAt": self.last_active_at,
            "restarts": max(0, self.spawn_count - 1),
            "bufferedBytes": self.buffer.size,
            "exitInfo": self.exit_info.to_dict() if self.exit_info else None,
        }

    def _set_status(self, status: SessionStatus) -> None:
        if status == self._status:
            return
        logger.debug("Session %s: %s -> %s", self.id, self._status.value, status.value)
        self._status = status
        if self._wire is not None:
            self._wire.send_status(self.snapshot())

    def _exit_notice(self) -> dict[str, Any]:
        info = self.exit_info or ExitInfo()
        return {"type": "exit", "status": self._status.value, **info.to_dict()}

    # -- clients -----------------------------------------------------------

    def add_client(self, client: ClientChannel) -> None:
        """Attach a client: replay the scrollback, then live events.

        A client that is already attached gets nothing new; it has seen the
        replay once and is receiving live output.
        """
        if client in self._clients:
            return
        self._clients.add(client)
        client.session_id = self.id
        replay = self.buffer.snapshot()
        if replay:
            client.deliver(replay)
        if self._status in (SessionStatus.EXITED, SessionStatus.ERROR):
            client.notify(self._exit_notice())
        logger.info(
            "Client %s attached to session %s (%d clients)",
            client.id,
            self.id,
            len(self._clients),
        )

    def remove_client(self, client: ClientChannel) -> bool:
        if client not in self._clients:
            return False
        self._clients.discard(client)
        if client.session_id == self.id:
            client.session_id = None
        logger.info(
            "Client %s detached from session %s (%d remaining)",
            client.id,
            self.id,
            len(self._clients),
        )
        return True

    def close_clients(self) -> None:
        for client in list(self._clients):
            self.remove_client(client)
            client.close()

    def _broadcast_notice(self, payload: dict[str, Any]) -> None:
        for client in list(self._clients):
            client.notify(payload)

    # -- lifecycle ---------------------------------------------------------

    async def start(self, params: SpawnParams | None = None) -> None:
        """Spawn a fresh process. Raises AlreadyRunningError or SpawnError."""
        async with self._lock:
            self._start_locked(params)

    async def ensure_running(self) -> bool:
        """Start the process unless one is live. Returns True if it spawned."""
        async with self._lock:
            if self._status not in STARTABLE_STATUSES:
                return False
            self._start_locked(None)
            return True

    async def stop(self) -> None:
        """Terminate the live process, escalating after the grace period."""
        async with self._lock:
            await self._stop_locked()

    async def restart(self, params: SpawnParams | None = None) -> None:
        """Stop (if live) and start again, optionally with new params."""
        async with self._lock:
            if self._status in LIVE_STATUSES:
                try:
                    await self._stop_locked()
                except NotRunningError:
                    # Exited on its own just before the stop.
                    pass
            self._start_locked(params)

    def _start_locked(self, params: SpawnParams | None) -> None:
        if self._status not in STARTABLE_STATUSES:
            raise AlreadyRunningError(
                f"Session {self.id} is {self._status.value}", session_id=self.id
            )
        if params is not None:
            self.spawn_params = params
            self.cols, self.rows = params.cols, params.rows

        self.buffer.clear()
        self.exit_info = None
        self._exited = asyncio.Event()
        self._set_status(SessionStatus.STARTING)

        effective = self.spawn_params.amend(cols=self.cols, rows=self.rows)
        try:
            process = self._adapter.spawn(effective)
        except (SpawnError, OSError) as e:
            error = e if isinstance(e, SpawnError) else SpawnError(str(e))
            error.session_id = self.id
            self.exit_info = ExitInfo(reason=error.message)
            logger.warning("Session %s failed to spawn: %s", self.id, error.message)
            self._set_status(SessionStatus.ERROR)
            self._broadcast_notice(self._exit_notice())
            if self._wire is not None:
                self._wire.send_exit(self.id, self._status.value, self.exit_info.to_dict())
            raise error

        self._process = process
        self.spawn_count += 1
        self.started_at = time.time()
        self.last_active_at = self.started_at
        self._pump_task = asyncio.create_task(self._pump(process))
        self._set_status(SessionStatus.RUNNING)
        self._arm_idle_timer()
        logger.info("Session %s running (pid=%s)", self.id, process.pid)

    async def _stop_locked(self) -> None:
        process = self._process
        if process is None or self._status not in LIVE_STATUSES:
            raise NotRunningError(
                f"Session {self.id} is {self._status.value}", session_id=self.id
            )
        if self._drain_pending(process):
            raise NotRunningError(f"Session {self.id} already exited", session_id=self.id)

        self._stopping = True
        try:
            process.terminate(graceful=True)
            if await self._wait_exited(self._stop_grace):
                return
            logger.warning(
                "Session %s did not exit within %.1fs, sending SIGKILL",
                self.id,
                self._stop_grace,
            )
            process.terminate(graceful=False)
            if await self._wait_exited(self._stop_grace):
                return
            # The process never reported back; drop it so the record is usable.
            logger.error("Session %s is unresponsive after SIGKILL, abandoning", self.id)
            process.release()
            if self._pump_task is not None:
                self._pump_task.cancel()
            self._on_exit(process, ExitEvent(signal=signal.SIGKILL))
        finally:
            self._stopping = False

    def _drain_pending(self, process: ProcessHandle) -> bool:
        """Apply events the pump has not read yet. True if the process exited."""
        while True:
            try:
                event = process.events.get_nowait()
            except asyncio.QueueEmpty:
                return False
            if isinstance(event, OutputEvent):
                self._on_output(event.data)
                continue
            pump = self._pump_task
            self._on_exit(process, event)
            if pump is not None:
                pump.cancel()
            return True

    async def _wait_exited(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._exited.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # -- data plane --------------------------------------------------------

    def write(self, data: bytes) -> None:
        """Forward input to the process. Fire-and-forget."""
        process = self._process
        if process is None:
            state = "already exited" if self.exit_info else "not running"
            raise NotRunningError(f"Session {self.id} is {state}", session_id=self.id)
        try:
            process.write(data)
        except OSError as e:
            raise NotRunningError(
                f"Session {self.id} rejected input: {e}", session_id=self.id
            ) from e
        self.last_active_at = time.time()

    def resize(self, cols: int, rows: int) -> None:
        """Apply a new geometry. The most recent call from any client wins."""
        process = self._process
        if process is None:
            raise NotRunningError(f"Session {self.id} is not running", session_id=self.id)
        self.cols, self.rows = clamp_geometry(cols, rows)
        try:
            process.resize(self.cols, self.rows)
        except OSError as e:
            raise NotRunningError(
                f"Session {self.id} rejected resize: {e}", session_id=self.id
            ) from e

    async def _pump(self, process: ProcessHandle) -> None:
        while True:
            event = await process.events.get()
            if isinstance(event, OutputEvent):
                self._on_output(event.data)
            else:
                self._on_exit(process, event)
                return

    def _on_output(self, data: bytes) -> None:
        self.buffer.append(data)
        self.last_active_at = time.time()
        if self._status == SessionStatus.IDLE:
            self._set_status(SessionStatus.RUNNING)
        for client in list(self._clients):
            client.deliver(data)
        self._arm_idle_timer()

    def _on_exit(self, process: ProcessHandle, event: ExitEvent) -> None:
        if process is not self._process:
            return
        self._cancel_idle_timer()
        self._process = None
        self._pump_task = None
        self.exit_info = ExitInfo.from_event(event)

        if self._stopping:
            status = SessionStatus.STOPPED
        elif self.exit_info.clean:
            status = SessionStatus.EXITED
        else:
            status = SessionStatus.ERROR
        logger.info("Session %s %s: %s", self.id, status.value, self.exit_info.reason)
        self._set_status(status)
        self._broadcast_notice(self._exit_notice())
        if self._wire is not None:
            self._wire.send_exit(
                self.id,
                status.value,
                self.exit_info.to_dict(),
                last_output=self.buffer.tail(2048),
            )
        self._exited.set()

    def _arm_idle_timer(self) -> None:
        self._cancel_idle_timer()
        if self._idle_after <= 0:
            return
        loop = asyncio.get_running_loop()
        self._idle_handle = loop.call_later(self._idle_after, self._mark_idle)

    def _cancel_idle_timer(self) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None

    def _mark_idle(self) -> None:
        self._idle_handle = None
        if self._status == SessionStatus.RUNNING:
            self._set_status(SessionStatus.IDLE)
