"""Process adapter: interactive processes attached to a pseudo-terminal."""

from __future__ import annotations

import asyncio
import enum
import fcntl
import logging
import os
import pty
import shlex
import shutil
import signal
import struct
import subprocess
import termios
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field

from ptyhub.errors import SpawnError

logger = logging.getLogger(__name__)

RESUME_FLAG = "--resume"
BYPASS_PERMISSIONS_FLAG = "--dangerously-skip-permissions"
VERBOSE_FLAG = "--verbose"
MODEL_FLAG = "--model"

MAX_COLS = 500
MAX_ROWS = 200


class ModelChoice(enum.StrEnum):
    """Model aliases understood by the agent CLI."""

    OPUS = "opus"
    SONNET = "sonnet"
    HAIKU = "haiku"


def canonical_model(name: str) -> str:
    """Map a model selector to the name passed on the command line."""
    cleaned = name.strip()
    try:
        return ModelChoice(cleaned.lower()).value
    except ValueError:
        return cleaned


def clamp_geometry(cols: int, rows: int) -> tuple[int, int]:
    return max(1, min(MAX_COLS, cols)), max(1, min(MAX_ROWS, rows))


class SpawnParams(BaseModel):
    """Immutable snapshot used to (re)start a session's process."""

    model_config = ConfigDict(frozen=True)

    command: str = Field(default="claude", min_length=1)
    cwd: str | None = Field(default=None)
    resume_id: str | None = Field(
        default=None, description="Conversation id passed as --resume"
    )
    bypass_permissions: bool = Field(default=False)
    verbose: bool = Field(default=False)
    model: str | None = Field(default=None)
    cols: int = Field(default=120, ge=1, le=MAX_COLS)
    rows: int = Field(default=30, ge=1, le=MAX_ROWS)
    env: dict[str, str] = Field(default_factory=dict)

    def amend(self, **changes: Any) -> SpawnParams:
        """Return a validated copy with the non-None ``changes`` applied."""
        update = {k: v for k, v in changes.items() if v is not None}
        if not update:
            return self
        return SpawnParams.model_validate({**self.model_dump(), **update})


def build_argv(params: SpawnParams) -> list[str]:
    """Translate spawn params into the concrete command line."""
    argv = shlex.split(params.command)
    if params.resume_id:
        argv += [RESUME_FLAG, params.resume_id]
    if params.bypass_permissions:
        argv.append(BYPASS_PERMISSIONS_FLAG)
    if params.verbose:
        argv.append(VERBOSE_FLAG)
    if params.model and params.model.strip():
        argv += [MODEL_FLAG, canonical_model(params.model)]
    return argv


@dataclass(frozen=True)
class OutputEvent:
    """A chunk of raw PTY output. No framing is implied."""

    data: bytes


@dataclass(frozen=True)
class ExitEvent:
    """The process is gone. Exactly one per handle, always last."""

    code: int | None = None
    signal: int | None = None


ProcessEvent = Union[OutputEvent, ExitEvent]


class ProcessHandle(ABC):
    """A spawned process. Produces ``ProcessEvent``s onto ``events``."""

    pid: int
    events: asyncio.Queue[ProcessEvent]

    @abstractmethod
    def write(self, data: bytes) -> None:
        """Queue bytes for the process. Never blocks."""

    @abstractmethod
    def resize(self, cols: int, rows: int) -> None: ...

    @abstractmethod
    def terminate(self, graceful: bool = True) -> None: ...

    @abstractmethod
    def release(self) -> None:
        """Stop producing events and free OS resources. The process is abandoned."""


class ProcessAdapter(ABC):
    """Factory for process handles."""

    @abstractmethod
    def spawn(self, params: SpawnParams) -> ProcessHandle:
        """Start a process. Raises ``SpawnError`` on any failure."""


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


def _make_controlling_tty() -> None:
    # Runs in the child after setsid(); stdin is the PTY slave.
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PtyProcess(ProcessHandle):
    """A process running on the slave side of a PTY pair.

    The process gets its own session and process group so that termination
    reaches the whole tree. The master fd is read non-blocking from the
    event loop; EOF (or EIO on Linux) marks the end of output, after which
    the exit status is reaped and published as the final ``ExitEvent``.
    """

    def __init__(
        self,
        argv: list[str],
        cwd: str,
        env: dict[str, str],
        cols: int = 120,
        rows: int = 30,
        read_size: int = 65536,
    ) -> None:
        self.argv = argv
        self.cwd = cwd
        self.env = env
        self.cols, self.rows = clamp_geometry(cols, rows)
        self.events: asyncio.Queue[ProcessEvent] = asyncio.Queue()
        self.pid = 0
        self._read_size = read_size
        self._master_fd = -1
        self._proc: subprocess.Popen | None = None
        self._pgid = 0
        self._loop: asyncio.AbstractEventLoop | None = None
        self._pending = bytearray()
        self._writer_registered = False
        self._reading = False
        self._reap_task: asyncio.Task | None = None

    def start(self) -> None:
        """Spawn the process. Must be called from the event loop thread."""
        loop = asyncio.get_running_loop()
        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(slave_fd, self.cols, self.rows)
            self._proc = subprocess.Popen(
                self.argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=self.cwd,
                env=self.env,
                start_new_session=True,
                preexec_fn=_make_controlling_tty,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        self._loop = loop
        self._master_fd = master_fd
        self.pid = self._proc.pid
        try:
            self._pgid = os.getpgid(self.pid)
        except ProcessLookupError:
            self._pgid = self.pid
        os.set_blocking(master_fd, False)
        loop.add_reader(master_fd, self._on_readable)
        self._reading = True

        logger.info(
            "PTY process started: pid=%d cwd=%s cmd=%s",
            self.pid,
            self.cwd,
            shlex.join(self.argv),
        )

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, self._read_size)
        except BlockingIOError:
            return
        except OSError:
            # EIO once every slave fd is closed
            data = b""

        if data:
            self.events.put_nowait(OutputEvent(data))
            return

        self._stop_io()
        assert self._loop is not None
        self._reap_task = self._loop.create_task(self._reap())

    def _stop_io(self) -> None:
        if self._loop is None or self._master_fd < 0:
            return
        if self._reading:
            self._loop.remove_reader(self._master_fd)
            self._reading = False
        if self._writer_registered:
            self._loop.remove_writer(self._master_fd)
            self._writer_registered = False
        self._pending.clear()

    async def _reap(self) -> None:
        assert self._proc is not None
        loop = asyncio.get_running_loop()
        returncode = await loop.run_in_executor(None, self._proc.wait)
        try:
            os.close(self._master_fd)
        except OSError:
            pass
        self._master_fd = -1

        if returncode < 0:
            event = ExitEvent(signal=-returncode)
        else:
            event = ExitEvent(code=returncode)
        logger.info(
            "PTY process %d exited (code=%s signal=%s)",
            self.pid,
            event.code,
            event.signal,
        )
        self.events.put_nowait(event)

    def write(self, data: bytes) -> None:
        if self._master_fd < 0 or not self._reading:
            raise OSError("PTY is closed")
        self._pending += data
        self._flush()

    def _flush(self) -> None:
        while self._pending:
            try:
                written = os.write(self._master_fd, self._pending)
            except BlockingIOError:
                break
            except OSError as e:
                logger.debug("PTY write to pid %d failed: %s", self.pid, e)
                self._pending.clear()
                break
            del self._pending[:written]

        assert self._loop is not None
        if self._pending and not self._writer_registered:
            self._loop.add_writer(self._master_fd, self._flush)
            self._writer_registered = True
        elif not self._pending and self._writer_registered:
            self._loop.remove_writer(self._master_fd)
            self._writer_registered = False

    def resize(self, cols: int, rows: int) -> None:
        if self._master_fd < 0:
            raise OSError("PTY is closed")
        self.cols, self.rows = clamp_geometry(cols, rows)
        _set_winsize(self._master_fd, self.cols, self.rows)

    def terminate(self, graceful: bool = True) -> None:
        """Signal the process group: SIGHUP+SIGTERM, or SIGKILL."""
        signals = (signal.SIGHUP, signal.SIGTERM) if graceful else (signal.SIGKILL,)
        for sig in signals:
            try:
                os.killpg(self._pgid, sig)
            except ProcessLookupError:
                logger.debug("Process group already gone: %d", self._pgid)
                return
            except PermissionError as e:
                logger.warning("Cannot signal pgid %d: %s", self._pgid, e)
                return
        logger.info(
            "Sent %s to PTY process group %d",
            "+".join(s.name for s in signals),
            self._pgid,
        )


    def release(self) -> None:
        self._stop_io()
        if self._reap_task is not None:
            self._reap_task.cancel()
        if self._master_fd >= 0:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = -1
        logger.info("Released PTY process %d", self.pid)


class PtyProcessAdapter(ProcessAdapter):
    """Spawns ``PtyProcess`` handles from ``SpawnParams``."""

    def __init__(
        self,
        base_env: dict[str, str] | None = None,
        read_size: int = 65536,
    ) -> None:
        self._base_env = base_env
        self._read_size = read_size

    def _build_env(self, params: SpawnParams) -> dict[str, str]:
        env = dict(os.environ if self._base_env is None else self._base_env)
        env.update(params.env)
        env["TERM"] = "xterm-256color"
        env.pop("PROMPT_COMMAND", None)
        return env

    def spawn(self, params: SpawnParams) -> ProcessHandle:
        cwd = os.path.abspath(os.path.expanduser(params.cwd or os.getcwd()))
        if not os.path.isdir(cwd):
            raise SpawnError(f"Working directory does not exist: {cwd}")

        try:
            argv = build_argv(params)
        except ValueError as e:
            raise SpawnError(f"Invalid command {params.command!r}: {e}") from e
        if not argv:
            raise SpawnError("Empty command")

        env = self._build_env(params)
        if shutil.which(argv[0], path=env.get("PATH")) is None:
            raise SpawnError(f"Command not found: {argv[0]}")

        proc = PtyProcess(
            argv=argv,
            cwd=cwd,
            env=env,
            cols=params.cols,
            rows=params.rows,
            read_size=self._read_size,
        )
        try:
            proc.start()
        except OSError as e:
            raise SpawnError(f"Failed to spawn {argv[0]}: {e}") from e
        except subprocess.SubprocessError as e:
            raise SpawnError(f"Failed to spawn {argv[0]}: {e}") from e
        return proc
