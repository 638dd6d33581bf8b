"""PTY session multiplexing: long-lived processes, many viewers.

Every interactive agent runs in a managed PTY owned by a session record.
Viewers attach and detach through client channels; the process keeps
running whether or not anyone is watching.
"""

from ptyhub.pty.buffer import ScrollbackBuffer
from ptyhub.pty.channel import ClientChannel
from ptyhub.pty.process import PtyProcessAdapter, SpawnParams
from ptyhub.pty.registry import SessionRegistry
from ptyhub.pty.session import ExitInfo, SessionRecord, SessionStatus

__all__ = [
    "ClientChannel",
    "ExitInfo",
    "PtyProcessAdapter",
    "ScrollbackBuffer",
    "SessionRecord",
    "SessionRegistry",
    "SessionStatus",
    "SpawnParams",
]
