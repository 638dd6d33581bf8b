"""Error taxonomy and structured operation outcomes.

Session records raise these internally. The registry and the front door
catch them at their boundary and hand callers an ``Outcome`` instead, so a
REST handler or connection acceptor never sees an unstructured failure.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar


class PtyHubError(Exception):
    """Base class for all multiplexer errors."""

    kind: ClassVar[str] = "error"

    def __init__(self, message: str = "", session_id: str | None = None) -> None:
        super().__init__(message or self.kind)
        self.message = message or self.kind
        self.session_id = session_id

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.session_id is not None:
            data["sessionId"] = self.session_id
        return data


class AuthError(PtyHubError):
    """Identity token missing or invalid."""

    kind = "auth_failed"


class MissingSessionIdError(PtyHubError):
    """Connection request without a session identifier."""

    kind = "missing_session_id"


class NotFoundError(PtyHubError):
    """No record for the given session identifier."""

    kind = "not_found"


class SpawnError(PtyHubError):
    """The process could not be created."""

    kind = "spawn_failed"


class AlreadyRunningError(PtyHubError):
    """``start`` on a session that is not stopped, exited or errored."""

    kind = "already_running"


class NotRunningError(PtyHubError):
    """Input, resize or stop against a session with no live process."""

    kind = "not_running"


class RemoveConflictError(PtyHubError):
    """``remove`` on a session whose process is still live."""

    kind = "remove_conflict"


class ProtocolError(PtyHubError):
    """Malformed inbound message on an attachment channel."""

    kind = "bad_message"


@dataclass
class Outcome:
    """Result of a registry or front door operation."""

    value: Any = None
    error: PtyHubError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any = None) -> Outcome:
        return cls(value=value)

    @classmethod
    def failure(cls, error: PtyHubError) -> Outcome:
        return cls(error=error)
