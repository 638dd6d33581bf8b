"""Front door: turns inbound terminal connections into registry attachments."""

from __future__ import annotations

import logging
from typing import Callable, Mapping

from pydantic import BaseModel, Field, ValidationError

from ptyhub.errors import AuthError, MissingSessionIdError, Outcome, ProtocolError
from ptyhub.pty.channel import ClientChannel, Transport
from ptyhub.pty.process import MAX_COLS, MAX_ROWS, SpawnParams
from ptyhub.pty.registry import SessionRegistry

logger = logging.getLogger(__name__)

IdentityValidator = Callable[[str | None], bool]


class ConnectRequest(BaseModel):
    """Query parameters of a terminal connection."""

    token: str | None = None
    session_id: str = Field(alias="sessionId")
    cols: int | None = Field(default=None, ge=1, le=MAX_COLS)
    rows: int | None = Field(default=None, ge=1, le=MAX_ROWS)
    cwd: str | None = None
    command: str | None = None
    resume_session_id: str | None = Field(default=None, alias="resumeSessionId")
    bypass_permissions: bool = Field(default=False, alias="bypassPermissions")
    verbose: bool = False
    model: str | None = None

    def spawn_overrides(self) -> dict[str, object]:
        return {
            "cols": self.cols,
            "rows": self.rows,
            "cwd": self.cwd,
            "command": self.command,
            "resume_id": self.resume_session_id,
            "bypass_permissions": self.bypass_permissions or None,
            "verbose": self.verbose or None,
            "model": self.model,
        }


class FrontDoor:
    """Validates connection requests and binds channels to sessions.

    This is the only component that knows about identity; it treats the
    validator as a pure predicate over the token value.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        is_valid_identity: IdentityValidator,
    ) -> None:
        self.registry = registry
        self._is_valid_identity = is_valid_identity

    def validate(self, query: Mapping[str, str]) -> Outcome:
        """Check identity, then session id, then the remaining parameters.

        Runs before the connection is accepted, so rejections never touch
        the registry.
        """
        token = query.get("token")
        if not token or not self._is_valid_identity(token):
            logger.info("Rejected terminal connection: invalid identity")
            return Outcome.failure(AuthError("Valid token required"))

        if not query.get("sessionId"):
            logger.info("Rejected terminal connection: missing sessionId")
            return Outcome.failure(MissingSessionIdError("sessionId is required"))

        try:
            request = ConnectRequest.model_validate(dict(query))
        except ValidationError as e:
            return Outcome.failure(
                ProtocolError(f"Invalid connection parameters: {e.errors()[0]['msg']}")
            )
        return Outcome.success(request)

    async def attach(self, request: ConnectRequest, channel: ClientChannel) -> Outcome:
        """Attach ``channel``, creating the session from the request if absent."""
        params = self.registry.default_params(**request.spawn_overrides())
        outcome = await self.registry.attach(request.session_id, channel, params)
        if outcome.error is not None:
            channel.notify({"type": "error", **outcome.error.to_dict()})
        elif request.cols and request.rows:
            self.registry.resize(request.session_id, request.cols, request.rows)
        return outcome

    async def serve(
        self,
        request: ConnectRequest,
        transport: Transport,
        max_pending: int | None = None,
    ) -> None:
        """Attach, relay until the connection ends, then detach.

        Losing the connection is only ever a detach; the process keeps
        running.
        """
        channel = ClientChannel(
            max_pending=max_pending or self.registry.config.client_queue_size
        )
        await self.attach(request, channel)
        try:
            await channel.relay(self.registry, transport)
        finally:
            if channel.session_id is not None:
                self.registry.detach(channel.session_id, channel)
