"""FastAPI application: terminal WebSocket, status stream, session control."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field
from starlette.websockets import WebSocketState

from ptyhub.auth import TokenStore, extract_bearer_token
from ptyhub.config import HubConfig
from ptyhub.errors import AuthError, Outcome
from ptyhub.events import Wire
from ptyhub.pty.process import MAX_COLS, MAX_ROWS
from ptyhub.pty.registry import SessionRegistry
from ptyhub.web.frontdoor import FrontDoor

logger = logging.getLogger(__name__)

# WebSocket close codes used before the handshake is accepted
CLOSE_UNAUTHORIZED = 4401
CLOSE_BAD_REQUEST = 4400

_HTTP_STATUS = {
    "auth_failed": 401,
    "missing_session_id": 400,
    "bad_message": 400,
    "not_found": 404,
    "already_running": 409,
    "not_running": 409,
    "remove_conflict": 409,
    "spawn_failed": 502,
}


class LoginBody(BaseModel):
    password: str = Field(min_length=1)


class StartBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    command: str | None = None
    cwd: str | None = None
    resume_id: str | None = Field(default=None, alias="resumeSessionId")
    bypass_permissions: bool | None = Field(default=None, alias="bypassPermissions")
    verbose: bool | None = None
    model: str | None = None
    cols: int | None = Field(default=None, ge=1, le=MAX_COLS)
    rows: int | None = Field(default=None, ge=1, le=MAX_ROWS)

    def overrides(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class WebSocketTransport:
    """Adapts a Starlette WebSocket to the channel ``Transport`` protocol."""

    def __init__(self, websocket: WebSocket) -> None:
        self._ws = websocket

    async def send_bytes(self, data: bytes) -> None:
        await self._ws.send_bytes(data)

    async def send_json(self, payload: dict[str, Any]) -> None:
        await self._ws.send_json(payload)

    async def receive(self) -> str | bytes | None:
        try:
            message = await self._ws.receive()
        except (WebSocketDisconnect, RuntimeError):
            return None
        if message["type"] == "websocket.disconnect":
            return None
        if message.get("bytes") is not None:
            return message["bytes"]
        return message.get("text") or ""


def _raise_for(outcome: Outcome) -> Any:
    if outcome.error is not None:
        status = _HTTP_STATUS.get(outcome.error.kind, 500)
        raise HTTPException(status_code=status, detail=outcome.error.to_dict())
    return outcome.value


def create_app(
    config: HubConfig | None = None,
    registry: SessionRegistry | None = None,
    tokens: TokenStore | None = None,
) -> FastAPI:
    """Build the app. Registry and token store can be injected for tests."""
    config = config or HubConfig()
    tokens = tokens or TokenStore(config.server.password)
    if registry is None:
        registry = SessionRegistry(
            config=config.mux, spawn_defaults=config.spawn, wire=Wire()
        )
    wire = registry.wire or Wire()
    front_door = FrontDoor(registry, tokens.is_valid)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await registry.shutdown()

    app = FastAPI(title="ptyhub", lifespan=lifespan)
    app.state.registry = registry
    app.state.tokens = tokens
    app.state.front_door = front_door

    def require_auth(request: Request) -> str:
        token = extract_bearer_token(request.headers.get("authorization"))
        if not tokens.is_valid(token):
            raise HTTPException(
                status_code=401,
                detail=AuthError("Valid Bearer token required").to_dict(),
            )
        assert token is not None
        return token

    # -- auth --------------------------------------------------------------

    @app.post("/api/auth/login")
    def login(body: LoginBody) -> dict[str, Any]:
        token = tokens.login(body.password)
        if token is None:
            raise HTTPException(status_code=403, detail="Invalid password.")
        return {"success": True, "token": token}

    @app.post("/api/auth/logout")
    def logout(request: Request) -> dict[str, Any]:
        token = extract_bearer_token(request.headers.get("authorization"))
        if token:
            tokens.revoke(token)
        return {"success": True}

    @app.get("/api/auth/check")
    def check(request: Request) -> dict[str, Any]:
        token = extract_bearer_token(request.headers.get("authorization"))
        return {"authenticated": tokens.is_valid(token)}

    # -- sessions ----------------------------------------------------------

    @app.get("/api/sessions", dependencies=[Depends(require_auth)])
    def list_sessions() -> dict[str, Any]:
        return {"sessions": registry.list_statuses()}

    @app.post("/api/sessions/{session_id}/start", dependencies=[Depends(require_auth)])
    async def start_session(
        session_id: str, body: StartBody | None = None
    ) -> dict[str, Any]:
        params = None
        if body is not None:
            existing = registry.get(session_id)
            base = (
                existing.spawn_params.amend(cols=existing.cols, rows=existing.rows)
                if existing
                else registry.default_params()
            )
            params = base.amend(**body.overrides())
        return _raise_for(await registry.start(session_id, params))

    @app.post("/api/sessions/{session_id}/stop", dependencies=[Depends(require_auth)])
    async def stop_session(session_id: str) -> dict[str, Any]:
        return _raise_for(await registry.stop(session_id))

    @app.post(
        "/api/sessions/{session_id}/restart", dependencies=[Depends(require_auth)]
    )
    async def restart_session(
        session_id: str, body: StartBody | None = None
    ) -> dict[str, Any]:
        overrides = body.overrides() if body is not None else {}
        return _raise_for(await registry.restart(session_id, **overrides))

    @app.delete("/api/sessions/{session_id}", dependencies=[Depends(require_auth)])
    def remove_session(session_id: str) -> dict[str, Any]:
        _raise_for(registry.remove(session_id))
        return {"success": True}

    # -- websockets --------------------------------------------------------

    @app.websocket("/ws/terminal")
    async def ws_terminal(websocket: WebSocket) -> None:
        outcome = front_door.validate(websocket.query_params)
        if outcome.error is not None:
            code = CLOSE_BAD_REQUEST
            if isinstance(outcome.error, AuthError):
                code = CLOSE_UNAUTHORIZED
            await websocket.close(code=code, reason=outcome.error.message[:120])
            return

        await websocket.accept()
        try:
            await front_door.serve(outcome.value, WebSocketTransport(websocket))
        finally:
            if websocket.client_state == WebSocketState.CONNECTED:
                await websocket.close()

    @app.websocket("/ws/events")
    async def ws_events(websocket: WebSocket) -> None:
        if not tokens.is_valid(websocket.query_params.get("token")):
            await websocket.close(code=CLOSE_UNAUTHORIZED)
            return

        queue = wire.subscribe()
        await websocket.accept()
        await websocket.send_json(
            {"type": "snapshot", "payload": registry.list_statuses()}
        )

        async def stream_events() -> None:
            while True:
                event = await queue.get()
                if event is None:
                    break
                await websocket.send_json(event.to_dict())

        async def wait_disconnect() -> None:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    return

        sender = asyncio.create_task(stream_events())
        receiver = asyncio.create_task(wait_disconnect())
        try:
            done, pending = await asyncio.wait(
                {sender, receiver}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        except WebSocketDisconnect:
            pass
        finally:
            wire.unsubscribe(queue)
            if websocket.client_state == WebSocketState.CONNECTED:
                await websocket.close()

    return app
