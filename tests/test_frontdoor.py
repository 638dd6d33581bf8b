"""Tests for ptyhub.web.frontdoor."""

from __future__ import annotations

import asyncio

from fakes import FakeAdapter, FakeTransport, settle
from ptyhub.config import MuxConfig, SpawnDefaults
from ptyhub.errors import AuthError, MissingSessionIdError, ProtocolError, SpawnError
from ptyhub.pty.channel import ClientChannel
from ptyhub.pty.registry import SessionRegistry
from ptyhub.pty.session import SessionStatus
from ptyhub.web.frontdoor import ConnectRequest, FrontDoor

GOOD_TOKEN = "good-token"


def _front_door(adapter: FakeAdapter | None = None) -> FrontDoor:
    registry = SessionRegistry(
        adapter or FakeAdapter(),
        MuxConfig(idle_after=0),
        spawn_defaults=SpawnDefaults(command="agent", cwd="/srv/work"),
    )
    return FrontDoor(registry, lambda token: token == GOOD_TOKEN)


class TestConnectRequest:
    def test_aliases(self) -> None:
        request = ConnectRequest.model_validate(
            {
                "sessionId": "s1",
                "resumeSessionId": "conv-9",
                "bypassPermissions": "true",
                "cols": "100",
                "rows": "40",
            }
        )
        assert request.session_id == "s1"
        assert request.resume_session_id == "conv-9"
        assert request.bypass_permissions is True
        assert (request.cols, request.rows) == (100, 40)

    def test_spawn_overrides_leave_defaults_alone(self) -> None:
        request = ConnectRequest.model_validate({"sessionId": "s1"})
        overrides = request.spawn_overrides()
        assert all(value is None for value in overrides.values())


class TestValidate:
    def test_valid(self) -> None:
        outcome = _front_door().validate({"token": GOOD_TOKEN, "sessionId": "s1"})
        assert outcome.ok
        assert outcome.value.session_id == "s1"

    def test_missing_token(self) -> None:
        outcome = _front_door().validate({"sessionId": "s1"})
        assert isinstance(outcome.error, AuthError)

    def test_bad_token(self) -> None:
        outcome = _front_door().validate({"token": "nope", "sessionId": "s1"})
        assert isinstance(outcome.error, AuthError)

    def test_identity_checked_before_session_id(self) -> None:
        outcome = _front_door().validate({"token": "nope"})
        assert isinstance(outcome.error, AuthError)

    def test_missing_session_id(self) -> None:
        outcome = _front_door().validate({"token": GOOD_TOKEN})
        assert isinstance(outcome.error, MissingSessionIdError)

    def test_empty_session_id(self) -> None:
        outcome = _front_door().validate({"token": GOOD_TOKEN, "sessionId": ""})
        assert isinstance(outcome.error, MissingSessionIdError)

    def test_bad_geometry(self) -> None:
        outcome = _front_door().validate(
            {"token": GOOD_TOKEN, "sessionId": "s1", "cols": "wide"}
        )
        assert isinstance(outcome.error, ProtocolError)

    def test_rejection_never_touches_registry(self) -> None:
        front_door = _front_door()
        front_door.validate({"sessionId": "s1"})
        front_door.validate({"token": GOOD_TOKEN})
        assert len(front_door.registry) == 0


class TestAttach:
    def test_new_session_uses_defaults_and_overrides(self) -> None:
        async def run():
            adapter = FakeAdapter()
            front_door = _front_door(adapter)
            request = ConnectRequest.model_validate(
                {"sessionId": "s1", "model": "haiku", "cols": "90", "rows": "20"}
            )
            outcome = await front_door.attach(request, ClientChannel())
            return adapter, outcome

        adapter, outcome = asyncio.run(run())
        assert outcome.ok
        params = adapter.last.params
        assert params.command == "agent"
        assert params.cwd == "/srv/work"
        assert params.model == "haiku"
        assert (params.cols, params.rows) == (90, 20)

    def test_existing_session_adopts_client_geometry(self) -> None:
        async def run():
            adapter = FakeAdapter()
            front_door = _front_door(adapter)
            first = ConnectRequest.model_validate({"sessionId": "s1"})
            await front_door.attach(first, ClientChannel())
            second = ConnectRequest.model_validate(
                {"sessionId": "s1", "cols": "150", "rows": "45", "model": "opus"}
            )
            await front_door.attach(second, ClientChannel())
            return adapter

        adapter = asyncio.run(run())
        # Spawn params only apply when the record is created
        assert len(adapter.spawned) == 1
        assert adapter.last.params.model is None
        assert adapter.last.resizes == [(150, 45)]

    def test_spawn_failure_is_reported_on_channel(self) -> None:
        async def run():
            adapter = FakeAdapter()
            adapter.fail_next = "Command not found: agent"
            front_door = _front_door(adapter)
            channel = ClientChannel()
            request = ConnectRequest.model_validate({"sessionId": "s1"})
            outcome = await front_door.attach(request, channel)
            return outcome, channel.pending()

        outcome, messages = asyncio.run(run())
        assert isinstance(outcome.error, SpawnError)
        payloads = [m.payload for m in messages]
        assert payloads[0]["type"] == "exit"
        assert payloads[-1]["type"] == "error"
        assert payloads[-1]["error"] == "spawn_failed"


class TestServe:
    def test_disconnect_detaches_but_keeps_process(self) -> None:
        async def run():
            adapter = FakeAdapter(echo=True)
            front_door = _front_door(adapter)
            transport = FakeTransport()
            request = ConnectRequest.model_validate({"sessionId": "s1"})
            serving = asyncio.create_task(front_door.serve(request, transport))
            await settle()
            transport.push("hello")
            await settle(30)
            transport.disconnect()
            await asyncio.wait_for(serving, 1)
            return adapter, front_door.registry, transport

        adapter, registry, transport = asyncio.run(run())
        assert b"".join(transport.sent_bytes) == b"hello"
        record = registry.get("s1")
        assert record.clients == frozenset()
        assert record.status == SessionStatus.RUNNING
        assert adapter.last.terminations == []

    def test_reconnect_gets_replay(self) -> None:
        async def run():
            adapter = FakeAdapter()
            front_door = _front_door(adapter)
            request = ConnectRequest.model_validate({"sessionId": "s1"})

            first = FakeTransport()
            serving = asyncio.create_task(front_door.serve(request, first))
            await settle()
            adapter.last.emit(b"$ make\r\nok\r\n")
            await settle()
            first.disconnect()
            await asyncio.wait_for(serving, 1)

            second = FakeTransport()
            serving = asyncio.create_task(front_door.serve(request, second))
            await settle(30)
            second.disconnect()
            await asyncio.wait_for(serving, 1)
            return adapter, second

        adapter, second = asyncio.run(run())
        assert len(adapter.spawned) == 1
        assert second.sent_bytes == [b"$ make\r\nok\r\n"]
