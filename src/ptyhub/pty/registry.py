"""Session registry — the single source of truth for all session records."""

from __future__ import annotations

import logging
from typing import Any

from ptyhub.config import AttachPolicy, MuxConfig, SpawnDefaults
from ptyhub.errors import (
    NotFoundError,
    Outcome,
    PtyHubError,
    RemoveConflictError,
    SpawnError,
)
from ptyhub.events import Wire
from ptyhub.pty.channel import ClientChannel
from ptyhub.pty.process import ProcessAdapter, PtyProcessAdapter, SpawnParams
from ptyhub.pty.session import (
    LIVE_STATUSES,
    STARTABLE_STATUSES,
    SessionRecord,
    SessionStatus,
)

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Maps session ids to records and owns their lifecycle.

    The REST layer (start/stop/restart/remove) and the front door (attach,
    detach, input, resize) share this object. Every public operation returns
    an ``Outcome``; multiplexer errors never escape as exceptions.

    The registry ensures:
    - A record is created on the first ``attach`` or ``start`` for an id
      and destroyed only by ``remove``
    - Detaching, even the last client, never stops a process
    - ``attach`` follows the configured ``AttachPolicy`` for records
      without a live process
    - ``shutdown`` stops every live session (no orphan processes)
    """

    def __init__(
        self,
        adapter: ProcessAdapter | None = None,
        config: MuxConfig | None = None,
        spawn_defaults: SpawnDefaults | None = None,
        wire: Wire | None = None,
    ) -> None:
        self.config = config or MuxConfig()
        self._adapter = adapter or PtyProcessAdapter(read_size=self.config.read_size)
        self._spawn_defaults = spawn_defaults or SpawnDefaults()
        self._wire = wire
        self._records: dict[str, SessionRecord] = {}

    @property
    def wire(self) -> Wire | None:
        return self._wire

    @property
    def attach_policy(self) -> AttachPolicy:
        return self.config.attach_policy

    def default_params(self, **overrides: Any) -> SpawnParams:
        """Spawn params from the configured defaults plus ``overrides``."""
        base = SpawnParams.model_validate(self._spawn_defaults.model_dump())
        return base.amend(**overrides)

    def get(self, session_id: str) -> SessionRecord | None:
        """Get a record by ID."""
        return self._records.get(session_id)

    def _lookup(self, session_id: str) -> SessionRecord:
        record = self._records.get(session_id)
        if record is None:
            raise NotFoundError(f"Unknown session {session_id}", session_id=session_id)
        return record

    def _get_or_create(
        self, session_id: str, params: SpawnParams | None
    ) -> tuple[SessionRecord, bool]:
        record = self._records.get(session_id)
        if record is not None:
            return record, False
        record = SessionRecord(
            session_id,
            params or self.default_params(),
            self._adapter,
            scrollback_bytes=self.config.scrollback_bytes,
            idle_after=self.config.idle_after,
            stop_grace=self.config.stop_grace,
            wire=self._wire,
        )
        self._records[session_id] = record
        logger.info("Created session record %s", session_id)
        return record, True

    # -- lifecycle (REST layer) --------------------------------------------

    async def start(self, session_id: str, params: SpawnParams | None = None) -> Outcome:
        """Start a session, creating its record if needed.

        ``params`` replaces the record's spawn params when given. A
        successful outcome only means the spawn was accepted; the record's
        status is the authoritative source after that.
        """
        record, _ = self._get_or_create(session_id, params)
        try:
            await record.start(params)
        except PtyHubError as e:
            return Outcome.failure(e)
        return Outcome.success(record.snapshot())

    async def stop(self, session_id: str) -> Outcome:
        try:
            record = self._lookup(session_id)
            await record.stop()
        except PtyHubError as e:
            return Outcome.failure(e)
        return Outcome.success(record.snapshot())

    async def restart(self, session_id: str, **amendments: Any) -> Outcome:
        """Stop then start with the same (optionally amended) spawn params.

        The current geometry carries over unless ``cols``/``rows`` are given.
        """
        try:
            record = self._lookup(session_id)
            changes: dict[str, Any] = {"cols": record.cols, "rows": record.rows}
            changes.update((k, v) for k, v in amendments.items() if v is not None)
            params = record.spawn_params.amend(**changes)
            await record.restart(params)
        except PtyHubError as e:
            return Outcome.failure(e)
        except ValueError as e:
            return Outcome.failure(SpawnError(str(e), session_id=session_id))
        return Outcome.success(record.snapshot())

    def remove(self, session_id: str) -> Outcome:
        """Forget a record. Refused while its process is live."""
        record = self._records.get(session_id)
        if record is None:
            return Outcome.failure(
                NotFoundError(f"Unknown session {session_id}", session_id=session_id)
            )
        if record.status not in STARTABLE_STATUSES:
            return Outcome.failure(
                RemoveConflictError(
                    f"Session {session_id} is {record.status.value}; stop it first",
                    session_id=session_id,
                )
            )
        del self._records[session_id]
        record.close_clients()
        if self._wire is not None:
            self._wire.send_removed(session_id)
        logger.info("Removed session record %s", session_id)
        return Outcome.success()

    # -- attachment (front door) -------------------------------------------

    async def attach(
        self,
        session_id: str,
        client: ClientChannel,
        params_if_absent: SpawnParams | None = None,
    ) -> Outcome:
        """Attach ``client`` to a session, creating and starting it if needed.

        A new record is always started. An existing record without a live
        process is started only under ``AttachPolicy.ENSURE_RUNNING``. The
        client is attached even when spawning fails, so it sees the error
        notice; the outcome then carries the ``SpawnError``.
        """
        if client.session_id is not None and client.session_id != session_id:
            self.detach(client.session_id, client)

        record, created = self._get_or_create(session_id, params_if_absent)
        error: PtyHubError | None = None
        if created or self.attach_policy == AttachPolicy.ENSURE_RUNNING:
            try:
                await record.ensure_running()
            except PtyHubError as e:
                error = e

        record.add_client(client)
        return Outcome(value=record.snapshot(), error=error)

    def detach(self, session_id: str, client: ClientChannel) -> Outcome:
        """Remove ``client`` from a session. The process is not touched."""
        record = self._records.get(session_id)
        if record is None or not record.remove_client(client):
            return Outcome.failure(
                NotFoundError(
                    f"Client {client.id} is not attached to {session_id}",
                    session_id=session_id,
                )
            )
        return Outcome.success()

    def write(self, session_id: str, data: bytes) -> Outcome:
        try:
            self._lookup(session_id).write(data)
        except PtyHubError as e:
            return Outcome.failure(e)
        return Outcome.success()

    def resize(self, session_id: str, cols: int, rows: int) -> Outcome:
        try:
            record = self._lookup(session_id)
            record.resize(cols, rows)
        except PtyHubError as e:
            return Outcome.failure(e)
        return Outcome.success({"cols": record.cols, "rows": record.rows})

    # -- queries -----------------------------------------------------------

    def list_statuses(self) -> dict[str, dict[str, Any]]:
        """Snapshot of every record, keyed by session id."""
        return {sid: record.snapshot() for sid, record in self._records.items()}

    def live_count(self) -> int:
        return sum(1 for r in self._records.values() if r.status in LIVE_STATUSES)

    async def shutdown(self) -> None:
        """Stop every live session and disconnect all clients."""
        for record in list(self._records.values()):
            if record.status in LIVE_STATUSES:
                try:
                    await record.stop()
                except PtyHubError as e:
                    logger.warning("Stopping %s during shutdown failed: %s", record.id, e)
            record.close_clients()
        if self._wire is not None:
            self._wire.close()
        logger.info("All PTY sessions shut down")

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._records


__all__ = ["SessionRegistry", "SessionStatus"]
