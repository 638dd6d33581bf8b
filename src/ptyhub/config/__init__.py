"""Configuration — Pydantic models for ptyhub settings."""

from __future__ import annotations

import enum
import json
import os
from typing import Any

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field


class AttachPolicy(str, enum.Enum):
    """What ``attach`` does with a record that has no live process."""

    ENSURE_RUNNING = "ensure_running"
    READ_ONLY = "read_only"


class MuxConfig(BaseModel):
    """Session multiplexer configuration."""

    scrollback_bytes: int = Field(
        default=100 * 1024, gt=0, description="Replay buffer capacity per session"
    )
    idle_after: float = Field(
        default=5.0,
        description="Seconds without output before a running session is shown as idle (<=0 disables)",
    )
    stop_grace: float = Field(
        default=5.0,
        gt=0,
        description="Seconds to wait after a graceful terminate before SIGKILL",
    )
    client_queue_size: int = Field(
        default=1024,
        gt=0,
        description="Outbound messages buffered per client before the oldest are dropped",
    )
    attach_policy: AttachPolicy = Field(default=AttachPolicy.ENSURE_RUNNING)
    read_size: int = Field(default=65536, gt=0, description="PTY read chunk size")


class SpawnDefaults(BaseModel):
    """Defaults for sessions created without explicit spawn parameters."""

    command: str = Field(default="claude")
    cwd: str | None = Field(default=None)
    cols: int = Field(default=120, ge=1, le=500)
    rows: int = Field(default=30, ge=1, le=200)


class ServerConfig(BaseModel):
    """HTTP/WebSocket server configuration."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3456)
    password: str | None = Field(
        default=None,
        description="Login password. A random one is generated and logged when unset.",
    )


class HubConfig(BaseModel):
    """Top-level ptyhub configuration."""

    mux: MuxConfig = Field(default_factory=MuxConfig)
    spawn: SpawnDefaults = Field(default_factory=SpawnDefaults)
    server: ServerConfig = Field(default_factory=ServerConfig)

    @classmethod
    def load(cls, config_path: str | None = None) -> HubConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            PTYHUB_HOST              - Bind address
            PTYHUB_PORT              - Listen port
            PTYHUB_PASSWORD          - Login password
            PTYHUB_COMMAND           - Default agent command
            PTYHUB_SCROLLBACK_BYTES  - Replay buffer capacity per session
            PTYHUB_STOP_GRACE        - Seconds before a stop escalates to SIGKILL
            PTYHUB_IDLE_AFTER        - Quiet seconds before a session shows as idle
            PTYHUB_ATTACH_POLICY     - ensure_running | read_only
        """
        load_dotenv(find_dotenv(usecwd=True), override=True)

        config_data: dict[str, Any] = {}
        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        server = config_data.get("server", {})
        mux = config_data.get("mux", {})
        spawn = config_data.get("spawn", {})

        env_host = os.environ.get("PTYHUB_HOST")
        if env_host:
            server["host"] = env_host

        env_port = os.environ.get("PTYHUB_PORT")
        if env_port:
            server["port"] = int(env_port)

        env_password = os.environ.get("PTYHUB_PASSWORD")
        if env_password:
            server["password"] = env_password

        env_command = os.environ.get("PTYHUB_COMMAND")
        if env_command:
            spawn["command"] = env_command

        env_scrollback = os.environ.get("PTYHUB_SCROLLBACK_BYTES")
        if env_scrollback:
            mux["scrollback_bytes"] = int(env_scrollback)

        env_grace = os.environ.get("PTYHUB_STOP_GRACE")
        if env_grace:
            mux["stop_grace"] = float(env_grace)

        env_idle = os.environ.get("PTYHUB_IDLE_AFTER")
        if env_idle:
            mux["idle_after"] = float(env_idle)

        env_policy = os.environ.get("PTYHUB_ATTACH_POLICY")
        if env_policy:
            mux["attach_policy"] = env_policy.lower()

        if server:
            config_data["server"] = server
        if mux:
            config_data["mux"] = mux
        if spawn:
            config_data["spawn"] = spawn

        return cls.model_validate(config_data)
