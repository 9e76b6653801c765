"""
Plaza Settings

Environment-based configuration for the coordinator and its agents.

Environment variables:
- PLAZA_HOST: Bind address (default: 0.0.0.0)
- PLAZA_PORT: Listen port (default: 8080)
- PLAZA_HEARTBEAT_TIMEOUT: Seconds of silence before eviction (default: 60)
- PLAZA_SWEEP_INTERVAL: Seconds between liveness sweeps (default: 30)
- PLAZA_HEARTBEAT_INTERVAL: Seconds between client heartbeats (default: 15)
- PLAZA_MESSAGE_LOG_CAPACITY: Envelopes kept for the query surface (default: 5000)
- PLAZA_MAX_QUEUE_SIZE: Outbound frames buffered per connection (default: 200)
- PLAZA_LOG_LEVEL: Logging level name (default: INFO)

Usage:
    settings = settings_from_env()
    app = create_app(settings)
"""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass
class PlazaSettings:
    """
    Configuration for a Plaza process.

    Attributes:
        host: Bind address for the HTTP/WebSocket server
        port: Listen port
        heartbeat_timeout_seconds: Silence after which an agent is evicted
        sweep_interval_seconds: Time between liveness sweeps
        heartbeat_interval_seconds: Time between heartbeats sent by agents
        message_log_capacity: Size of the message log ring buffer
        max_queue_size: Outbound frames buffered per connection
        log_level: Logging level name
    """
    host: str = "0.0.0.0"
    port: int = 8080
    heartbeat_timeout_seconds: float = 60.0
    sweep_interval_seconds: float = 30.0
    heartbeat_interval_seconds: float = 15.0
    message_log_capacity: int = 5000
    max_queue_size: int = 200
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.heartbeat_timeout_seconds <= 0:
            raise ValueError("heartbeat_timeout_seconds must be positive")
        if self.sweep_interval_seconds <= 0:
            raise ValueError("sweep_interval_seconds must be positive")
        if self.message_log_capacity < 1:
            raise ValueError("message_log_capacity must be at least 1")
        if self.max_queue_size < 1:
            raise ValueError("max_queue_size must be at least 1")

    @property
    def public_url(self) -> str:
        host = "localhost" if self.host in ("0.0.0.0", "::") else self.host
        return f"http://{host}:{self.port}"


def _env(name: str, cast: type, default):
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(f"Invalid value for {name}: {raw!r}") from None


def settings_from_env() -> PlazaSettings:
    """Build settings from PLAZA_* environment variables."""
    defaults = PlazaSettings()
    return PlazaSettings(
        host=_env("PLAZA_HOST", str, defaults.host),
        port=_env("PLAZA_PORT", int, defaults.port),
        heartbeat_timeout_seconds=_env(
            "PLAZA_HEARTBEAT_TIMEOUT", float, defaults.heartbeat_timeout_seconds
        ),
        sweep_interval_seconds=_env(
            "PLAZA_SWEEP_INTERVAL", float, defaults.sweep_interval_seconds
        ),
        heartbeat_interval_seconds=_env(
            "PLAZA_HEARTBEAT_INTERVAL", float, defaults.heartbeat_interval_seconds
        ),
        message_log_capacity=_env(
            "PLAZA_MESSAGE_LOG_CAPACITY", int, defaults.message_log_capacity
        ),
        max_queue_size=_env("PLAZA_MAX_QUEUE_SIZE", int, defaults.max_queue_size),
        log_level=_env("PLAZA_LOG_LEVEL", str, defaults.log_level).upper(),
    )
